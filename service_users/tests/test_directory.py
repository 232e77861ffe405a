"""
Unit tests for the UserDirectory cache-aside coordinator.
"""

import asyncio
import json

import pytest

from shared.errors import ConflictError, NotFoundError, StoreUnavailableError
from shared.logging import operation_var
from service_users.app.directory import UserDirectory


@pytest.fixture
def directory(store, cache, metrics):
    return UserDirectory(store, cache, metrics=metrics)


async def _let_tasks_run(times: int = 5):
    for _ in range(times):
        await asyncio.sleep(0)


class TestListUsers:
    """Collection reads."""

    @pytest.mark.asyncio
    async def test_miss_reads_store_and_populates_cache(self, directory, store, cache):
        await store.insert("Ana", "ana@x.com")
        await store.insert("Bia", "bia@x.com")

        users = await directory.list_users()

        assert [u.id for u in users] == [1, 2]
        assert store.select_all_calls == 1
        assert cache.sets == [("users:all", 60)]
        cached = json.loads(cache.entries["users:all"][0])
        assert [item["email"] for item in cached] == ["ana@x.com", "bia@x.com"]

    @pytest.mark.asyncio
    async def test_second_call_is_served_from_cache(self, directory, store, metrics):
        await store.insert("Ana", "ana@x.com")

        first = await directory.list_users()
        second = await directory.list_users()

        assert first == second
        assert store.select_all_calls == 1
        assert metrics.count("cache_misses_total") == 1
        assert metrics.count("cache_hits_total") == 1

    @pytest.mark.asyncio
    async def test_configured_key_and_ttl_are_used(self, store, cache):
        directory = UserDirectory(store, cache, collection_key="people:all", collection_ttl_seconds=5)

        await directory.list_users()

        assert cache.gets == ["people:all"]
        assert cache.sets == [("people:all", 5)]

    @pytest.mark.asyncio
    async def test_empty_store_returns_empty_list(self, directory):
        assert await directory.list_users() == []

    @pytest.mark.asyncio
    async def test_populate_failure_still_returns_store_result(self, directory, store, cache, metrics):
        await store.insert("Ana", "ana@x.com")
        cache.fail_set = True

        users = await directory.list_users()

        assert [u.email for u in users] == ["ana@x.com"]
        assert metrics.count("cache_errors_total", operation="set") == 1

    @pytest.mark.asyncio
    async def test_cache_read_failure_falls_back_to_store(self, directory, store, cache, metrics):
        await store.insert("Ana", "ana@x.com")
        cache.fail_get = True

        users = await directory.list_users()

        assert [u.email for u in users] == ["ana@x.com"]
        assert store.select_all_calls == 1
        assert metrics.count("cache_errors_total", operation="get") == 1

    @pytest.mark.asyncio
    async def test_malformed_payload_is_treated_as_miss(self, directory, store, cache):
        await store.insert("Ana", "ana@x.com")
        cache.entries["users:all"] = (b"not-json", 60)

        users = await directory.list_users()

        assert [u.email for u in users] == ["ana@x.com"]
        assert store.select_all_calls == 1

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, directory, store):
        store.unavailable = True

        with pytest.raises(StoreUnavailableError):
            await directory.list_users()

    @pytest.mark.asyncio
    async def test_expired_entry_is_recomputed_in_id_order(self, directory, store, cache):
        await store.insert("Ana", "ana@x.com")
        await store.insert("Bia", "bia@x.com")
        await store.insert("Caio", "caio@x.com")
        await directory.delete_user(2)
        await directory.update_user(3, "Caio R", "caio@x.com")
        await directory.create_user("Duda", "duda@x.com")
        cache.expire("users:all")

        users = await directory.list_users()

        assert users == [store.rows[key] for key in sorted(store.rows)]
        assert [u.id for u in users] == [1, 3, 4]


class TestGetUser:
    """Reads by id."""

    @pytest.mark.asyncio
    async def test_reads_store_without_touching_cache(self, directory, store, cache):
        created = await store.insert("Ana", "ana@x.com")

        user = await directory.get_user(created.id)

        assert user == created
        assert cache.gets == []
        assert cache.sets == []

    @pytest.mark.asyncio
    async def test_missing_id_raises_not_found(self, directory):
        with pytest.raises(NotFoundError):
            await directory.get_user(42)


class TestWrites:
    """Writes and invalidation."""

    @pytest.mark.asyncio
    async def test_create_invalidates_collection(self, directory, cache):
        await directory.list_users()
        assert "users:all" in cache.entries

        user = await directory.create_user("Ana", "ana@x.com")

        assert cache.deletes == ["users:all"]
        assert "users:all" not in cache.entries
        assert await directory.list_users() == [user]

    @pytest.mark.asyncio
    async def test_writes_never_set_the_collection(self, directory, cache):
        await directory.create_user("Ana", "ana@x.com")
        await directory.update_user(1, "Ana B", "ana@x.com")
        await directory.delete_user(1)

        assert cache.sets == []
        assert cache.deletes == ["users:all"] * 3

    @pytest.mark.asyncio
    async def test_update_missing_id_leaves_cache_untouched(self, directory, cache):
        await directory.list_users()

        with pytest.raises(NotFoundError):
            await directory.update_user(7, "Ghost", "ghost@x.com")

        assert cache.deletes == []
        assert "users:all" in cache.entries

    @pytest.mark.asyncio
    async def test_delete_missing_id_leaves_cache_untouched(self, directory, cache):
        with pytest.raises(NotFoundError):
            await directory.delete_user(7)

        assert cache.deletes == []

    @pytest.mark.asyncio
    async def test_duplicate_email_conflicts_without_invalidation(self, directory, cache):
        await directory.create_user("Ana", "ana@x.com")
        cache.deletes.clear()

        with pytest.raises(ConflictError):
            await directory.create_user("Other", "ana@x.com")

        assert cache.deletes == []

    @pytest.mark.asyncio
    async def test_update_duplicate_email_conflicts_without_invalidation(self, directory, store, cache):
        await store.insert("Ana", "ana@x.com")
        bia = await store.insert("Bia", "bia@x.com")
        await directory.list_users()

        with pytest.raises(ConflictError):
            await directory.update_user(bia.id, "Bia", "ana@x.com")

        assert cache.deletes == []
        assert "users:all" in cache.entries
        assert store.rows[bia.id].email == "bia@x.com"

    @pytest.mark.asyncio
    async def test_store_failure_skips_invalidation(self, directory, store, cache):
        store.unavailable = True

        with pytest.raises(StoreUnavailableError):
            await directory.create_user("Ana", "ana@x.com")

        assert cache.deletes == []

    @pytest.mark.asyncio
    async def test_invalidation_failure_still_returns_row(self, directory, cache, metrics):
        cache.fail_delete = True

        user = await directory.create_user("Ana", "ana@x.com")

        assert user.email == "ana@x.com"
        assert metrics.count("cache_invalidations_total", result="error") == 1
        assert metrics.count("cache_errors_total", operation="delete") == 1

    @pytest.mark.asyncio
    async def test_delete_returns_removed_row(self, directory):
        created = await directory.create_user("Ana", "ana@x.com")

        deleted = await directory.delete_user(created.id)

        assert deleted == created


class TestLogContext:
    """Operation tagging for log events."""

    @pytest.mark.asyncio
    async def test_store_calls_run_under_the_directory_operation(self, directory, store):
        seen = []
        original_insert = store.insert

        async def recording_insert(name, email):
            seen.append(operation_var.get())
            return await original_insert(name, email)

        store.insert = recording_insert

        await directory.create_user("Ana", "ana@x.com")

        assert seen == ["create_user"]
        assert operation_var.get() is None


class TestConcurrency:
    """Overlapping reads and writes."""

    @pytest.mark.asyncio
    async def test_concurrent_misses_share_one_store_query(self, directory, store):
        await store.insert("Ana", "ana@x.com")
        store.select_all_gate = gate = asyncio.Event()

        tasks = [asyncio.create_task(directory.list_users()) for _ in range(3)]
        await _let_tasks_run()
        gate.set()
        results = await asyncio.gather(*tasks)

        assert store.select_all_calls == 1
        assert results[0] == results[1] == results[2]

    @pytest.mark.asyncio
    async def test_single_flight_can_be_disabled(self, store, cache):
        directory = UserDirectory(store, cache, single_flight=False)
        store.select_all_gate = gate = asyncio.Event()

        tasks = [asyncio.create_task(directory.list_users()) for _ in range(2)]
        await _let_tasks_run()
        gate.set()
        await asyncio.gather(*tasks)

        assert store.select_all_calls == 2

    @pytest.mark.asyncio
    async def test_load_overlapping_a_write_does_not_populate_cache(self, directory, store, cache):
        await store.insert("Ana", "ana@x.com")
        store.select_all_gate = gate = asyncio.Event()

        slow_read = asyncio.create_task(directory.list_users())
        await _let_tasks_run()
        created = await directory.create_user("Bia", "bia@x.com")

        # A read issued after the write must not join the pre-write load
        fresh = await directory.list_users()
        assert created in fresh

        gate.set()
        stale = await slow_read

        assert created not in stale
        assert await directory.list_users() == fresh
        assert store.select_all_calls == 2

    @pytest.mark.asyncio
    async def test_failed_shared_load_reaches_every_waiter(self, directory, store, cache):
        store.unavailable = True

        tasks = [asyncio.create_task(directory.list_users()) for _ in range(2)]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(result, StoreUnavailableError) for result in results)
        assert cache.sets == []
        assert directory._inflight is None


class TestJoaoScenario:
    """End-to-end walk through the directory with a live collection cache."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, directory, cache):
        joao = await directory.create_user("Joao Silva", "joao@email.com")
        assert await directory.list_users() == [joao]
        assert "users:all" in cache.entries

        with pytest.raises(ConflictError):
            await directory.create_user("Joao Clone", "joao@email.com")
        assert "users:all" in cache.entries

        updated = await directory.update_user(joao.id, "Joao S.", "joao@email.com")
        assert updated.name == "Joao S."
        assert await directory.list_users() == [updated]

        deleted = await directory.delete_user(joao.id)
        assert deleted.id == joao.id
        assert await directory.list_users() == []

        with pytest.raises(NotFoundError):
            await directory.delete_user(joao.id)
