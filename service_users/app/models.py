"""
User data models for the Users service.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


@dataclass(frozen=True)
class User:
    """A persisted user row."""

    id: int
    name: str
    email: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the user to a JSON-friendly dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "created_at": _format_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "User":
        """Rehydrate a user from cached JSON state."""
        created_at = payload["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
        return cls(
            id=int(payload["id"]),
            name=payload["name"],
            email=payload["email"],
            created_at=created_at,
        )


class UserWriteRequest(BaseModel):
    """Request body for creating or replacing a user."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=100, description="Display name")
    email: str = Field(..., min_length=1, max_length=100, description="Unique email address")


class UserResponse(BaseModel):
    """User representation returned by the API."""

    id: int = Field(..., description="Store-assigned identifier")
    name: str
    email: str
    created_at: datetime

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": 1,
                "name": "Joao Silva",
                "email": "joao@email.com",
                "created_at": "2025-11-26T10:00:00.000Z",
            }
        }
    )

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(id=user.id, name=user.name, email=user.email, created_at=user.created_at)


def _format_iso(dt: datetime) -> str:
    """Format datetime as ISO-8601 with microsecond precision, UTC when tz-aware."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
        return dt.isoformat().replace("+00:00", "Z")
    return dt.isoformat()
