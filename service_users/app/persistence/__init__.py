"""
Persistence package for the Users service.
"""

from .postgres import UserStore

__all__ = ["UserStore"]
