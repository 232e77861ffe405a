"""
Directory layer for the Users service.
"""

from .service import UserDirectory

__all__ = ["UserDirectory"]
