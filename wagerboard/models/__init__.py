"""Database models."""
from wagerboard.models.base import LinkageState
from wagerboard.models.user_profile import UserProfile

__all__ = [
    "LinkageState",
    "UserProfile",
]
