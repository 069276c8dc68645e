"""Data models for bankusage."""

from bankusage.models.user import CreateUser, User

__all__ = ["CreateUser", "User"]
