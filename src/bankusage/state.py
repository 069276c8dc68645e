"""
Process-wide "current user" cell.

One instance is created by the application's composition root and passed to
whatever needs it. Writers serialize through the lock; readers get a copy so
a slow handler never holds a live reference to shared state.
"""

from __future__ import annotations

import asyncio

from bankusage.models.user import User


class CurrentUserHandle:
    """Mutually exclusive cell holding at most one logged-in user."""

    def __init__(self, user: User | None = None) -> None:
        self._user = user
        self._lock = asyncio.Lock()

    async def get(self) -> User | None:
        async with self._lock:
            return self._user.model_copy(deep=True) if self._user else None

    async def set(self, user: User | None) -> None:
        async with self._lock:
            self._user = user.model_copy(deep=True) if user else None

    async def clear(self) -> None:
        await self.set(None)
