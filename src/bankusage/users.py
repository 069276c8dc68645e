"""
User repository — the local account store the login flow reconciles against.

The session manager only needs two lookups, captured by ``UserRepository``.
``SQLUserRepository`` implements them on a SQLAlchemy engine (SQLite by
default) for the command-line application.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from sqlalchemy import Column, DateTime, MetaData, String, Table, create_engine, insert, select, update
from sqlalchemy.engine import Engine, RowMapping
from sqlalchemy.exc import SQLAlchemyError

from bankusage.errors import UserStoreError
from bankusage.models.user import CreateUser, User

logger = logging.getLogger("bankusage.users")


class UserRepository(Protocol):
    """Lookups the login flow performs against local users."""

    async def find_or_create_by_provider_id(self, request: CreateUser) -> User:
        ...

    async def find_by_provider_id(self, provider_user_id: str) -> User | None:
        ...


metadata = MetaData()

users_table = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("provider_user_id", String(255), nullable=False, unique=True),
    Column("email", String(320), nullable=False),
    Column("first_name", String(255), nullable=False),
    Column("last_name", String(255), nullable=False, default=""),
    Column("photo_url", String(2048), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)


def _row_to_user(row: RowMapping) -> User:
    return User(**dict(row))


class SQLUserRepository:
    """User storage on a SQLAlchemy engine.

    Usage::

        repo = SQLUserRepository.from_url("sqlite:///bankusage.db")
        user = await repo.find_or_create_by_provider_id(create_request)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str) -> SQLUserRepository:
        if database_url.startswith("sqlite:///"):
            Path(database_url.removeprefix("sqlite:///")).expanduser().parent.mkdir(
                parents=True, exist_ok=True
            )
        return cls(create_engine(database_url))

    def _find(self, provider_user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(users_table).where(users_table.c.provider_user_id == provider_user_id)
            ).mappings().first()
        return _row_to_user(row) if row else None

    def _upsert(self, request: CreateUser) -> User:
        now = datetime.now(timezone.utc)
        with self.engine.begin() as conn:
            row = conn.execute(
                select(users_table).where(users_table.c.provider_user_id == request.provider_user_id)
            ).mappings().first()
            if row is None:
                user = User(**request.model_dump(), created_at=now, updated_at=now)
                conn.execute(insert(users_table).values(**user.model_dump()))
                logger.info("Created local user %s", user.id)
                return user
            conn.execute(
                update(users_table)
                .where(users_table.c.id == row["id"])
                .values(
                    email=request.email,
                    first_name=request.first_name,
                    last_name=request.last_name,
                    photo_url=request.photo_url,
                    updated_at=now,
                )
            )
            return User(**{**dict(row), **request.model_dump(), "updated_at": now})

    async def find_or_create_by_provider_id(self, request: CreateUser) -> User:
        try:
            return await asyncio.to_thread(self._upsert, request)
        except SQLAlchemyError as e:
            raise UserStoreError(f"Failed to save local user: {e}") from e

    async def find_by_provider_id(self, provider_user_id: str) -> User | None:
        try:
            return await asyncio.to_thread(self._find, provider_user_id)
        except SQLAlchemyError as e:
            raise UserStoreError(f"Failed to look up local user: {e}") from e
