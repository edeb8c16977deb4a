"""Durable key-value store with atomic sets and FIFO lists.

Every component that persists batches, submissions, the work queue or the
retrieval index goes through a RecordStore. Two backends are provided:

* ``SqlRecordStore`` keeps values, sets and lists in SQLModel tables inside the
  configured SQLite database. This is the default for local development and tests.
* ``RedisRecordStore`` maps the same operations onto native Redis strings, sets
  and lists for deployments that share state across workers.
"""

from __future__ import annotations

import logging
from typing import Protocol

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from batchgrader import db
from batchgrader.models import ListItem, RecordEntry, SetMember, utcnow
from batchgrader.settings import settings

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    def get(self, key: str) -> str | None:
        """Return the raw value stored under key."""

    def set(self, key: str, value: str) -> None:
        """Unconditionally write a value."""

    def delete(self, key: str) -> None:
        """Remove the value, set and list stored under key."""

    def compare_and_set(self, key: str, expected: str | None, value: str) -> bool:
        """Write value only if the stored value still equals expected (None = absent)."""

    def add_to_set(self, key: str, member: str) -> bool:
        """Add member; True if it was not already present."""

    def remove_from_set(self, key: str, member: str) -> None:
        """Remove member if present."""

    def set_members(self, key: str) -> set[str]:
        """Return all members of the set."""

    def push(self, key: str, value: str) -> None:
        """Append value to the tail of the list."""

    def pop(self, key: str) -> str | None:
        """Atomically remove and return the head of the list."""

    def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        """Return list items between start and stop inclusive."""

    def list_length(self, key: str) -> int:
        """Return the list length."""

    def scan(self, cursor: int, match: str, count: int = 100) -> tuple[int, list[str]]:
        """Iterate value keys matching a glob pattern. A returned cursor of 0 ends the scan."""


def _glob_to_like(pattern: str) -> str:
    translated: list[str] = []
    for char in pattern:
        if char == "*":
            translated.append("%")
        elif char == "?":
            translated.append("_")
        elif char in {"%", "_", "\\"}:
            translated.append("\\" + char)
        else:
            translated.append(char)
    return "".join(translated)


class SqlRecordStore:
    """RecordStore backed by SQLModel tables."""

    def __init__(self, engine: Engine | None = None) -> None:
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine if self._engine is not None else db.engine

    def get(self, key: str) -> str | None:
        with self.engine.connect() as conn:
            return conn.execute(select(RecordEntry.value).where(RecordEntry.key == key)).scalar_one_or_none()

    def set(self, key: str, value: str) -> None:
        statement = update(RecordEntry).where(RecordEntry.key == key).values(value=value, updated_at=utcnow())
        with self.engine.begin() as conn:
            if conn.execute(statement).rowcount:
                return
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(RecordEntry).values(key=key, value=value, updated_at=utcnow()))
        except IntegrityError:
            # A concurrent writer inserted first; last writer wins.
            with self.engine.begin() as conn:
                conn.execute(statement)

    def delete(self, key: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(RecordEntry).where(RecordEntry.key == key))
            conn.execute(delete(SetMember).where(SetMember.set_key == key))
            conn.execute(delete(ListItem).where(ListItem.list_key == key))

    def compare_and_set(self, key: str, expected: str | None, value: str) -> bool:
        if expected is None:
            try:
                with self.engine.begin() as conn:
                    conn.execute(insert(RecordEntry).values(key=key, value=value, updated_at=utcnow()))
            except IntegrityError:
                return False
            return True

        with self.engine.begin() as conn:
            result = conn.execute(
                update(RecordEntry)
                .where(RecordEntry.key == key, RecordEntry.value == expected)
                .values(value=value, updated_at=utcnow())
            )
            return result.rowcount == 1

    def add_to_set(self, key: str, member: str) -> bool:
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(SetMember).values(set_key=key, member=member))
        except IntegrityError:
            return False
        return True

    def remove_from_set(self, key: str, member: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(SetMember).where(SetMember.set_key == key, SetMember.member == member))

    def set_members(self, key: str) -> set[str]:
        with self.engine.connect() as conn:
            return set(conn.execute(select(SetMember.member).where(SetMember.set_key == key)).scalars())

    def push(self, key: str, value: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(insert(ListItem).values(list_key=key, value=value))

    def pop(self, key: str) -> str | None:
        while True:
            with self.engine.begin() as conn:
                head = conn.execute(
                    select(ListItem.id, ListItem.value).where(ListItem.list_key == key).order_by(ListItem.id).limit(1)
                ).first()
                if head is None:
                    return None
                # Another consumer may have taken the same head row; only the delete that lands wins.
                if conn.execute(delete(ListItem).where(ListItem.id == head.id)).rowcount == 1:
                    return head.value

    def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        with self.engine.connect() as conn:
            values = list(
                conn.execute(select(ListItem.value).where(ListItem.list_key == key).order_by(ListItem.id)).scalars()
            )
        end = None if stop == -1 else stop + 1
        return values[start:end]

    def list_length(self, key: str) -> int:
        return len(self.list_range(key))

    def scan(self, cursor: int, match: str, count: int = 100) -> tuple[int, list[str]]:
        statement = (
            select(RecordEntry.key)
            .where(RecordEntry.key.like(_glob_to_like(match), escape="\\"))
            .order_by(RecordEntry.key)
            .offset(cursor)
            .limit(count)
        )
        with self.engine.connect() as conn:
            keys = list(conn.execute(statement).scalars())
        next_cursor = cursor + len(keys) if len(keys) == count else 0
        return next_cursor, keys


class RedisRecordStore:
    """RecordStore backed by a Redis server."""

    def __init__(self, client) -> None:
        self._client = client

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisRecordStore":
        from redis import Redis

        return cls(Redis.from_url(redis_url, decode_responses=True))

    def get(self, key: str) -> str | None:
        return self._client.get(key)

    def set(self, key: str, value: str) -> None:
        self._client.set(key, value)

    def delete(self, key: str) -> None:
        self._client.delete(key)

    def compare_and_set(self, key: str, expected: str | None, value: str) -> bool:
        from redis.exceptions import WatchError

        with self._client.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.get(key) != expected:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, value)
                pipe.execute()
                return True
            except WatchError:
                return False

    def add_to_set(self, key: str, member: str) -> bool:
        return self._client.sadd(key, member) == 1

    def remove_from_set(self, key: str, member: str) -> None:
        self._client.srem(key, member)

    def set_members(self, key: str) -> set[str]:
        return set(self._client.smembers(key))

    def push(self, key: str, value: str) -> None:
        self._client.rpush(key, value)

    def pop(self, key: str) -> str | None:
        return self._client.lpop(key)

    def list_range(self, key: str, start: int = 0, stop: int = -1) -> list[str]:
        return list(self._client.lrange(key, start, stop))

    def list_length(self, key: str) -> int:
        return int(self._client.llen(key))

    def scan(self, cursor: int, match: str, count: int = 100) -> tuple[int, list[str]]:
        next_cursor, keys = self._client.scan(cursor=cursor, match=match, count=count)
        return int(next_cursor), list(keys)


_store: RecordStore | None = None


def _create_store() -> RecordStore:
    backend = settings.record_store_backend.lower().strip()
    if backend == "redis":
        logger.info("record store backend selected", extra={"backend": backend})
        return RedisRecordStore.from_url(settings.redis_url)
    if backend != "sql":
        raise ValueError(f"Unknown record store backend '{settings.record_store_backend}'. Use one of: sql, redis")
    return SqlRecordStore()


def get_record_store() -> RecordStore:
    global _store
    if _store is None:
        _store = _create_store()
    return _store


def reset_record_store() -> None:
    global _store
    _store = None
