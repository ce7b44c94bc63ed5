"""
Shared key-value store for the ledger.

A ``StoreBackend`` holds JSON-encoded values under string keys together with
a per-key version number. Every execution context (an API worker, a test
"tab") talks to the backend through its own ``StoreHandle``. Writes made
through one handle are announced to every *other* handle on the same backend
via the backend's ``ChangeChannel``; handles on different backends that share
one database (separate processes) catch up with ``StoreHandle.poll()``.
The writer is never notified of its own change.

Deleting a key leaves a tombstone, so a key's version never goes backwards
and a delete reaches other contexts like any other write (with value ``None``).
"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from medpool.exceptions import ConcurrentModificationError
from medpool.models.kv_entry import KVEntry

logger = logging.getLogger(__name__)

StoreCallback = Callable[[str, Any], None]

_UNDECODABLE = object()


class ChangeChannel:
    """In-process publish/subscribe channel scoped to one backend."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[tuple[str, Callable]]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, context_id: str, key: str, listener: Callable) -> Callable[[], None]:
        entry = (context_id, listener)
        with self._lock:
            self._listeners[key].append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._listeners[key]:
                    self._listeners[key].remove(entry)

        return unsubscribe

    def publish(self, origin_id: str, key: str, value: Any, version: int) -> None:
        with self._lock:
            listeners = list(self._listeners.get(key, ()))
        for context_id, listener in listeners:
            if context_id == origin_id:
                continue
            listener(key, value, version)


class StoreBackend(ABC):
    def __init__(self) -> None:
        self.channel = ChangeChannel()

    @abstractmethod
    def read(self, key: str) -> tuple[str | None, int] | None:
        """Return ``(raw_json, version)``, ``(None, version)`` for a deleted
        key, or ``None`` when the key was never written."""

    @abstractmethod
    def write(self, key: str, raw: str, expected_version: int | None = None) -> int:
        """Store ``raw`` and return the new version.

        With ``expected_version`` set the write only succeeds when the stored
        version still matches (0 = key was never written).
        """

    @abstractmethod
    def remove(self, key: str) -> int:
        """Tombstone ``key`` and return its new version (0 if it never existed)."""

    @abstractmethod
    def versions(self, prefix: str = "") -> dict[str, int]:
        """Versions of every key under ``prefix``, tombstones included."""

    @abstractmethod
    def keys(self, prefix: str = "") -> list[str]:
        """Live (not deleted) keys under ``prefix``, sorted."""


class MemoryBackend(StoreBackend):
    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, tuple[str | None, int]] = {}
        self._lock = threading.Lock()

    def read(self, key: str) -> tuple[str | None, int] | None:
        return self._data.get(key)

    def write(self, key: str, raw: str, expected_version: int | None = None) -> int:
        with self._lock:
            current = self._data.get(key)
            current_version = current[1] if current else 0
            if expected_version is not None and expected_version != current_version:
                raise ConcurrentModificationError(key, expected_version, current_version)
            version = current_version + 1
            self._data[key] = (raw, version)
            return version

    def remove(self, key: str) -> int:
        with self._lock:
            current = self._data.get(key)
            if current is None:
                return 0
            if current[0] is None:
                return current[1]
            version = current[1] + 1
            self._data[key] = (None, version)
            return version

    def versions(self, prefix: str = "") -> dict[str, int]:
        return {k: v for k, (_raw, v) in list(self._data.items()) if k.startswith(prefix)}

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k, (raw, _v) in list(self._data.items()) if k.startswith(prefix) and raw is not None)


class SqlBackend(StoreBackend):
    """Durable backend on the ``kv_entries`` table. A NULL value is a tombstone."""

    def __init__(self, session_factory: sessionmaker) -> None:
        super().__init__()
        self._session_factory = session_factory

    def read(self, key: str) -> tuple[str | None, int] | None:
        with self._session_factory() as db:
            entry = db.get(KVEntry, key)
            if entry is None:
                return None
            return entry.value, entry.version

    def write(self, key: str, raw: str, expected_version: int | None = None) -> int:
        with self._session_factory() as db:
            if expected_version is None:
                return self._upsert(db, key, raw)

            if expected_version == 0:
                db.add(KVEntry(key=key, value=raw, version=1))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    raise ConcurrentModificationError(key, 0, self._current_version(db, key))
                return 1

            # Compare-and-swap: only the row still at expected_version is updated
            result = db.execute(
                update(KVEntry)
                .where(KVEntry.key == key, KVEntry.version == expected_version)
                .values(value=raw, version=expected_version + 1, updated_at=datetime.now(timezone.utc))
            )
            if result.rowcount != 1:
                db.rollback()
                raise ConcurrentModificationError(key, expected_version, self._current_version(db, key))
            db.commit()
            return expected_version + 1

    def remove(self, key: str) -> int:
        with self._session_factory() as db:
            result = db.execute(
                update(KVEntry)
                .where(KVEntry.key == key, KVEntry.value.is_not(None))
                .values(value=None, version=KVEntry.version + 1, updated_at=datetime.now(timezone.utc))
            )
            version = self._current_version(db, key)
            db.commit()
            if result.rowcount:
                logger.debug("Tombstoned %s at version %d", key, version)
            return version

    def versions(self, prefix: str = "") -> dict[str, int]:
        with self._session_factory() as db:
            rows = db.execute(
                select(KVEntry.key, KVEntry.version).where(KVEntry.key.startswith(prefix, autoescape=True))
            ).all()
        return {key: version for key, version in rows}

    def keys(self, prefix: str = "") -> list[str]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(KVEntry.key)
                .where(KVEntry.key.startswith(prefix, autoescape=True), KVEntry.value.is_not(None))
                .order_by(KVEntry.key)
            ).all()
        return list(rows)

    def _upsert(self, db, key: str, raw: str) -> int:
        # Bump in place first so concurrent writers serialise on the row
        for _attempt in range(2):
            result = db.execute(
                update(KVEntry)
                .where(KVEntry.key == key)
                .values(value=raw, version=KVEntry.version + 1, updated_at=datetime.now(timezone.utc))
            )
            if result.rowcount == 1:
                version = self._current_version(db, key)
                db.commit()
                return version
            db.add(KVEntry(key=key, value=raw, version=1))
            try:
                db.commit()
                return 1
            except IntegrityError:
                # Another writer inserted the row first; update it instead
                db.rollback()
        raise ConcurrentModificationError(key, 0, self._current_version(db, key))

    @staticmethod
    def _current_version(db, key: str) -> int:
        return db.scalar(select(KVEntry.version).where(KVEntry.key == key)) or 0


class StoreHandle:
    """One execution context's view of a shared backend."""

    def __init__(self, backend: StoreBackend) -> None:
        self.backend = backend
        self.context_id = uuid4().hex
        self._callbacks: dict[str, list[StoreCallback]] = defaultdict(list)
        self._channel_unsubscribers: dict[str, Callable[[], None]] = {}
        self._seen: dict[str, int] = {}

    def get(self, key: str, default: Any = None) -> Any:
        row = self.backend.read(key)
        if row is None:
            return default
        raw, version = row
        self._seen[key] = version
        if raw is None:
            return default
        value = self._decode(key, raw)
        return default if value is _UNDECODABLE else value

    def version(self, key: str) -> int:
        row = self.backend.read(key)
        return row[1] if row else 0

    def seen_version(self, key: str) -> int:
        """Version of ``key`` as of the last read, write or delivered change."""
        return self._seen.get(key, 0)

    def set(self, key: str, value: Any, expected_version: int | None = None) -> int:
        raw = json.dumps(value, ensure_ascii=False)
        version = self.backend.write(key, raw, expected_version)
        self._seen[key] = version
        self.backend.channel.publish(self.context_id, key, value, version)
        return version

    def delete(self, key: str) -> None:
        version = self.backend.remove(key)
        if not version:
            return
        self._seen[key] = version
        self.backend.channel.publish(self.context_id, key, None, version)

    def keys(self, prefix: str = "") -> list[str]:
        return self.backend.keys(prefix)

    def subscribe(self, key: str, callback: StoreCallback) -> Callable[[], None]:
        """Call ``callback(key, value)`` when another context changes ``key``.

        ``value`` is ``None`` when the key was deleted.
        """
        self._callbacks[key].append(callback)
        if key not in self._channel_unsubscribers:
            self._channel_unsubscribers[key] = self.backend.channel.subscribe(
                self.context_id, key, self._deliver
            )

        def unsubscribe() -> None:
            if callback in self._callbacks.get(key, []):
                self._callbacks[key].remove(callback)

        return unsubscribe

    def poll(self) -> list[str]:
        """Deliver changes other processes wrote since this handle last saw each key."""
        if not self._callbacks:
            return []
        versions = self.backend.versions()
        changed = []
        for key in list(self._callbacks):
            version = versions.get(key)
            if version is None or version == self._seen.get(key):
                continue
            row = self.backend.read(key)
            if row is None:
                continue
            raw, version = row
            value = None if raw is None else self._decode(key, raw)
            if value is _UNDECODABLE:
                self._seen[key] = version
                continue
            self._deliver(key, value, version)
            changed.append(key)
        return changed

    def close(self) -> None:
        for unsubscribe in self._channel_unsubscribers.values():
            unsubscribe()
        self._channel_unsubscribers.clear()
        self._callbacks.clear()

    def _deliver(self, key: str, value: Any, version: int) -> None:
        self._seen[key] = version
        for callback in list(self._callbacks.get(key, ())):
            callback(key, value)

    @staticmethod
    def _decode(key: str, raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Stored value for %s is not valid JSON, using default", key)
            return _UNDECODABLE
