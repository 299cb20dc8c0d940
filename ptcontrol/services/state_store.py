"""Latest-record-per-entity storage shared by the ingestion path and the control engine.

Every write is an insert-or-merge keyed by entity name, so the store holds at
most one document per key. Each write stamps ``updated_at`` and a store wide,
monotonically increasing ``revision``; readers use the pair to pick the
authoritative record when more than one candidate exists for a key.
"""
from __future__ import annotations

import asyncio
import itertools
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError

from ptcontrol.exceptions import StoreReadError, StoreWriteError
from ptcontrol.models import EntityRecord, entity_record_adapter, utcnow

logger = logging.getLogger(__name__)


def merge_document(
    existing: Optional[Mapping[str, Any]],
    key: str,
    kind: str,
    fields: Mapping[str, Any],
    revision: int,
    on_insert: Optional[Mapping[str, Any]] = None,
) -> EntityRecord:
    """Apply ``fields`` on top of ``existing`` the way a ``$set`` upsert would.

    ``on_insert`` seeds a document that does not exist yet, like ``$setOnInsert``.
    """

    if existing is not None and existing.get("kind") == kind:
        doc: Dict[str, Any] = dict(existing)
    else:
        doc = dict(on_insert or {})
    doc.update(fields)
    doc["key"] = key
    doc["kind"] = kind
    doc["revision"] = revision
    if "updated_at" not in fields:
        doc["updated_at"] = utcnow()
    try:
        return entity_record_adapter.validate_python(doc)
    except ValidationError as exc:
        raise StoreWriteError(f"Invalid {kind} record for {key}: {exc}", key=key) from exc


class StateStore(ABC):
    """Async contract for the entity record store."""

    def __init__(self, *, timeout_seconds: float = 5.0) -> None:
        self.timeout_seconds = float(timeout_seconds)

    async def upsert(
        self,
        key: str,
        kind: str,
        fields: Mapping[str, Any],
        *,
        on_insert: Optional[Mapping[str, Any]] = None,
    ) -> EntityRecord:
        """Insert or merge-update the record for ``key``.

        ``on_insert`` holds fields applied only when the record is created.
        Raises :class:`StoreWriteError` on failure or timeout.
        """

        try:
            return await asyncio.wait_for(
                self._upsert(key, kind, dict(fields), dict(on_insert or {})),
                timeout=self.timeout_seconds,
            )
        except StoreWriteError:
            raise
        except asyncio.TimeoutError as exc:
            raise StoreWriteError(f"Timed out writing {key}", key=key) from exc
        except Exception as exc:
            raise StoreWriteError(f"Failed writing {key}: {exc}", key=key) from exc

    async def latest(self) -> List[EntityRecord]:
        """Return the most recent record for every key.

        Raises :class:`StoreReadError` on failure or timeout.
        """

        try:
            return await asyncio.wait_for(self._latest(), timeout=self.timeout_seconds)
        except StoreReadError:
            raise
        except asyncio.TimeoutError as exc:
            raise StoreReadError("Timed out reading latest records") from exc
        except Exception as exc:
            raise StoreReadError(f"Failed reading latest records: {exc}") from exc

    async def get(self, key: str) -> Optional[EntityRecord]:
        for record in await self.latest():
            if record.key == key:
                return record
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def _upsert(
        self, key: str, kind: str, fields: Dict[str, Any], on_insert: Dict[str, Any]
    ) -> EntityRecord:
        ...

    @abstractmethod
    async def _latest(self) -> List[EntityRecord]:
        ...


class MemoryStateStore(StateStore):
    """Process-local store, used for tests and single-process deployments."""

    def __init__(self, *, timeout_seconds: float = 5.0) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self._records: Dict[str, EntityRecord] = {}
        self._revision = 0

    async def _upsert(
        self, key: str, kind: str, fields: Dict[str, Any], on_insert: Dict[str, Any]
    ) -> EntityRecord:
        existing = self._records.get(key)
        self._revision += 1
        record = merge_document(
            existing.model_dump() if existing is not None else None,
            key,
            kind,
            fields,
            self._revision,
            on_insert,
        )
        self._records[key] = record
        return record

    async def _latest(self) -> List[EntityRecord]:
        return sorted(self._records.values(), key=lambda record: record.updated_at, reverse=True)


class SqliteStateStore(StateStore):
    """SQLite backed store; one row per entity key holding the JSON document.

    Writes run in worker threads. A write that timed out on the event loop may
    still be queued on the lock behind a newer write for the same key, so each
    write carries a sequence number taken on the loop and a write that arrives
    after a newer one for its key is refused instead of applied.
    """

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS entity_records (
            key TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            revision INTEGER NOT NULL,
            doc TEXT NOT NULL
        )
    """

    def __init__(self, path: Path | str, *, timeout_seconds: float = 5.0) -> None:
        super().__init__(timeout_seconds=timeout_seconds)
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._sequence = itertools.count(1)
        self._applied: Dict[str, int] = {}
        # Transactions are opened explicitly in _upsert_sync.
        self._conn = sqlite3.connect(
            str(self.path),
            check_same_thread=False,
            timeout=timeout_seconds,
            isolation_level=None,
        )
        with self._lock:
            self._conn.execute(self._SCHEMA)
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_entity_records_updated ON entity_records (updated_at)"
            )

    async def _upsert(
        self, key: str, kind: str, fields: Dict[str, Any], on_insert: Dict[str, Any]
    ) -> EntityRecord:
        sequence = next(self._sequence)
        return await asyncio.to_thread(self._upsert_sync, key, kind, fields, on_insert, sequence)

    async def _latest(self) -> List[EntityRecord]:
        return await asyncio.to_thread(self._latest_sync)

    async def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _upsert_sync(
        self,
        key: str,
        kind: str,
        fields: Dict[str, Any],
        on_insert: Dict[str, Any],
        sequence: Optional[int] = None,
    ) -> EntityRecord:
        with self._lock:
            if sequence is not None and sequence < self._applied.get(key, 0):
                logger.warning("Dropping superseded write for %s (sequence %s)", key, sequence)
                raise StoreWriteError(f"Write for {key} superseded by a newer one", key=key)
            try:
                cur = self._conn.cursor()
                cur.execute("BEGIN IMMEDIATE")
                row = cur.execute("SELECT doc FROM entity_records WHERE key = ?", (key,)).fetchone()
                existing = json.loads(row[0]) if row else None
                (max_revision,) = cur.execute("SELECT COALESCE(MAX(revision), 0) FROM entity_records").fetchone()
                record = merge_document(existing, key, kind, fields, int(max_revision) + 1, on_insert)
                cur.execute(
                    """
                    INSERT INTO entity_records (key, kind, updated_at, revision, doc)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        kind = excluded.kind,
                        updated_at = excluded.updated_at,
                        revision = excluded.revision,
                        doc = excluded.doc
                    """,
                    (
                        key,
                        kind,
                        record.updated_at.isoformat(),
                        record.revision,
                        record.model_dump_json(),
                    ),
                )
                self._conn.commit()
                if sequence is not None:
                    self._applied[key] = sequence
                return record
            except sqlite3.Error as exc:
                if self._conn.in_transaction:
                    self._conn.rollback()
                raise StoreWriteError(f"SQLite upsert failed for {key}: {exc}", key=key) from exc
            except StoreWriteError:
                if self._conn.in_transaction:
                    self._conn.rollback()
                raise

    def _latest_sync(self) -> List[EntityRecord]:
        with self._lock:
            try:
                rows = self._conn.execute(
                    "SELECT doc FROM entity_records ORDER BY updated_at DESC, revision DESC"
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreReadError(f"SQLite query failed: {exc}") from exc
        records: List[EntityRecord] = []
        for (doc,) in rows:
            try:
                records.append(entity_record_adapter.validate_json(doc))
            except ValidationError as exc:
                logger.warning("Skipping unreadable entity record: %s", exc)
        return records


def build_store(settings) -> StateStore:
    if settings.store_backend == "memory":
        return MemoryStateStore(timeout_seconds=settings.store_timeout_seconds)
    return SqliteStateStore(settings.store_file, timeout_seconds=settings.store_timeout_seconds)
