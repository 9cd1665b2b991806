from __future__ import annotations

import json
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager, nullcontext
from dataclasses import asdict, fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from conductor.errors import NotFoundError, StoreError

R = TypeVar("R")

Row = dict[str, Any]


def _matches(row: Row, filters: dict[str, Any]) -> bool:
    for key, expected in filters.items():
        value = row.get(key)
        if isinstance(expected, (set, frozenset, list, tuple)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def _sort_key(row: Row, column: str) -> tuple[bool, Any]:
    value = row.get(column)
    return value is None, value if value is not None else 0


def _to_record(cls: type[R], row: Row) -> R:
    names = {item.name for item in fields(cls)}
    return cls(**{key: value for key, value in row.items() if key in names})


class Store(ABC):
    """Row storage keyed by ``id``, one table per record class.

    Filters are equality matches, or inclusion when the expected value is a
    set, list or tuple. Rows come back in creation order unless ``descending``.
    """

    @abstractmethod
    def _transaction(self, table: str) -> Any:
        """Context manager guarding one read-modify-write of ``table``."""

    @abstractmethod
    def _read_table(self, table: str) -> dict[str, Row]:
        """Return the rows of ``table`` keyed by id."""

    @abstractmethod
    def _write_table(self, table: str, rows: dict[str, Row]) -> None:
        """Replace the rows of ``table``."""

    def _mutate(self, table: str, mutator: Callable[[dict[str, Row]], Any]) -> Any:
        with self._transaction(table):
            rows = self._read_table(table)
            result = mutator(rows)
            self._write_table(table, rows)
            return result

    async def insert(self, record: R) -> R:
        row = asdict(record)
        table = type(record).__table__

        def apply(rows: dict[str, Row]) -> None:
            if row["id"] in rows:
                raise StoreError(f"Duplicate id in {table}: {row['id']}")
            rows[row["id"]] = row

        self._mutate(table, apply)
        return record

    async def get(self, cls: type[R], record_id: str) -> R | None:
        row = self._read_table(cls.__table__).get(record_id)
        return _to_record(cls, row) if row is not None else None

    async def require(self, cls: type[R], record_id: str) -> R:
        record = await self.get(cls, record_id)
        if record is None:
            raise NotFoundError(f"{cls.__name__} not found: {record_id}")
        return record

    async def update(
        self,
        cls: type[R],
        record_id: str,
        *,
        expect: dict[str, Any] | None = None,
        **changes: Any,
    ) -> R | None:
        """Apply ``changes`` in one write; returns None if missing or ``expect`` fails."""

        def apply(rows: dict[str, Row]) -> Row | None:
            row = rows.get(record_id)
            if row is None or (expect and not _matches(row, expect)):
                return None
            row.update(changes)
            return dict(row)

        row = self._mutate(cls.__table__, apply)
        return _to_record(cls, row) if row is not None else None

    async def select(
        self,
        cls: type[R],
        *,
        order_by: str = "created_at",
        descending: bool = False,
        limit: int | None = None,
        **filters: Any,
    ) -> list[R]:
        rows = [row for row in self._read_table(cls.__table__).values() if _matches(row, filters)]
        rows.sort(key=lambda row: _sort_key(row, order_by), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return [_to_record(cls, row) for row in rows]

    async def first(self, cls: type[R], **filters: Any) -> R | None:
        found = await self.select(cls, limit=1, **filters)
        return found[0] if found else None

    async def delete(self, cls: type[R], record_id: str) -> bool:
        return bool(self._mutate(cls.__table__, lambda rows: rows.pop(record_id, None)))

    async def delete_where(self, cls: type[R], **filters: Any) -> int:
        def apply(rows: dict[str, Row]) -> int:
            doomed = [key for key, row in rows.items() if _matches(row, filters)]
            for key in doomed:
                del rows[key]
            return len(doomed)

        return self._mutate(cls.__table__, apply)


class MemoryStore(Store):
    def __init__(self) -> None:
        self._tables: dict[str, dict[str, Row]] = {}

    def _transaction(self, table: str) -> Any:
        return nullcontext()

    def _read_table(self, table: str) -> dict[str, Row]:
        rows = self._tables.get(table, {})
        return {key: dict(row) for key, row in rows.items()}

    def _write_table(self, table: str, rows: dict[str, Row]) -> None:
        self._tables[table] = rows


class FileStore(Store):
    """JSON-file tables shared between processes, serialized by a lock file."""

    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path, *, lock_timeout_seconds: float = 5.0) -> None:
        self.state_dir = state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def _table_file(self, table: str) -> Path:
        return self.state_dir / f"{table}.json"

    @contextmanager
    def _state_lock(self) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _transaction(self, table: str) -> Any:
        return self._state_lock()

    def _read_envelope(self, table: str) -> dict[str, Any]:
        path = self._table_file(table)
        if not path.exists():
            return {"schema_version": self.SCHEMA_VERSION, "revision": 0, "data": {}}
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StoreError(f"Corrupt state table {path}: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            raise StoreError(f"Unexpected state table layout in {path}")
        return payload

    def _read_table(self, table: str) -> dict[str, Row]:
        return self._read_envelope(table)["data"]

    def _write_table(self, table: str, rows: dict[str, Row]) -> None:
        current = self._read_envelope(table)
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": int(current.get("revision", 0)) + 1,
            "updated_at": self._utcnow_iso(),
            "data": rows,
        }
        path = self._table_file(table)
        temp_path = path.with_suffix(".json.tmp")
        temp_path.write_text(
            json.dumps(envelope, ensure_ascii=False, separators=(",", ":")), encoding="utf-8"
        )
        os.replace(temp_path, path)
