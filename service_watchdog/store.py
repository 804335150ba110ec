from __future__ import annotations

import asyncio
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Protocol

from .errors import PersistenceFailure
from .models import DEFAULT_CHECK_INTERVAL_MS, ONLINE, Service, StatusLogEntry, as_utc


SCHEMA_VERSION = 1

_PATCHABLE = {"status", "is_deploying", "check_interval_ms", "last_fail_at"}


class ServiceStore(Protocol):
    """Storage contract the watchdog depends on. The CRUD layer owns the records."""

    async def find(self) -> list[Service]: ...

    async def find_by_id(self, service_id: str) -> Service | None: ...

    async def save(self, service: Service) -> bool: ...

    async def update_state(self, service: Service) -> bool: ...

    async def update_many(self, patch: dict[str, Any]) -> int: ...

    async def insert_many(self, entries: Iterable[StatusLogEntry]) -> int: ...

    async def create(self, entry: StatusLogEntry) -> None: ...

    async def logs_between(
        self, service_id: str, since: datetime, until: datetime | None = None
    ) -> list[StatusLogEntry]: ...


def _uuid() -> str:
    return str(uuid.uuid4())


def _to_ts(value: datetime | None) -> float | None:
    if value is None:
        return None
    return as_utc(value).timestamp()


def _from_ts(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL lets the CRUD process read while the watchdog writes.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.Error:
        pass
    return conn


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return
    if cur == 0:
        _apply_v1(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return
    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS services (
          id TEXT PRIMARY KEY,
          user_id TEXT NOT NULL DEFAULT '',
          name TEXT NOT NULL,
          url TEXT NOT NULL,
          status TEXT NOT NULL DEFAULT 'online', -- online|offline
          check_interval_ms INTEGER NOT NULL DEFAULT 3000,
          discord_webhook TEXT NOT NULL DEFAULT '',
          coolify_webhook TEXT NOT NULL DEFAULT '',
          coolify_token TEXT NOT NULL DEFAULT '',
          last_fail_at_ts REAL,
          is_deploying INTEGER NOT NULL DEFAULT 0,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS status_logs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          service_id TEXT NOT NULL,
          status TEXT NOT NULL,
          checked_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_status_logs_service_checked ON status_logs(service_id, checked_at_ts);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_status_logs_checked ON status_logs(checked_at_ts);")


def _row_to_service(row: sqlite3.Row) -> Service:
    return Service(
        id=str(row["id"]),
        user_id=str(row["user_id"] or ""),
        name=str(row["name"]),
        url=str(row["url"]),
        status=str(row["status"] or ONLINE),  # type: ignore[arg-type]
        check_interval_ms=int(row["check_interval_ms"] or DEFAULT_CHECK_INTERVAL_MS),
        discord_webhook=str(row["discord_webhook"] or ""),
        coolify_webhook=str(row["coolify_webhook"] or ""),
        coolify_token=str(row["coolify_token"] or ""),
        last_fail_at=_from_ts(row["last_fail_at_ts"]),
        is_deploying=bool(row["is_deploying"]),
        created_at=_from_ts(row["created_at_ts"]),
        updated_at=_from_ts(row["updated_at_ts"]),
    )


def _row_to_entry(row: sqlite3.Row) -> StatusLogEntry:
    return StatusLogEntry(
        service_id=str(row["service_id"]),
        status=str(row["status"]),  # type: ignore[arg-type]
        checked_at=_from_ts(row["checked_at_ts"]),  # type: ignore[arg-type]
    )


class SqliteStore:
    """SQLite-backed ServiceStore. Blocking calls run in worker threads."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def ensure_schema(self) -> None:
        conn = _connect(self.db_path)
        try:
            _ensure_schema_conn(conn)
        finally:
            conn.close()

    async def _run(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"{fn.__name__}: {e}") from e

    def _execute(self, sql: str, params: tuple = ()) -> int:
        conn = _connect(self.db_path)
        try:
            _ensure_schema_conn(conn)
            res = conn.execute(sql, params)
            return int(res.rowcount or 0)
        finally:
            conn.close()

    def _fetch(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        conn = _connect(self.db_path)
        try:
            _ensure_schema_conn(conn)
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    # --- services ---

    async def find(self) -> list[Service]:
        rows = await self._run(self._fetch, "SELECT * FROM services ORDER BY created_at_ts ASC")
        return [_row_to_service(r) for r in rows]

    async def find_by_id(self, service_id: str) -> Service | None:
        rows = await self._run(self._fetch, "SELECT * FROM services WHERE id=?", (str(service_id),))
        return _row_to_service(rows[0]) if rows else None

    async def create_service(self, service: Service) -> Service:
        now = time.time()
        if not service.id:
            service.id = _uuid()
        service.created_at = service.updated_at = _from_ts(now)
        await self._run(
            self._execute,
            """
            INSERT INTO services (
              id, user_id, name, url, status, check_interval_ms, discord_webhook, coolify_webhook,
              coolify_token, last_fail_at_ts, is_deploying, created_at_ts, updated_at_ts
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                service.id,
                service.user_id,
                service.name,
                service.url,
                service.status,
                int(service.check_interval_ms),
                service.discord_webhook,
                service.coolify_webhook,
                service.coolify_token,
                _to_ts(service.last_fail_at),
                1 if service.is_deploying else 0,
                now,
                now,
            ),
        )
        return service

    async def save(self, service: Service) -> bool:
        """Update an existing row. A service deleted meanwhile is not recreated."""
        now = time.time()
        updated = await self._run(
            self._execute,
            """
            UPDATE services SET
              name=?, url=?, status=?, check_interval_ms=?, discord_webhook=?, coolify_webhook=?,
              coolify_token=?, last_fail_at_ts=?, is_deploying=?, updated_at_ts=?
            WHERE id=?
            """,
            (
                service.name,
                service.url,
                service.status,
                int(service.check_interval_ms),
                service.discord_webhook,
                service.coolify_webhook,
                service.coolify_token,
                _to_ts(service.last_fail_at),
                1 if service.is_deploying else 0,
                now,
                service.id,
            ),
        )
        if updated:
            service.updated_at = _from_ts(now)
        return updated > 0

    async def update_state(self, service: Service) -> bool:
        """Write only the watchdog-owned columns. Edits to the rest of the row are left alone."""
        now = time.time()
        updated = await self._run(
            self._execute,
            "UPDATE services SET status=?, is_deploying=?, last_fail_at_ts=?, updated_at_ts=? WHERE id=?",
            (
                service.status,
                1 if service.is_deploying else 0,
                _to_ts(service.last_fail_at),
                now,
                service.id,
            ),
        )
        if updated:
            service.updated_at = _from_ts(now)
        return updated > 0

    async def update_many(self, patch: dict[str, Any]) -> int:
        """Apply a field patch to every service."""
        cleaned = {k: v for k, v in (patch or {}).items() if k in _PATCHABLE}
        if not cleaned:
            return 0

        sets: list[str] = []
        params: list[Any] = []
        if "status" in cleaned:
            sets.append("status=?")
            params.append(str(cleaned["status"]))
        if "is_deploying" in cleaned:
            sets.append("is_deploying=?")
            params.append(1 if bool(cleaned["is_deploying"]) else 0)
        if "check_interval_ms" in cleaned:
            sets.append("check_interval_ms=?")
            params.append(int(cleaned["check_interval_ms"]))
        if "last_fail_at" in cleaned:
            sets.append("last_fail_at_ts=?")
            params.append(_to_ts(cleaned["last_fail_at"]))
        sets.append("updated_at_ts=?")
        params.append(time.time())

        return await self._run(self._execute, f"UPDATE services SET {', '.join(sets)}", tuple(params))

    async def delete_service(self, service_id: str) -> bool:
        deleted = await self._run(self._execute, "DELETE FROM services WHERE id=?", (str(service_id),))
        return deleted > 0

    # --- status logs ---

    async def create(self, entry: StatusLogEntry) -> None:
        await self.insert_many([entry])

    async def insert_many(self, entries: Iterable[StatusLogEntry]) -> int:
        rows = [(e.service_id, e.status, _to_ts(e.checked_at)) for e in entries]
        if not rows:
            return 0
        return await self._run(self._insert_logs, rows)

    def _insert_logs(self, rows: list[tuple]) -> int:
        conn = _connect(self.db_path)
        try:
            _ensure_schema_conn(conn)
            conn.execute("BEGIN")
            conn.executemany("INSERT INTO status_logs (service_id, status, checked_at_ts) VALUES (?, ?, ?)", rows)
            conn.execute("COMMIT")
            return len(rows)
        except sqlite3.Error:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    async def logs_between(
        self, service_id: str, since: datetime, until: datetime | None = None
    ) -> list[StatusLogEntry]:
        sql = "SELECT * FROM status_logs WHERE service_id=? AND checked_at_ts>=?"
        params: list[Any] = [str(service_id), _to_ts(since)]
        if until is not None:
            sql += " AND checked_at_ts<?"
            params.append(_to_ts(until))
        sql += " ORDER BY checked_at_ts ASC, id ASC"
        rows = await self._run(self._fetch, sql, tuple(params))
        return [_row_to_entry(r) for r in rows]
