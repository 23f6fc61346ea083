# memory/conversation.py
"""
Persistent chat history.

Every save replaces the whole conversation (DELETE + INSERT in one sqlite
transaction). Operations are admitted one at a time in FIFO order through an
asyncio gate, and the blocking sqlite work runs in a worker thread under a
process-wide threading lock, so a worker that outlives its timeout still cannot
interleave with the next operation.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import weakref
from contextlib import asynccontextmanager, closing
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, List, Optional, Sequence, Tuple, TypeVar

import config as cfg
from backend.session.errors import HearthError
from backend.session.state import ChatMessage

log = logging.getLogger("hearth.store")

T = TypeVar("T")

# Serialized timestamps sort lexicographically in chronological order
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    role TEXT NOT NULL CHECK (role IN ('user','assistant','system')),
    content TEXT NOT NULL,
    timestamp TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_messages_timestamp ON messages(timestamp);
"""

# Thread-level exclusion around the database file
_lock = threading.Lock()


class StorageError(HearthError):
    pass


class StorageTimeoutError(StorageError):
    pass


class StorageBusyError(StorageError):
    pass


class StorageQuotaExceededError(StorageError):
    pass


# ---------- Serialization ----------

def _format_ts(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _parse_ts(value: str) -> datetime:
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _to_row(m: ChatMessage) -> Tuple[str, str, str, str]:
    return (m.id, m.role, m.content, _format_ts(m.timestamp))


def _payload_size(rows: Sequence[Tuple[str, str, str, str]]) -> int:
    return sum(len(part.encode("utf-8")) for row in rows for part in row)


def _is_disk_full(e: sqlite3.Error) -> bool:
    code = getattr(e, "sqlite_errorcode", None)
    if code is not None and code == getattr(sqlite3, "SQLITE_FULL", 13):
        return True
    return "database or disk is full" in str(e).lower()


# ---------- Blocking backend (runs in a worker thread) ----------

def _connect(db_path: str, wal: bool) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    try:
        if wal:
            conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
    except sqlite3.Error:
        pass
    conn.executescript(_SCHEMA)
    return conn


def _write_all(db_path: str, wal: bool, rows: List[Tuple[str, str, str, str]], quota_bytes: int) -> None:
    size = _payload_size(rows)
    if quota_bytes > 0 and size > quota_bytes:
        # Checked before touching the file, so prior history stays intact
        raise StorageQuotaExceededError(
            f"Chat history needs {size} bytes but the storage quota is {quota_bytes} bytes"
        )
    with _lock, closing(_connect(db_path, wal)) as conn:
        try:
            with conn:
                conn.execute("DELETE FROM messages;")
                if rows:
                    conn.executemany(
                        "INSERT INTO messages (id, role, content, timestamp) VALUES (?, ?, ?, ?);",
                        rows,
                    )
        except sqlite3.Error as e:
            if _is_disk_full(e):
                raise StorageQuotaExceededError(f"Chat history storage is full: {e}") from e
            raise


def _read_all(db_path: str, wal: bool) -> List[ChatMessage]:
    with _lock, closing(_connect(db_path, wal)) as conn:
        cur = conn.execute("SELECT id, role, content, timestamp FROM messages ORDER BY timestamp ASC, rowid ASC;")
        return [
            ChatMessage(id=r["id"], role=r["role"], content=r["content"], timestamp=_parse_ts(r["timestamp"]))
            for r in cur.fetchall()
        ]


def _delete_all(db_path: str, wal: bool) -> None:
    with _lock, closing(_connect(db_path, wal)) as conn:
        with conn:
            conn.execute("DELETE FROM messages;")


# ---------- Operation queue ----------

class _OperationQueue:
    """Single-slot FIFO gate with a bounded wait list."""

    def __init__(self, max_pending: int) -> None:
        self._gate = asyncio.Lock()
        self._max_pending = max_pending
        self._pending = 0

    @property
    def pending(self) -> int:
        return self._pending

    @asynccontextmanager
    async def admit(self) -> AsyncIterator[None]:
        if self._pending >= self._max_pending:
            raise StorageBusyError(f"{self._pending} storage operations already queued")
        self._pending += 1
        try:
            async with self._gate:
                yield
        finally:
            self._pending -= 1


# asyncio primitives belong to one event loop; keep one queue per running loop
_queues: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, _OperationQueue]" = weakref.WeakKeyDictionary()


def _queue_for_running_loop() -> _OperationQueue:
    loop = asyncio.get_running_loop()
    q = _queues.get(loop)
    if q is None:
        q = _OperationQueue(max(1, int(cfg.settings.store_max_pending)))
        _queues[loop] = q
    return q


# ---------- Public API ----------

class MessageStore:
    def __init__(
        self,
        db_path: Optional[str] = None,
        *,
        timeout_sec: Optional[float] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        self._db_path = db_path
        self._timeout_sec = timeout_sec
        self._enabled = enabled

    @property
    def available(self) -> bool:
        enabled = cfg.settings.history_enabled if self._enabled is None else self._enabled
        return bool(enabled) and self._resolve_path() is not None

    def _resolve_path(self) -> Optional[str]:
        if self._db_path:
            return self._db_path
        try:
            return cfg.settings.db_path  # ensures data dir exists
        except OSError as e:
            log.warning("History storage unavailable (%s); persistence disabled.", e)
            return None

    def _timeout(self) -> float:
        return float(self._timeout_sec if self._timeout_sec is not None else cfg.settings.store_timeout_sec)

    async def _run(self, op: str, fn: Callable[..., T], *args: Any) -> T:
        async with _queue_for_running_loop().admit():
            try:
                return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self._timeout())
            except asyncio.TimeoutError as e:
                raise StorageTimeoutError(f"History {op} timed out after {self._timeout():.1f}s") from e

    async def save(self, messages: Sequence[ChatMessage]) -> None:
        """
        Replace the stored conversation with ``messages``.
        Raises StorageQuotaExceededError; every other fault is logged and swallowed.
        """
        if not self.available:
            return
        rows = [_to_row(m) for m in messages]
        try:
            await self._run(
                "save",
                _write_all,
                self._resolve_path(),
                cfg.settings.db_wal,
                rows,
                int(cfg.settings.history_quota_bytes),
            )
        except StorageQuotaExceededError:
            log.warning("History save rejected: storage quota exceeded (%d messages).", len(rows))
            raise
        except (StorageError, sqlite3.Error, OSError) as e:
            log.exception("Failed to save chat history: %s", e)

    async def load(self) -> List[ChatMessage]:
        """Stored conversation, oldest first; [] on any failure."""
        if not self.available:
            return []
        try:
            messages = await self._run("load", _read_all, self._resolve_path(), cfg.settings.db_wal)
        except (StorageError, sqlite3.Error, OSError, ValueError) as e:
            log.exception("Failed to load chat history: %s", e)
            return []
        return sorted(messages, key=lambda m: m.timestamp)

    async def clear(self) -> None:
        if not self.available:
            return
        try:
            await self._run("clear", _delete_all, self._resolve_path(), cfg.settings.db_wal)
        except (StorageError, sqlite3.Error, OSError) as e:
            log.exception("Failed to clear chat history: %s", e)
