# rate_limiter.py — daily challenge ceilings, global and per user
from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Protocol, Sequence, Tuple

from bot_config import RateLimitConfig
from botlog import log

GLOBAL_SCOPE = "global"


def utc_date_key() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


class CounterStore(Protocol):
    """
    Persistent (date_key, scope_key) -> count table.

    `reserve` is all-or-nothing: every scope is incremented, or none is.
    """

    def reserve(self, date_key: str, scopes: Sequence[Tuple[str, int]]) -> Optional[str]:
        """Increment each scope if all stay <= their ceiling. Returns None on success, else the scope that was full."""
        ...

    def release(self, date_key: str, scope_keys: Sequence[str]) -> None:
        ...

    def count(self, date_key: str, scope_key: str) -> int:
        ...


class InMemoryCounterStore:
    def __init__(self):
        self._counts: Dict[Tuple[str, str], int] = {}
        self._lock = threading.Lock()

    def reserve(self, date_key: str, scopes: Sequence[Tuple[str, int]]) -> Optional[str]:
        with self._lock:
            for key, ceiling in scopes:
                if self._counts.get((date_key, key), 0) + 1 > ceiling:
                    return key
            for key, _ in scopes:
                self._counts[(date_key, key)] = self._counts.get((date_key, key), 0) + 1
            return None

    def release(self, date_key: str, scope_keys: Sequence[str]) -> None:
        with self._lock:
            for key in scope_keys:
                cur = self._counts.get((date_key, key), 0)
                self._counts[(date_key, key)] = max(0, cur - 1)

    def count(self, date_key: str, scope_key: str) -> int:
        with self._lock:
            return self._counts.get((date_key, scope_key), 0)


class SqliteCounterStore:
    """
    SQLite-backed counter table shared by every consumer on the host.

    Reservations run under BEGIN IMMEDIATE, which takes the database write
    lock before the read, so two consumers cannot both see the last slot.
    """

    def __init__(self, db_path: str, timeout_secs: float = 30.0) -> None:
        self._db_path = db_path
        self._timeout = timeout_secs
        self._ensure_table()

    def _get_connection(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path, timeout=self._timeout, isolation_level=None)

    def _ensure_table(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS challenge_counts (
                    date_key TEXT NOT NULL,
                    scope_key TEXT NOT NULL,
                    count INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (date_key, scope_key)
                )
                """
            )
        finally:
            conn.close()

    def _transaction(self, work: Callable[[sqlite3.Connection], Optional[str]]) -> Optional[str]:
        conn = self._get_connection()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                result = work(conn)
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return result
        finally:
            conn.close()

    @staticmethod
    def _read(conn: sqlite3.Connection, date_key: str, scope_key: str) -> int:
        row = conn.execute(
            "SELECT count FROM challenge_counts WHERE date_key = ? AND scope_key = ?",
            (date_key, scope_key),
        ).fetchone()
        return int(row[0]) if row else 0

    def reserve(self, date_key: str, scopes: Sequence[Tuple[str, int]]) -> Optional[str]:
        def work(conn):
            for key, ceiling in scopes:
                if self._read(conn, date_key, key) + 1 > ceiling:
                    return key
            for key, _ in scopes:
                conn.execute(
                    """
                    INSERT INTO challenge_counts (date_key, scope_key, count) VALUES (?, ?, 1)
                    ON CONFLICT (date_key, scope_key) DO UPDATE SET count = count + 1
                    """,
                    (date_key, key),
                )
            return None

        return self._transaction(work)

    def release(self, date_key: str, scope_keys: Sequence[str]) -> None:
        def work(conn):
            for key in scope_keys:
                conn.execute(
                    """
                    UPDATE challenge_counts SET count = MAX(0, count - 1)
                    WHERE date_key = ? AND scope_key = ?
                    """,
                    (date_key, key),
                )
            return None

        self._transaction(work)

    def count(self, date_key: str, scope_key: str) -> int:
        conn = self._get_connection()
        try:
            return self._read(conn, date_key, scope_key)
        finally:
            conn.close()


@dataclass(frozen=True)
class Reservation:
    granted: bool
    date_key: str
    scope_keys: Tuple[str, ...] = ()
    denied_scope: Optional[str] = None


class RateLimiter:
    def __init__(
        self,
        store: CounterStore,
        config: RateLimitConfig,
        today: Callable[[], str] = utc_date_key,
    ):
        self.store = store
        self.config = config
        self._today = today
        self._excluded = frozenset(u.lower() for u in config.excluded)

    def is_excluded(self, user_id: str) -> bool:
        return (user_id or "").lower() in self._excluded

    def try_reserve(
        self,
        user_id: str,
        *,
        check_user_scope: bool = True,
        consume_global: bool = True,
    ) -> Reservation:
        """
        Atomically take one global slot and one slot for `user_id` for today.

        Scopes switched off by the caller are neither checked nor counted.
        """
        date_key = self._today()
        scopes = []
        if consume_global:
            scopes.append((GLOBAL_SCOPE, self.config.max_daily_challenges))
        if check_user_scope:
            scopes.append(((user_id or "").lower(), self.config.max_daily_user_challenges))
        if not scopes:
            return Reservation(True, date_key)
        denied = self.store.reserve(date_key, scopes)
        if denied is not None:
            return Reservation(False, date_key, denied_scope=denied)
        return Reservation(True, date_key, tuple(key for key, _ in scopes))

    def reserve_for(self, user_id: str) -> Reservation:
        """try_reserve with the excluded-user policy from config.yml applied."""
        if self.is_excluded(user_id):
            return self.try_reserve(
                user_id,
                check_user_scope=False,
                consume_global=self.config.excluded_consume_global,
            )
        return self.try_reserve(user_id)

    def release(self, reservation: Reservation) -> None:
        """Give back a granted reservation whose acceptance never reached the server."""
        if not reservation.granted or not reservation.scope_keys:
            return
        self.store.release(reservation.date_key, reservation.scope_keys)
        log(f"Released challenge slots {', '.join(reservation.scope_keys)} for {reservation.date_key}", "↩️")
