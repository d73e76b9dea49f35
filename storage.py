# storage.py
from __future__ import annotations
import sqlite3
import json
import threading
from contextlib import contextmanager
from typing import List, Optional, Any, Iterator
from common import Clock, log


# =======================
# ====== STORAGE ========
# =======================

class Storage:
    """
    Thread-safe SQLite storage layer.
    - Single connection with WAL, busy_timeout.
    - Re-entrant lock guards all write operations.
    - `txn()` starts BEGIN IMMEDIATE (writer lock) and commits/rolls back.
    - `kv` holds small named JSON values per guild (jobs, delivered keys).
    - `alarms` holds one wake time per guild; owned by scheduler.AlarmClock.
    """

    def __init__(self, path: str):
        self.path = path
        # One connection shared across threads (guarded by _db_lock for writes)
        self.con = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self.con.row_factory = sqlite3.Row
        self._db_lock = threading.RLock()
        self._depth = 0
        self._configure_pragmas()
        self._init_db()

    def _configure_pragmas(self):
        # Pragmas applied once per connection
        cur = self.con.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute("PRAGMA synchronous=NORMAL;")
        cur.execute("PRAGMA busy_timeout=5000;")  # ms

    def _init_db(self):
        with self._db_lock:
            self.con.executescript("""
            -- ========== per-guild named values ==========
            CREATE TABLE IF NOT EXISTS kv (
              tenant_id   TEXT    NOT NULL,
              name        TEXT    NOT NULL,
              value_json  TEXT    NOT NULL,
              updated_ts  INTEGER NOT NULL,
              PRIMARY KEY (tenant_id, name)
            );

            -- ============= alarms =============
            CREATE TABLE IF NOT EXISTS alarms (
              tenant_id    TEXT    PRIMARY KEY,
              wake_at_ms   INTEGER NOT NULL,
              attempts     INTEGER NOT NULL DEFAULT 0,
              retry_at_ms  INTEGER,                 -- NULL => fire at wake_at_ms
              last_error   TEXT,
              updated_ts   INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_alarms_wake ON alarms(wake_at_ms);
            """)

    def close(self):
        with self._db_lock:
            self.con.close()

    # -------- transaction manager --------
    @contextmanager
    def txn(self) -> Iterator[sqlite3.Cursor]:
        """
        Write transaction: BEGIN IMMEDIATE under the lock, then COMMIT/ROLLBACK.
        Nested blocks on the same thread join the outer transaction.
        """
        with self._db_lock:
            cur = self.con.cursor()
            outer = self._depth == 0
            if outer:
                cur.execute("BEGIN IMMEDIATE;")
            self._depth += 1
            try:
                yield cur
            except Exception:
                self._depth -= 1
                if outer:
                    self.con.rollback()
                raise
            else:
                self._depth -= 1
                if outer:
                    self.con.commit()

    def tenant(self, tenant_id: str) -> "TenantStorage":
        return TenantStorage(self, tenant_id)

    # -------- named values --------
    def _fetch(self, q: str, params: tuple = (), one: bool = False):
        # reads share the connection with writers on other threads
        with self._db_lock:
            cur = self.con.execute(q, params)
            return cur.fetchone() if one else cur.fetchall()

    def kv_get(self, tenant_id: str, name: str, default: Any = None, cur: Optional[sqlite3.Cursor] = None) -> Any:
        q = "SELECT value_json FROM kv WHERE tenant_id=? AND name=?"
        params = (str(tenant_id), name)
        row = cur.execute(q, params).fetchone() if cur is not None else self._fetch(q, params, one=True)
        if row is None:
            return default
        try:
            return json.loads(row["value_json"])
        except ValueError as e:
            log().warn("storage.kv.decode.fail", tenant_id=tenant_id, name=name, err=str(e))
            return default

    def kv_put(self, tenant_id: str, name: str, value: Any, cur: Optional[sqlite3.Cursor] = None):
        payload = json.dumps(value, ensure_ascii=False)
        q = """INSERT INTO kv(tenant_id, name, value_json, updated_ts) VALUES(?,?,?,?)
               ON CONFLICT(tenant_id, name) DO UPDATE SET value_json=excluded.value_json,
                                                          updated_ts=excluded.updated_ts"""
        params = (str(tenant_id), name, payload, Clock.now_utc_ms())
        if cur is not None:
            cur.execute(q, params)
            return
        with self.txn() as c:
            c.execute(q, params)

    # -------- alarms --------
    def set_alarm(self, tenant_id: str, wake_at_ms: int):
        """
        Upsert the guild's wake time. Re-setting the same time keeps any
        pending retry state; a different time resets it.
        """
        with self.txn() as cur:
            cur.execute("""
                INSERT INTO alarms(tenant_id, wake_at_ms, attempts, retry_at_ms, last_error, updated_ts)
                VALUES(?, ?, 0, NULL, NULL, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET
                  attempts    = CASE WHEN alarms.wake_at_ms = excluded.wake_at_ms THEN alarms.attempts ELSE 0 END,
                  retry_at_ms = CASE WHEN alarms.wake_at_ms = excluded.wake_at_ms THEN alarms.retry_at_ms ELSE NULL END,
                  last_error  = CASE WHEN alarms.wake_at_ms = excluded.wake_at_ms THEN alarms.last_error ELSE NULL END,
                  wake_at_ms  = excluded.wake_at_ms,
                  updated_ts  = excluded.updated_ts
            """, (str(tenant_id), int(wake_at_ms), Clock.now_utc_ms()))

    def delete_alarm(self, tenant_id: str) -> bool:
        with self.txn() as cur:
            cur.execute("DELETE FROM alarms WHERE tenant_id=?", (str(tenant_id),))
            return cur.rowcount > 0

    def get_alarm(self, tenant_id: str) -> Optional[sqlite3.Row]:
        return self._fetch("SELECT * FROM alarms WHERE tenant_id=?", (str(tenant_id),), one=True)

    def due_alarms(self, now_ms: int) -> List[sqlite3.Row]:
        return self._fetch("""
            SELECT * FROM alarms
            WHERE COALESCE(retry_at_ms, wake_at_ms) <= ?
            ORDER BY COALESCE(retry_at_ms, wake_at_ms)
        """, (int(now_ms),))

    def next_alarm_ms(self) -> Optional[int]:
        row = self._fetch("SELECT MIN(COALESCE(retry_at_ms, wake_at_ms)) AS t FROM alarms", one=True)
        return int(row["t"]) if row and row["t"] is not None else None

    def list_alarms(self) -> List[sqlite3.Row]:
        return self._fetch("SELECT * FROM alarms ORDER BY wake_at_ms")

    def finish_alarm(self, tenant_id: str, fired_wake_at_ms: int) -> bool:
        """Delete the alarm only if it still points at the wake time that fired."""
        with self.txn() as cur:
            cur.execute("DELETE FROM alarms WHERE tenant_id=? AND wake_at_ms=?",
                        (str(tenant_id), int(fired_wake_at_ms)))
            return cur.rowcount > 0

    def defer_alarm(self, tenant_id: str, fired_wake_at_ms: int, retry_at_ms: int, error: str | None) -> bool:
        """Push a failed alarm to `retry_at_ms` unless it was re-pointed meanwhile."""
        with self.txn() as cur:
            cur.execute("""
                UPDATE alarms SET attempts=attempts+1, retry_at_ms=?, last_error=?, updated_ts=?
                WHERE tenant_id=? AND wake_at_ms=?
            """, (int(retry_at_ms), error, Clock.now_utc_ms(), str(tenant_id), int(fired_wake_at_ms)))
            return cur.rowcount > 0


class TenantTxn:
    """get/put bound to one guild inside an open write transaction."""

    def __init__(self, store: Storage, tenant_id: str, cur: sqlite3.Cursor):
        self.store, self.tenant_id, self.cur = store, tenant_id, cur

    def get(self, name: str, default: Any = None) -> Any:
        return self.store.kv_get(self.tenant_id, name, default, cur=self.cur)

    def put(self, name: str, value: Any):
        self.store.kv_put(self.tenant_id, name, value, cur=self.cur)


class TenantStorage:
    """Per-guild view over Storage: isolated named values + atomic read-modify-write."""

    def __init__(self, store: Storage, tenant_id: str):
        self.store = store
        self.tenant_id = str(tenant_id)

    def get(self, name: str, default: Any = None) -> Any:
        return self.store.kv_get(self.tenant_id, name, default)

    def put(self, name: str, value: Any):
        self.store.kv_put(self.tenant_id, name, value)

    @contextmanager
    def transaction(self) -> Iterator[TenantTxn]:
        with self.store.txn() as cur:
            yield TenantTxn(self.store, self.tenant_id, cur)
