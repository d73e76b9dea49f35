# common.py
from __future__ import annotations
from zoneinfo import ZoneInfo
from dataclasses import dataclass
import sys, json
from typing import Optional
from datetime import datetime, timezone
import threading

__all__ = [
    "AppConfig",
    "Clock",
    "Log",
    "log",
    "set_global_logger",
    "sublog",
    "ts_human",
    "LV",
    "DAY_SEC",
    "DAY_MS",
    "DELIVERED_TTL_MS",
    "JOBS_KEY",
    "DELIVERED_KEY",
    "BadRequest",
    "DeliveryError",
    "str_exc",
]


class BadRequest(ValueError):
    """Rejected input. The message is safe to show to the requester."""
    pass


class DeliveryError(RuntimeError):
    """Raised when the messenger reports a non-success for a send."""

    def __init__(self, status: int, body: str, occurrence: str | None = None):
        super().__init__(f"Discord API error {status}: {body}")
        self.status = status
        self.body = body
        self.occurrence = occurrence


LV = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}

DAY_SEC = 86_400
DAY_MS = DAY_SEC * 1000
# keep 14 days of dedupe keys
DELIVERED_TTL_MS = 14 * DAY_MS

# Persisted value names (per guild)
JOBS_KEY = "jobs"
DELIVERED_KEY = "delivered"

# =======================
# ====== CONFIG =========
# =======================

@dataclass
class AppConfig:
    """
    Unified configuration container for the scheduler bot.
    All fields are optional; instantiate with only what's needed.
    """

    # --- General system ---
    # Local timezone for console output and logs.
    TZ_LOCAL: Optional[ZoneInfo] = None

    # Path of the SQLite database holding jobs, dedupe keys and alarms.
    DB_PATH: Optional[str] = None

    # Logging verbosity level: "DEBUG", "INFO", "WARN", "ERROR".
    LOG_LEVEL: Optional[str] = "INFO"
    # One JSON object per log line instead of text.
    LOG_JSON: Optional[bool] = False

    # Run the interactive console front end.
    CONSOLE_ENABLED: Optional[bool] = False

    # --- Discord ---
    # Bot token. Without it, deliveries go to the console messenger.
    DISCORD_TOKEN: Optional[str] = None
    DISCORD_API_BASE: Optional[str] = "https://discord.com/api/v10"
    HTTP_TIMEOUT_SEC: Optional[float] = 30.0

    # Identity used for commands typed in the console.
    CONSOLE_GUILD_ID: Optional[str] = None
    CONSOLE_CHANNEL_ID: Optional[str] = None
    CONSOLE_USER_ID: Optional[str] = None

    # --- Alarms ---
    # Longest sleep of the alarm thread between checks (seconds).
    ALARM_POLL_SEC: Optional[float] = 0.5
    # Retry backoff after a failed wake: base * 2**(attempts-1), capped.
    ALARM_RETRY_BASE_SEC: Optional[float] = 2.0
    ALARM_RETRY_MAX_SEC: Optional[float] = 300.0

    # Retention of delivered-occurrence keys.
    DELIVERED_TTL_DAYS: Optional[int] = 14

    # Max jobs shown by ?doat-list
    LIST_LIMIT: Optional[int] = 15


# =======================
# ====== CLOCK ==========
# =======================

class Clock:
    """
    Centralized time helpers.
    - Uses an injectable local TZ (default None) for human-readable output.
    - No hidden dependency on AppConfig to avoid import cycles.
    """
    _tz_local: ZoneInfo = None

    @classmethod
    def set_tz(cls, tz: ZoneInfo):
        cls._tz_local = tz

    @classmethod
    def get_tz(cls) -> Optional[ZoneInfo]:
        return cls._tz_local

    @staticmethod
    def now_utc_ms() -> int:
        return int(datetime.now(timezone.utc).timestamp() * 1000)


HOUR_SEP = "-"

def ts_human(ms: int | datetime | None) -> str:
    """Human timestamp from ms (or datetime) in local tz."""
    if ms is None:
        return "?"
    tz = Clock.get_tz()
    if isinstance(ms, datetime):
        dt = ms.astimezone(tz)
    else:
        dt = datetime.fromtimestamp(int(ms)/1000, tz=tz)
    return dt.strftime("%Y%m%d{}%H:%M:%S").format(HOUR_SEP)


# =======================
# ====== TELEMETRY ======
# =======================

class Log:
    def __init__(self, level="INFO", stream=None, json_mode=False, name=None, context=None):
        assert level in LV
        self.stream = stream or sys.stdout
        self.level  = LV[level]
        self.json_mode = bool(json_mode)
        self.name   = name  # e.g., 'doat.alarms'
        self.ctx    = dict(context or {})
        self._lock  = threading.Lock()

    # ---- composition ----
    def child(self, name:str):
        full = f"{self.name}.{name}" if self.name else name
        return Log(level=self.level_name, stream=self.stream, json_mode=self.json_mode, name=full, context=self.ctx)

    def bind(self, **extra):
        # returns a logger with default context merged in
        return Log(level=self.level_name, stream=self.stream, json_mode=self.json_mode, name=self.name,
                   context={**self.ctx, **extra})

    # ---- emitters ----
    @property
    def level_name(self):
        for k,v in LV.items():
            if v == self.level: return k
        # not found (custom), return numeric
        return str(self.level)

    def _emit(self, lvname:str, msg:str, **fields):
        if LV[lvname] < self.level:
            return
        ts = ts_human(Clock.now_utc_ms())
        merged = {**self.ctx, **fields} if (fields or self.ctx) else None
        with self._lock:
            if self.json_mode:
                payload = {"ts": ts, "level": lvname, "name": self.name, "thread": threading.current_thread().name, "msg": msg}
                if merged: payload.update(merged)
                self.stream.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
            else:
                name_part = f" {self.name}" if self.name else ""
                thread_part = f" [{threading.current_thread().name}]"
                ctx_part = (" " + json.dumps(merged, ensure_ascii=False, default=str)) if merged else ""
                self.stream.write(f"[{ts}] {lvname}{name_part}{thread_part} {msg}{ctx_part}\n")
            self.stream.flush()

    def debug(self, m, **k): self._emit("DEBUG", m, **k)
    def info(self, m, **k):  self._emit("INFO",  m, **k)
    def warn(self, m, **k):  self._emit("WARN",  m, **k)
    def error(self, m, **k): self._emit("ERROR", m, **k)

    def exc(self, e: Exception, **k):
        import traceback
        tb = traceback.format_exc()
        if self.json_mode:
            self.error("exception", err=str(e), traceback=tb, **k)
        else:
            self._emit("ERROR", f"Exception:\n{tb}", **k)


# ---- global logger + override hook ----
_log = Log("INFO", name="doat")  # default singleton used across the app

def set_global_logger(new_log: Log):
    """Call this from your main to replace the global `log`."""
    global _log
    _log = new_log

def log() -> Log:
    return _log

def sublog(name, **ctx) -> Log:
    """Create a child logger sharing global config."""
    return _log.child(name).bind(**ctx)


def str_exc(e: Exception) -> str:
    return f"{e.__class__.__name__}: {e}"
