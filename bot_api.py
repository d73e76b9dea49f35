#!/usr/bin/env python3
# FILE: bot_api.py

from __future__ import annotations

import sys
import threading
import signal
import logging
import traceback
from queue import Queue, Empty
from typing import Callable, List, Optional, TYPE_CHECKING

from common import *  # Clock, log, AppConfig, etc.
from storage import Storage
from scheduler import AlarmClock
from guild_scheduler import SchedulerHub
from messenger import ConsoleMessenger, DiscordMessenger
from permissions import Caller, PERMS
from contracts import Messenger

from console_ui import ConsoleUI


class _EngineLogStream:
    """Bridge standard Log writes into BotEngine-managed sinks."""

    def __init__(self, engine: "BotEngine"):
        self.engine = engine

    def write(self, data: str):
        self.engine._handle_log_stream_write(data)

    def flush(self):
        self.engine._flush_log_stream()


if TYPE_CHECKING:
    from commands import CommandRegistry, CO  # only for type hints

# =======================
# HTTP logging tweaks
# =======================
# requests/urllib3 retry chatter spams the console on flaky networks.
HTTP_LOGGERS = [
    "urllib3",
    "urllib3.connectionpool",
]
HTTP_LOG_LEVEL = logging.WARNING

_HTTP_LOG_CONFIGURED = False


def _configure_http_logging():
    """Quiet down the HTTP client loggers (idempotent)."""
    global _HTTP_LOG_CONFIGURED
    if _HTTP_LOG_CONFIGURED:
        return
    for name in HTTP_LOGGERS:
        logging.getLogger(name).setLevel(HTTP_LOG_LEVEL)
    _HTTP_LOG_CONFIGURED = True


# =========================
# ======= BOT ENGINE ======
# =========================

class BotEngine:
    """
    Core orchestrator for the doat scheduler.

    Responsibilities:
      - Build and wire services (Storage, AlarmClock, SchedulerHub, messenger)
      - Run the alarm thread that wakes guild schedulers
      - Expose a command dispatcher used by the console front end
    """

    def __init__(self, cfg: AppConfig, messenger: Optional[Messenger] = None,
                 now_ms: Optional[Callable[[], int]] = None):
        _configure_http_logging()

        self.cfg = cfg
        self.now_ms: Callable[[], int] = now_ms or Clock.now_utc_ms

        # lazily built parts
        self.store: Optional[Storage] = None
        self.messenger: Optional[Messenger] = messenger
        self.alarms: Optional[AlarmClock] = None
        self.hub: Optional[SchedulerHub] = None
        self._registry: Optional[CommandRegistry] = None

        self._console_thread: Optional[threading.Thread] = None
        self._console_ui: Optional[ConsoleUI] = None

        # rendering sinks
        self._sinks: List[str] = []
        self._print_lock = threading.Lock()
        self._log_stream_lock = threading.Lock()
        self._send_queue: Queue = Queue()
        self._log_stream_buffer = ""
        self._log_stream = _EngineLogStream(self)
        set_global_logger(
            Log(
                level=str(cfg.LOG_LEVEL or "INFO").upper(),
                stream=self._log_stream,
                name="doat",
                json_mode=bool(cfg.LOG_JSON),
            )
        )

        # book-keeping
        self._excepthook_installed = False
        self._stopping = False

    # --------------------------------
    # Building + wiring (single place)
    # --------------------------------
    def _build_parts(self):
        assert self.store is None

        from commands import build_registry

        # Clock / TZ once
        tz = self.cfg.TZ_LOCAL
        Clock.set_tz(tz)
        log().info("Clock TZ set", tz=str(tz))

        self.store = Storage(self.cfg.DB_PATH or ":memory:")

        if self.messenger is None:
            if self.cfg.DISCORD_TOKEN:
                self.messenger = DiscordMessenger(self.cfg)
                log().info("Messenger: Discord REST", api_base=self.cfg.DISCORD_API_BASE)
            else:
                self.messenger = ConsoleMessenger(self._send_text_console, owner_id=self.cfg.CONSOLE_USER_ID)
                log().warn("Messenger: no DISCORD_TOKEN, deliveries go to the console")

        self.alarms = AlarmClock(
            self.store,
            now_ms=self.now_ms,
            poll_sec=float(self.cfg.ALARM_POLL_SEC or 0.5),
            retry_base_ms=int(float(self.cfg.ALARM_RETRY_BASE_SEC or 2.0) * 1000),
            retry_max_ms=int(float(self.cfg.ALARM_RETRY_MAX_SEC or 300.0) * 1000),
        )
        ttl_ms = int(self.cfg.DELIVERED_TTL_DAYS or 14) * DAY_MS
        self.hub = SchedulerHub(self.store, self.alarms, self.messenger, now_ms=self.now_ms, ttl_ms=ttl_ms)
        self.alarms.set_handler(self.hub.on_alarm)

        # Registry (commands), single canonical instance
        self._registry = build_registry()

        self._sinks = ["console"]

    def build(self) -> "BotEngine":
        """Wire all parts without starting any thread."""
        if self.store is None:
            self._build_parts()
        return self

    # ---------- logging plumbing ----------
    def _handle_log_stream_write(self, data: str):
        if not data:
            return
        with self._log_stream_lock:
            self._log_stream_buffer += data
            while True:
                idx = self._log_stream_buffer.find("\n")
                if idx == -1:
                    break
                line = self._log_stream_buffer[:idx]
                self._log_stream_buffer = self._log_stream_buffer[idx + 1 :]
                self._emit_log_line(line)

    def _flush_log_stream(self):
        with self._log_stream_lock:
            if not self._log_stream_buffer:
                return
            line = self._log_stream_buffer
            self._log_stream_buffer = ""
            self._emit_log_line(line)

    def _emit_log_line(self, line: str):
        self._write_out(line or "")

    def _write_out(self, text: str):
        ui = self._console_ui
        if ui is not None:
            try:
                ui.append_output(text)
                return
            except RuntimeError:
                # UI torn down between the check and the call; fall back to stdout
                pass
        with self._print_lock:
            sys.stdout.write(text + "\n")
            sys.stdout.flush()

    # ---------- text sinks ----------
    def _send_text_console(self, text: str) -> None:
        """Console sink for command output and console deliveries."""
        if self._stopping: return
        self._write_out(text)

    # --------------------------------
    # Thread exception hook
    # --------------------------------
    def _install_thread_excepthook_once(self):
        """Ensure unhandled exceptions in ANY thread are logged via our logger."""
        if self._excepthook_installed:
            return

        def _hook(args):
            tb = "".join(traceback.format_exception(args.exc_type, args.exc_value, args.exc_traceback))
            log().error("thread.crash", thread=args.thread.name, exc=str(args.exc_value))
            for line in tb.rstrip("\n").splitlines():
                log().error(line)

        threading.excepthook = _hook
        self._excepthook_installed = True

    # --------------------------------
    # Lifecycle
    # --------------------------------
    def start(self):
        self.build()

        # Ensure thread exceptions are captured
        self._install_thread_excepthook_once()

        # wakes that came due while we were down fire on the first pass
        pending = self.store.list_alarms()
        log().info("Alarms: starting", pending=len(pending))
        self.alarms.start()

    def stop(self):
        log().info("Engine stopping …")
        self.request_stop()
        try:
            if self._console_ui and self._console_thread:
                ui = self._console_ui
                thread = self._console_thread
                self._console_ui = None  # route subsequent logs to stdout
                log().info("Console: stopping UI thread")
                ui.stop()
                thread.join()
                log().info("Console: thread joined")
        except Exception as e:
            log().exc(e, where="engine.stop.console")

        try:
            if self.alarms:
                log().info("Alarms: stopping")
                self.alarms.stop()
                log().info("Alarms: stopped")
        except Exception as e:
            log().exc(e, where="engine.stop.alarms")

        self._stopping = True
        if self.store:
            self.store.close()

    def run(self):
        """
        Convenience entrypoint:
          - start engine (alarm thread)
          - if CONSOLE_ENABLED: run ConsoleUI
          - else: idle loop until Ctrl+C
        """
        self.start()
        console_enabled = bool(self.cfg.CONSOLE_ENABLED)

        # simple signal-aware loop
        def _sig_handler(sig, _frm):
            self._send_queue.put(("stop", None))
            raise KeyboardInterrupt()

        signal.signal(signal.SIGINT, _sig_handler)
        signal.signal(signal.SIGTERM, _sig_handler)

        try:
            if console_enabled:
                console_ui = ConsoleUI(self)
                self._console_ui = console_ui
                self._console_thread = threading.Thread(
                    target=console_ui.run, name="doat-console", daemon=True
                )
                self._console_thread.start()
            else:
                log().info("BotEngine.run: no console; idle loop. Press Ctrl+C to exit.")
            while True:
                try:
                    target, payload = self._send_queue.get(timeout=0.5)
                except Empty:
                    continue
                if target == "stop":
                    log().info("Main loop: stop signal received")
                    break
        except KeyboardInterrupt:
            log().info("KeyboardInterrupt: shutting down…")
        finally:
            self.stop()
        log().info("Engine stopped cleanly")

    def request_stop(self):
        self._send_queue.put(("stop", None))

    # ---- core output processor ----
    def _normalize_command_output(self, result: object) -> "CO":
        from commands import CO, OC
        result = CO(result) if isinstance(result, (str, OC)) else result
        assert isinstance(result, CO)
        return result

    def _render_co(self, result: object, sinks: Optional[List[str]] = None) -> None:
        co = self._normalize_command_output(result)
        targets = list(sinks) if sinks else list(self._sinks)
        if not targets:
            log().info("render_co.no_sinks", text=co.plain())
            return
        for sink in targets:
            for comp in co.components:
                try:
                    if sink == "console":
                        comp.render_console(self)
                    else:
                        log().warn("render_co.unknown_sink", sink=sink)
                except Exception as e:
                    log().exc(e, where="render_co", sink=sink, component=comp.__class__.__name__)

    def console_caller(self) -> Caller:
        """Identity for commands typed in the console: the configured owner, full permissions."""
        return Caller(
            guild_id=self.cfg.CONSOLE_GUILD_ID,
            channel_id=self.cfg.CONSOLE_CHANNEL_ID,
            user_id=self.cfg.CONSOLE_USER_ID,
            permissions=str(PERMS["ADMINISTRATOR"]),
        )

    def dispatch_command(self, text: str, caller: Optional[Caller] = None,
                         origin: Optional[str] = "console") -> "CO":
        """Route through the registry, then render per-origin (None: don't render)."""
        self.build()
        assert self._registry
        caller = caller or self.console_caller()
        co = self._registry.dispatch(self, text, caller)
        if origin:
            self._render_co(co, sinks=[origin])
        return co
