# FILE: scheduler.py
import threading
from typing import Callable, Any, Optional

from common import Clock, log, str_exc
from storage import Storage


class AlarmClock:
    """
    Durable per-guild wake-ups.
    - Threaded (not async); one alarm per guild, persisted in Storage.
    - At-least-once: an alarm is only cleared after its handler returns.
    - Failed handlers are retried with exponential backoff, forever, until
      the alarm is replaced or deleted.
    """
    def __init__(self, store: Storage, handler: Optional[Callable[[str], Any]] = None,
                 now_ms: Callable[[], int] = Clock.now_utc_ms, name: str = "doat-alarms",
                 poll_sec: float = 0.5, retry_base_ms: int = 2_000, retry_max_ms: int = 300_000):
        self.store = store
        self._handler = handler
        self._now_ms = now_ms
        self._name = name
        self._poll_sec = float(poll_sec)
        self.retry_base_ms = int(retry_base_ms)
        self.retry_max_ms = int(retry_max_ms)
        self._stop = threading.Event()
        self._cv = threading.Condition()
        self._thr: Optional[threading.Thread] = None

    def set_handler(self, fn: Callable[[str], Any]):
        self._handler = fn

    # ---- alarm facility ----
    def set_alarm(self, tenant_id: str, at_ms: int):
        self.store.set_alarm(tenant_id, at_ms)
        with self._cv: self._cv.notify_all()

    def delete_alarm(self, tenant_id: str):
        self.store.delete_alarm(tenant_id)

    def get_alarm(self, tenant_id: str) -> Optional[int]:
        row = self.store.get_alarm(tenant_id)
        return int(row["wake_at_ms"]) if row else None

    # ---- thread ----
    def start(self):
        if self._thr and self._thr.is_alive(): return
        self._stop.clear()
        self._thr = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thr.start()

    def stop(self, timeout: Optional[float] = None):
        """Stop the thread; by default wait for an in-flight delivery to finish."""
        self._stop.set()
        with self._cv: self._cv.notify_all()
        if self._thr: self._thr.join(timeout=timeout)

    def backoff_ms(self, attempts: int) -> int:
        """Delay before retry number `attempts` (1-based)."""
        return min(self.retry_base_ms * (2 ** max(0, attempts - 1)), self.retry_max_ms)

    def run_due(self) -> int:
        """Fire every alarm that is due now. Returns how many fired."""
        rows = self.store.due_alarms(self._now_ms())
        for row in rows:
            if self._stop.is_set():
                break
            self._fire(row["tenant_id"], int(row["wake_at_ms"]), int(row["attempts"]))
        return len(rows)

    def _fire(self, tenant_id: str, wake_at_ms: int, attempts: int):
        if self._handler is None:
            raise RuntimeError("AlarmClock has no handler")
        log().debug("alarm.fire", tenant_id=tenant_id, wake_at_ms=wake_at_ms, attempts=attempts)
        try:
            self._handler(tenant_id)
        except Exception as e:
            log().exc(e, where="alarm.fire", tenant_id=tenant_id)
            delay = self.backoff_ms(attempts + 1)
            retry_at = self._now_ms() + delay
            if self.store.defer_alarm(tenant_id, wake_at_ms, retry_at, str_exc(e)):
                log().warn("alarm.fire.fail", tenant_id=tenant_id, attempt=attempts + 1, retry_in_ms=delay)
            return
        # handler may have pointed the alarm somewhere else; keep that one
        self.store.finish_alarm(tenant_id, wake_at_ms)

    def _run(self):
        while not self._stop.is_set():
            try:
                self.run_due()
            except Exception as e:
                log().exc(e, where="alarm.loop")
            nxt = self.store.next_alarm_ms()
            wait = self._poll_sec
            if nxt is not None:
                wait = min(max(0.0, (nxt - self._now_ms()) / 1000), self._poll_sec)
            with self._cv:
                if not self._stop.is_set():
                    self._cv.wait(timeout=wait)
