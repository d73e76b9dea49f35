# guild_scheduler.py
from __future__ import annotations
import threading
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from common import BadRequest, Clock, DELIVERED_TTL_MS, sublog
from contracts import AlarmFacility, Messenger
from delivery import AlarmCoordinator, DeliveryEngine, DeliveryReport
from formatters import is_known_kind
from jobs import Job, JobStore
from storage import Storage


@dataclass
class ScheduleRequest:
    """Already-validated input from the command layer."""
    tenant_id: str
    channel_id: str
    kind: str
    subject: str
    due_unix: int
    repeats_daily: bool = False
    created_by: Optional[str] = None


def _new_id() -> str:
    return str(uuid.uuid4())


class GuildScheduler:
    """
    Scheduler state for one guild.

    All public operations hold the guild's lock, so at most one of them runs
    at a time for this guild; every job-set mutation additionally goes
    through the storage transaction. The wake time is resynced from
    persisted state after each operation.
    """

    def __init__(self, tenant_id: str, store: Storage, alarms: AlarmFacility, messenger: Messenger,
                 now_ms: Callable[[], int] = Clock.now_utc_ms, new_id: Callable[[], str] = _new_id,
                 ttl_ms: int = DELIVERED_TTL_MS):
        self.tenant_id = str(tenant_id)
        self.lock = threading.RLock()
        self.now_ms = now_ms
        self.new_id = new_id
        self.jobs = JobStore(store.tenant(self.tenant_id))
        self.alarms = alarms
        self.coordinator = AlarmCoordinator(self.jobs, alarms)
        self.engine = DeliveryEngine(self.jobs, self.coordinator, messenger, now_ms, ttl_ms=ttl_ms)
        self._log = sublog("guild", tenant_id=self.tenant_id)

    def schedule(self, req: ScheduleRequest) -> Job:
        if not is_known_kind(req.kind):
            raise BadRequest("Invalid target type.")
        job = Job(
            id=self.new_id(),
            tenant_id=self.tenant_id,
            channel_id=str(req.channel_id),
            kind=req.kind,
            subject=str(req.subject),
            due_unix=int(req.due_unix),
            repeats_daily=req.repeats_daily is True,  # avoid truthy strings
            created_by=str(req.created_by) if req.created_by is not None else None,
        )
        with self.lock:
            self.jobs.insert(job)
            self.coordinator.resync()
        self._log.info("job.scheduled", job_id=job.id, kind=job.kind, due_unix=job.due_unix,
                       repeats_daily=job.repeats_daily)
        return job

    def list_jobs(self) -> List[Job]:
        with self.lock:
            return self.jobs.snapshot()

    def cancel(self, job_id: str) -> Optional[Job]:
        """Removed job, or None when no job has that id."""
        jid = str(job_id or "").strip()
        if not jid:
            raise BadRequest("Provide a valid `job_id`.")
        with self.lock:
            removed = self.jobs.remove(jid)
            if removed is None:
                self._log.info("job.cancel.not_found", job_id=jid)
                return None
            self.coordinator.resync()
        self._log.info("job.canceled", job_id=jid)
        return removed

    def next_wake(self) -> Optional[int]:
        return self.alarms.get_alarm(self.tenant_id)

    def alarm(self) -> DeliveryReport:
        """Wake handler: deliver everything due, then point the alarm at the next job."""
        with self.lock:
            report = self.engine.run()
        self._log.info("alarm.done", sent=report.sent, skipped=report.skipped, purged=report.purged,
                       rescheduled=report.rescheduled, next_wake_ms=report.next_wake_ms)
        return report


class SchedulerHub:
    """One GuildScheduler per guild, created on first use."""

    def __init__(self, store: Storage, alarms: AlarmFacility, messenger: Messenger,
                 now_ms: Callable[[], int] = Clock.now_utc_ms, new_id: Callable[[], str] = _new_id,
                 ttl_ms: int = DELIVERED_TTL_MS):
        self.store, self.alarms, self.messenger = store, alarms, messenger
        self.now_ms, self.new_id, self.ttl_ms = now_ms, new_id, ttl_ms
        self._lock = threading.Lock()
        self._guilds: Dict[str, GuildScheduler] = {}

    def get(self, tenant_id: str) -> GuildScheduler:
        tid = str(tenant_id)
        with self._lock:
            gs = self._guilds.get(tid)
            if gs is None:
                gs = GuildScheduler(tid, self.store, self.alarms, self.messenger,
                                    now_ms=self.now_ms, new_id=self.new_id, ttl_ms=self.ttl_ms)
                self._guilds[tid] = gs
            return gs

    def on_alarm(self, tenant_id: str) -> DeliveryReport:
        return self.get(tenant_id).alarm()
