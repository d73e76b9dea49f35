# delivery.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Optional

from common import DELIVERED_TTL_MS, DeliveryError, str_exc, sublog
from contracts import AlarmFacility, Messenger
from dedup import DedupCache
from formatters import UnknownKind, render
from jobs import JobStore


class AlarmCoordinator:
    """
    Keeps the guild's single wake time equal to the earliest due job.

    Always derived from a fresh read of the persisted jobs, never from a job
    object held by the caller.
    """

    def __init__(self, jobs: JobStore, alarms: AlarmFacility):
        self.jobs = jobs
        self.alarms = alarms

    def resync(self) -> Optional[int]:
        jobs_now = self.jobs.snapshot()
        tid = self.jobs.tenant_id
        if not jobs_now:
            self.alarms.delete_alarm(tid)
            sublog("alarms", tenant_id=tid).debug("alarm.cleared")
            return None
        wake = jobs_now[0].due_at_ms
        self.alarms.set_alarm(tid, wake)
        sublog("alarms", tenant_id=tid).debug("alarm.set", wake_at_ms=wake, n_jobs=len(jobs_now))
        return wake


@dataclass
class DeliveryReport:
    sent: int = 0
    skipped: int = 0        # already in the dedupe cache
    purged: int = 0         # unknown kind
    rescheduled: int = 0
    removed: int = 0
    lost: int = 0           # occurrence vanished before removal (canceled meanwhile)
    next_wake_ms: Optional[int] = None


class DeliveryEngine:
    """
    Drains every due occurrence on a wake.

    Per occurrence: skip if its key is already delivered, else render and
    send; on success mark it delivered and persist the cache *before*
    touching the job set; then remove (or advance, for daily jobs) that
    exact occurrence. A failed send persists the cache as-is and raises
    DeliveryError so the wake is retried.
    """

    def __init__(self, jobs: JobStore, coordinator: AlarmCoordinator, messenger: Messenger,
                 now_ms: Callable[[], int], ttl_ms: int = DELIVERED_TTL_MS):
        self.jobs = jobs
        self.coordinator = coordinator
        self.messenger = messenger
        self.now_ms = now_ms
        self.ttl_ms = ttl_ms

    def run(self) -> DeliveryReport:
        lg = sublog("delivery", tenant_id=self.jobs.tenant_id)
        report = DeliveryReport()
        # Load once; keep in memory and persist updates as we go.
        cache = DedupCache.load(self.jobs.ts, self.now_ms(), ttl_ms=self.ttl_ms)

        while True:
            now = self.now_ms()
            # Always read the latest jobs from storage
            jobs_now = self.jobs.snapshot()
            if not jobs_now or jobs_now[0].due_at_ms > now:
                break  # nothing due
            job = jobs_now[0]
            key = job.occurrence_key()

            if cache.is_delivered(key):
                report.skipped += 1
                lg.info("delivery.skip.already_delivered", occurrence=key)
            else:
                try:
                    msg = render(job)
                except UnknownKind as e:
                    # corrupt record: drop it so the wake pipeline can't get stuck
                    self.jobs.purge_occurrence(job.id, job.due_unix)
                    report.purged += 1
                    lg.warn("delivery.purge.unknown_kind", occurrence=key, kind=job.kind, err=str(e))
                    continue

                try:
                    res = self.messenger.send(job.channel_id, msg.content, msg.allowed_mentions)
                except Exception as e:
                    cache.prune(self.now_ms())
                    cache.save()
                    lg.warn("delivery.send.raised", occurrence=key, err=str_exc(e))
                    raise DeliveryError(0, str_exc(e), occurrence=key) from e
                if not res.ok:
                    cache.prune(self.now_ms())
                    cache.save()
                    lg.warn("delivery.send.fail", occurrence=key, status=res.status)
                    raise DeliveryError(res.status, res.body, occurrence=key)

                # Mark delivered ASAP to prevent duplicates if something fails after sending
                cache.mark_delivered(key, self.now_ms())
                cache.save()
                report.sent += 1
                lg.info("delivery.sent", occurrence=key, kind=job.kind, channel_id=job.channel_id)

            found, nxt = self.jobs.finish_occurrence(job.id, job.due_unix, self.now_ms())
            if not found:
                report.lost += 1
                lg.debug("delivery.finish.missing", occurrence=key)
            elif nxt is not None:
                report.rescheduled += 1
                lg.info("delivery.rescheduled", job_id=job.id, due_unix=nxt.due_unix)
            else:
                report.removed += 1

        cache.prune(self.now_ms())
        cache.save()
        report.next_wake_ms = self.coordinator.resync()
        return report
