# jobs.py
from __future__ import annotations
from dataclasses import dataclass, asdict, replace
from typing import Any, List, Optional, Tuple

from common import DAY_SEC, DAY_MS, JOBS_KEY, log
from storage import TenantStorage, TenantTxn


@dataclass
class Job:
    """
    One scheduled action for a guild.

    `id` is stable across daily reschedules; `(id, due_unix)` identifies one
    occurrence. `due_at_ms` is the sort key and always equals `due_unix * 1000`.
    """
    id: str
    tenant_id: str
    channel_id: str
    kind: str
    subject: str
    due_unix: int
    due_at_ms: Optional[int] = None
    repeats_daily: bool = False
    created_by: Optional[str] = None

    def __post_init__(self):
        self.due_unix = int(self.due_unix)
        if self.due_at_ms is None:
            self.due_at_ms = self.due_unix * 1000
        self.due_at_ms = int(self.due_at_ms)

    @classmethod
    def from_dict(cls, d: dict) -> "Job":
        return cls(
            id=str(d["id"]),
            tenant_id=str(d.get("tenant_id") or ""),
            channel_id=str(d.get("channel_id") or ""),
            kind=str(d.get("kind") or ""),
            subject=str(d.get("subject") or ""),
            due_unix=int(d["due_unix"]),
            due_at_ms=d.get("due_at_ms"),
            repeats_daily=d.get("repeats_daily") is True,
            created_by=d.get("created_by"),
        )

    def to_dict(self) -> dict:
        return asdict(self)

    def occurrence_key(self) -> str:
        # One key per occurrence of the job (id + due time)
        return f"{self.id}:{self.due_unix}"

    def is_occurrence(self, job_id: str, due_unix: int) -> bool:
        return self.id == job_id and self.due_unix == int(due_unix)

    def next_occurrence(self, now_ms: int) -> "Job":
        """
        The following daily occurrence, advanced past any missed days so that
        its due time is strictly greater than `now_ms`.
        """
        next_unix = self.due_unix + DAY_SEC
        next_ms = self.due_at_ms + DAY_MS
        # catch up if we're behind
        while next_ms <= now_ms:
            next_unix += DAY_SEC
            next_ms += DAY_MS
        return replace(self, due_unix=next_unix, due_at_ms=next_ms)


def _sort(jobs: List[Job]) -> List[Job]:
    jobs.sort(key=lambda j: j.due_at_ms)
    return jobs


def _decode(raw: Any, tenant_id: str) -> List[Job]:
    if not isinstance(raw, list):
        if raw is not None:
            log().warn("jobs.decode.not_a_list", tenant_id=tenant_id, type=type(raw).__name__)
        return []
    out: List[Job] = []
    for item in raw:
        try:
            out.append(Job.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            log().warn("jobs.decode.malformed", tenant_id=tenant_id, err=str(e), record=item)
    return _sort(out)


def _encode(jobs: List[Job]) -> List[dict]:
    return [j.to_dict() for j in jobs]


class JobStore:
    """
    The guild's Job Set, persisted as one value.

    Every mutation is a read-modify-write inside the storage transaction, so
    a schedule racing a cancel or a delivery can't lose either update.
    Reads always re-sort by due time.
    """

    def __init__(self, ts: TenantStorage):
        self.ts = ts

    @property
    def tenant_id(self) -> str:
        return self.ts.tenant_id

    def _read(self, txn: TenantTxn) -> List[Job]:
        return _decode(txn.get(JOBS_KEY), self.tenant_id)

    def _write(self, txn: TenantTxn, jobs: List[Job]):
        txn.put(JOBS_KEY, _encode(_sort(jobs)))

    def snapshot(self) -> List[Job]:
        return _decode(self.ts.get(JOBS_KEY), self.tenant_id)

    def insert(self, job: Job):
        with self.ts.transaction() as txn:
            jobs = self._read(txn)
            jobs.append(job)
            self._write(txn, jobs)

    def remove(self, job_id: str) -> Optional[Job]:
        """Remove the job with `job_id`. None means no such job."""
        with self.ts.transaction() as txn:
            jobs = self._read(txn)
            idx = next((i for i, j in enumerate(jobs) if j.id == job_id), None)
            if idx is None:
                return None
            removed = jobs.pop(idx)
            self._write(txn, jobs)
            return removed

    def finish_occurrence(self, job_id: str, due_unix: int, now_ms: int) -> Tuple[bool, Optional[Job]]:
        """
        Remove the exact occurrence `(job_id, due_unix)`; re-insert its next
        daily occurrence when it repeats.

        Returns (found, next_job). found=False means it was canceled or
        already advanced meanwhile.
        """
        with self.ts.transaction() as txn:
            jobs = self._read(txn)
            idx = next((i for i, j in enumerate(jobs) if j.is_occurrence(job_id, due_unix)), None)
            if idx is None:
                return False, None
            cur = jobs.pop(idx)
            nxt = None
            if cur.repeats_daily:
                nxt = cur.next_occurrence(now_ms)
                jobs.append(nxt)
            self._write(txn, jobs)
            return True, nxt

    def purge_occurrence(self, job_id: str, due_unix: int) -> bool:
        with self.ts.transaction() as txn:
            jobs = self._read(txn)
            keep = [j for j in jobs if not j.is_occurrence(job_id, due_unix)]
            if len(keep) == len(jobs):
                return False
            self._write(txn, keep)
            return True
