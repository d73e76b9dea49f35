# dedup.py
from __future__ import annotations
from typing import Dict

from common import DELIVERED_KEY, DELIVERED_TTL_MS, log
from storage import TenantStorage


class DedupCache:
    """
    Recently delivered occurrence keys -> delivery time (ms).

    Best-effort and bounded by the retention window: a missing key means
    "not known to be delivered". Loaded once per wake, held in memory, and
    written back after every successful send and once at the end.
    """

    def __init__(self, ts: TenantStorage, entries: Dict[str, int] | None = None, ttl_ms: int = DELIVERED_TTL_MS):
        self.ts = ts
        self.ttl_ms = int(ttl_ms)
        self.entries: Dict[str, int] = dict(entries or {})

    @classmethod
    def load(cls, ts: TenantStorage, now_ms: int, ttl_ms: int = DELIVERED_TTL_MS) -> "DedupCache":
        raw = ts.get(DELIVERED_KEY)
        if not isinstance(raw, dict):
            if raw is not None:
                log().warn("dedup.load.reset", tenant_id=ts.tenant_id, type=type(raw).__name__)
            raw = {}
        cache = cls(ts, raw, ttl_ms=ttl_ms)
        cache.prune(now_ms)
        return cache

    def is_delivered(self, key: str) -> bool:
        return key in self.entries

    def mark_delivered(self, key: str, at_ms: int):
        self.entries[key] = int(at_ms)

    def prune(self, now_ms: int) -> int:
        """Drop entries older than the retention window (and non-numeric junk)."""
        cutoff = now_ms - self.ttl_ms
        stale = [k for k, v in self.entries.items()
                 if isinstance(v, bool) or not isinstance(v, (int, float)) or v < cutoff]
        for k in stale:
            del self.entries[k]
        return len(stale)

    def save(self):
        self.ts.put(DELIVERED_KEY, self.entries)
