# formatters.py
"""
Outbound message rendering, one case per job kind.

The kind set is closed; anything else found on a stored job is corrupt data.
"""
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, TYPE_CHECKING

if TYPE_CHECKING:
    from jobs import Job


class Kind(str, Enum):
    PING_ROLE = "ping-role"
    PING_USER = "ping-user"
    CHANNEL_MESSAGE = "channel-message"


class UnknownKind(ValueError):
    pass


@dataclass(frozen=True)
class Rendered:
    inner: str                        # mention or text, also used for listings
    allowed_mentions: Dict[str, Any]
    content: str                      # full message body


def is_known_kind(kind: str) -> bool:
    return kind in Kind._value2member_map_


def parse_kind(kind: str) -> Kind:
    try:
        return Kind(kind)
    except ValueError:
        raise UnknownKind(f"Unknown job kind {kind!r}") from None


def render(job: "Job") -> Rendered:
    kind = parse_kind(job.kind)
    s = job.subject
    match kind:
        case Kind.PING_ROLE:
            inner = f"<@&{s}>"
            return Rendered(inner, {"roles": [s]},
                            f"{inner} (scheduled role ping for <t:{job.due_unix}:F>)")
        case Kind.PING_USER:
            inner = f"<@{s}>"
            return Rendered(inner, {"users": [s]},
                            f"{inner} (scheduled user ping for <t:{job.due_unix}:F>)")
        case Kind.CHANNEL_MESSAGE:
            return Rendered(s, {"parse": []}, s)
