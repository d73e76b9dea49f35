# contracts.py
from typing import Any, Dict, Optional, Protocol, TYPE_CHECKING

# forward declarations (no circular imports)
if TYPE_CHECKING:
    from messenger import SendResult


class Messenger(Protocol):
    def send(self, channel_id: str, content: str, allowed_mentions: Dict[str, Any]) -> "SendResult": ...
    def fetch_guild_owner_id(self, guild_id: str) -> Optional[str]: ...


class AlarmFacility(Protocol):
    """Durable per-guild wake-up: at-least-once, retried with backoff on handler failure."""
    def set_alarm(self, tenant_id: str, at_ms: int) -> None: ...
    def delete_alarm(self, tenant_id: str) -> None: ...
    def get_alarm(self, tenant_id: str) -> Optional[int]: ...
