from __future__ import annotations
import requests
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from common import AppConfig, log


@dataclass
class SendResult:
    ok: bool
    status: int = 0
    body: str = ""


# =======================
# ====== DISCORD ========
# =======================

class DiscordMessenger:
    """Posts channel messages through the Discord REST API with a bot token."""
    BASE_URL = "https://discord.com/api/v10"

    def __init__(self, cfg: AppConfig, session: Optional[requests.Session] = None):
        self.cfg = cfg
        self.base_url = (cfg.DISCORD_API_BASE or self.BASE_URL).rstrip("/")
        self.timeout = float(cfg.HTTP_TIMEOUT_SEC or 30.0)
        self.sess = session or requests.Session()
        self.sess.headers.update({
            "Authorization": f"Bot {cfg.DISCORD_TOKEN}",
            "content-type": "application/json",
        })

    def send(self, channel_id: str, content: str, allowed_mentions: Dict[str, Any]) -> SendResult:
        url = f"{self.base_url}/channels/{channel_id}/messages"
        try:
            r = self.sess.post(url, json={"content": content, "allowed_mentions": allowed_mentions},
                               timeout=self.timeout)
        except requests.RequestException as e:
            log().warn("discord.send.transport", channel_id=channel_id, err=str(e))
            return SendResult(ok=False, status=0, body=str(e))
        if not r.ok:
            return SendResult(ok=False, status=r.status_code, body=r.text)
        return SendResult(ok=True, status=r.status_code)

    def fetch_guild_owner_id(self, guild_id: str) -> Optional[str]:
        """Guild object includes owner_id; None on any failure."""
        try:
            r = self.sess.get(f"{self.base_url}/guilds/{guild_id}", timeout=self.timeout)
        except requests.RequestException as e:
            log().warn("discord.guild.transport", guild_id=guild_id, err=str(e))
            return None
        if not r.ok:
            log().warn("discord.guild.fail", guild_id=guild_id, status=r.status_code)
            return None
        owner = r.json().get("owner_id")
        return str(owner) if owner is not None else None


# =======================
# ====== CONSOLE ========
# =======================

class ConsoleMessenger:
    """
    Dry-run messenger: writes deliveries to a text sink and remembers them.
    Used when no Discord token is configured.
    """

    def __init__(self, sink: Callable[[str], None], owner_id: Optional[str] = None):
        self.sink = sink
        self.owner_id = owner_id
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    def send(self, channel_id: str, content: str, allowed_mentions: Dict[str, Any]) -> SendResult:
        self.sent.append((channel_id, content, allowed_mentions))
        self.sink(f"📣 #{channel_id}: {content}")
        return SendResult(ok=True, status=200)

    def fetch_guild_owner_id(self, guild_id: str) -> Optional[str]:
        return self.owner_id
