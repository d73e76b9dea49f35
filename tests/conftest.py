from typing import Any, Dict, List, Optional, Tuple

import pytest

from common import AppConfig
from guild_scheduler import SchedulerHub
from messenger import SendResult
from scheduler import AlarmClock
from storage import Storage

GUILD = "111111111111111111"
OTHER_GUILD = "999999999999999999"
CHANNEL = "222222222222222222"
ROLE = "333333333333333333"
USER = "444444444444444444"
OWNER = "555555555555555555"

# 2023-11-14T22:13:20Z
T0_MS = 1_700_000_000_000
T0 = T0_MS // 1000


class FakeClock:
    """Callable ms clock the tests move by hand."""

    def __init__(self, ms: int = T0_MS):
        self.ms = int(ms)

    def __call__(self) -> int:
        return self.ms

    def advance(self, sec: float = 0, ms: int = 0):
        self.ms += int(sec * 1000) + int(ms)

    def set_unix(self, unix: int):
        self.ms = int(unix) * 1000


class FakeMessenger:
    """Records sends; can be told to fail (status) or blow up (exception)."""

    def __init__(self):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []
        self.fail_status: Optional[int] = None
        self.raise_exc: Optional[Exception] = None
        self.owner_id: Optional[str] = OWNER
        self.owner_calls = 0

    def send(self, channel_id: str, content: str, allowed_mentions: Dict[str, Any]) -> SendResult:
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail_status is not None:
            return SendResult(ok=False, status=self.fail_status, body="nope")
        self.sent.append((channel_id, content, allowed_mentions))
        return SendResult(ok=True, status=200)

    def fetch_guild_owner_id(self, guild_id: str) -> Optional[str]:
        self.owner_calls += 1
        return self.owner_id


@pytest.fixture
def store(tmp_path):
    s = Storage(str(tmp_path / "doat.sqlite"))
    yield s
    s.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def alarms(store, clock):
    return AlarmClock(store, now_ms=clock, retry_base_ms=1_000, retry_max_ms=8_000)


@pytest.fixture
def hub(store, alarms, messenger, clock):
    h = SchedulerHub(store, alarms, messenger, now_ms=clock)
    alarms.set_handler(h.on_alarm)
    return h


@pytest.fixture
def gs(hub):
    return hub.get(GUILD)


@pytest.fixture
def cfg(tmp_path):
    return AppConfig(
        DB_PATH=str(tmp_path / "engine.sqlite"),
        LOG_LEVEL="DEBUG",
        CONSOLE_GUILD_ID=GUILD,
        CONSOLE_CHANNEL_ID=CHANNEL,
        CONSOLE_USER_ID=OWNER,
    )
