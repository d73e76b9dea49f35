import requests

from common import AppConfig
from messenger import ConsoleMessenger, DiscordMessenger

from conftest import CHANNEL, GUILD, OWNER, ROLE


class _Resp:
    def __init__(self, status, payload=None, text=""):
        self.status_code = status
        self.ok = 200 <= status < 300
        self._payload = payload or {}
        self.text = text

    def json(self):
        return self._payload


class _Session:
    """Just enough of requests.Session for the messenger."""

    def __init__(self, resp=None, exc=None):
        self.headers = {}
        self.calls = []
        self.resp, self.exc = resp, exc

    def _do(self, method, url, **kw):
        self.calls.append((method, url, kw))
        if self.exc:
            raise self.exc
        return self.resp

    def post(self, url, **kw):
        return self._do("POST", url, **kw)

    def get(self, url, **kw):
        return self._do("GET", url, **kw)


def _cfg():
    return AppConfig(DISCORD_TOKEN="tok", DISCORD_API_BASE="https://example.test/api/", HTTP_TIMEOUT_SEC=3)


def test_send_posts_message():
    sess = _Session(_Resp(200))
    m = DiscordMessenger(_cfg(), session=sess)
    res = m.send(CHANNEL, "hi", {"roles": [ROLE]})
    assert res.ok
    method, url, kw = sess.calls[0]
    assert method == "POST" and url == f"https://example.test/api/channels/{CHANNEL}/messages"
    assert kw["json"] == {"content": "hi", "allowed_mentions": {"roles": [ROLE]}}
    assert kw["timeout"] == 3.0
    assert sess.headers["Authorization"] == "Bot tok"


def test_send_reports_http_failure():
    m = DiscordMessenger(_cfg(), session=_Session(_Resp(403, text="Missing Access")))
    res = m.send(CHANNEL, "hi", {"parse": []})
    assert not res.ok and res.status == 403 and res.body == "Missing Access"


def test_send_transport_error_is_a_failed_result():
    m = DiscordMessenger(_cfg(), session=_Session(exc=requests.ConnectionError("reset")))
    res = m.send(CHANNEL, "hi", {"parse": []})
    assert not res.ok and res.status == 0


def test_fetch_guild_owner():
    m = DiscordMessenger(_cfg(), session=_Session(_Resp(200, {"owner_id": int(OWNER)})))
    assert m.fetch_guild_owner_id(GUILD) == OWNER
    m = DiscordMessenger(_cfg(), session=_Session(_Resp(404)))
    assert m.fetch_guild_owner_id(GUILD) is None


def test_console_messenger_records():
    lines = []
    m = ConsoleMessenger(lines.append, owner_id=OWNER)
    assert m.send(CHANNEL, "hello", {"parse": []}).ok
    assert m.sent == [(CHANNEL, "hello", {"parse": []})]
    assert lines == [f"📣 #{CHANNEL}: hello"]
    assert m.fetch_guild_owner_id(GUILD) == OWNER
