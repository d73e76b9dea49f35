import pytest

from bot_api import BotEngine
from commands import GENERIC_FAILURE, MAX_DUE_UNIX, OCTable, _message_error, _parse_due_unix
from common import BadRequest
from permissions import Caller

from conftest import CHANNEL, GUILD, OWNER, ROLE, T0, USER


@pytest.fixture
def eng(cfg, messenger, clock):
    e = BotEngine(cfg, messenger=messenger, now_ms=clock).build()
    yield e
    e.store.close()


def run(eng, text, caller=None) -> str:
    return eng.dispatch_command(text, caller=caller, origin=None).plain()


def member(perms="0", user=USER, guild=GUILD):
    return Caller(guild_id=guild, channel_id=CHANNEL, user_id=user, permissions=perms)


def test_alive_needs_no_guild(eng):
    assert run(eng, "?alive", Caller()) == "I'm here!!1"


def test_help_lists_commands(eng):
    out = run(eng, "?help")
    for name in ("?alive", "!pingroleat", "!pingmeat", "!sayat", "?doat-list", "!doat-cancel", "?doat-next"):
        assert name in out


def test_help_for_one_command(eng):
    out = run(eng, "?help !sayat")
    assert "!sayat" in out and "Schedule a message" in out


def test_unknown_command(eng):
    assert "Unknown command" in run(eng, "!nope")


def test_pingroleat_schedules(eng):
    out = run(eng, f"!pingroleat {T0 + 60} <@&{ROLE}>")
    assert out.startswith("✅ Scheduled job for")
    (job,) = eng.hub.get(GUILD).list_jobs()
    assert job.kind == "ping-role" and job.subject == ROLE
    assert job.channel_id == CHANNEL and job.created_by == OWNER
    assert job.id in out
    assert eng.hub.get(GUILD).next_wake() == (T0 + 60) * 1000


def test_pingmeat_accepts_nick_mention_and_repeat(eng):
    out = run(eng, f"!pingmeat {T0 + 60} <@!{USER}> repeat_daily:true")
    assert "🔁 Repeats daily." in out
    (job,) = eng.hub.get(GUILD).list_jobs()
    assert job.kind == "ping-user" and job.subject == USER and job.repeats_daily is True


def test_sayat_keeps_whole_message(eng):
    run(eng, f"!sayat {T0 + 60} stand up   in 5: now repeat_daily:yes")
    (job,) = eng.hub.get(GUILD).list_jobs()
    assert job.kind == "channel-message"
    assert job.subject == "stand up   in 5: now"
    assert job.repeats_daily is True


def test_milliseconds_are_floored(eng):
    run(eng, f"!pingroleat {(T0 + 60) * 1000 + 999} {ROLE}")
    (job,) = eng.hub.get(GUILD).list_jobs()
    assert job.due_unix == T0 + 60


@pytest.mark.parametrize("text, expected", [
    (f"!pingroleat soon {ROLE}", "`timestamp` must be an integer Unix timestamp in seconds."),
    (f"!pingroleat {T0 + 1.5} {ROLE}", "`timestamp` must be an integer Unix timestamp in seconds."),
    (f"!pingroleat {T0} {ROLE}", "That timestamp is in the past."),
    (f"!pingroleat {T0 + 60} everyone", "Invalid role."),
    (f"!pingroleat {T0 + 60} 1234", "Invalid role."),
    (f"!pingmeat {T0 + 60} <@&{ROLE}>x", "Invalid user."),
    (f"!sayat {T0 + 60} " + "x" * 2001, "Message too long (max 2000 chars)."),
    (f"!pingroleat {T0 + 60} {ROLE} repeat_daily:maybe", "`repeat_daily` must be true or false, not 'maybe'."),
])
def test_validation_errors_do_not_mutate(eng, text, expected):
    assert run(eng, text) == expected
    assert eng.hub.get(GUILD).list_jobs() == []
    assert eng.hub.get(GUILD).next_wake() is None


def test_sayat_without_message_shows_usage(eng):
    out = run(eng, f"!sayat {T0 + 60}")
    assert "Missing: message" in out
    assert eng.hub.get(GUILD).list_jobs() == []


def test_parse_due_unix_edges():
    with pytest.raises(BadRequest, match="in the past"):
        _parse_due_unix(str(T0 - 1), T0 * 1000)
    assert _parse_due_unix(f"{T0 + 1}.0", T0 * 1000) == T0 + 1


def test_guild_commands_need_a_guild(eng):
    assert run(eng, f"!pingroleat {T0 + 60} {ROLE}", Caller(user_id=OWNER)) == "Use this command inside a server."


def test_non_moderator_is_denied(eng, messenger):
    out = run(eng, f"!pingroleat {T0 + 60} {ROLE}", member(perms="0"))
    assert out == "Only moderators or the server owner can use this command."
    assert messenger.owner_calls == 1
    assert eng.hub.get(GUILD).list_jobs() == []


def test_owner_without_perms_is_allowed(eng):
    out = run(eng, f"!pingroleat {T0 + 60} {ROLE}", member(perms="0", user=OWNER))
    assert out.startswith("✅")


def test_list_and_cancel(eng, cfg):
    cfg.LIST_LIMIT = 2
    for i in range(3):
        run(eng, f"!sayat {T0 + 100 + i} msg {i}")
    co = eng.dispatch_command("?doat-list", origin=None)
    assert "(3 total)" in co.plain()
    table = [c for c in co if isinstance(c, OCTable)][0]
    assert len(table.rows) == 2
    assert [r[1] for r in table.rows] == ["msg 0", "msg 1"]

    jid = table.rows[0][-1]
    assert "🗑️ Cancelled job" in run(eng, f"!doat-cancel {jid}")
    assert "No job found" in run(eng, f"!doat-cancel {jid}")
    assert len(eng.hub.get(GUILD).list_jobs()) == 2


def test_list_empty_and_next(eng):
    assert run(eng, "?doat-list") == "No scheduled jobs."
    assert run(eng, "?doat-next") == "No pending wake."
    run(eng, f"!pingroleat {T0 + 60} {ROLE}")
    assert run(eng, "?doat-next").startswith("⏰ Next wake:")


def test_unexpected_error_is_generic(eng, monkeypatch):
    def boom(req):
        raise RuntimeError("db on fire")

    monkeypatch.setattr(eng.hub.get(GUILD), "schedule", boom)
    assert run(eng, f"!pingroleat {T0 + 60} {ROLE}") == GENERIC_FAILURE


def test_console_render_does_not_raise(eng, capsys):
    eng.dispatch_command("?help detail:3")
    eng.dispatch_command("?doat-list")
    assert "Commands" in capsys.readouterr().out


def test_message_rules():
    assert _message_error("") == "Message cannot be empty."
    assert _message_error("x" * 2000) is None
    assert _message_error("x" * 2001) == "Message too long (max 2000 chars)."


@pytest.mark.parametrize("raw", ["1000000000000000", "1e19", "253402300800"])
def test_far_future_timestamp_is_rejected_before_storing(eng, raw):
    assert run(eng, f"!pingroleat {raw} {ROLE}") == "`timestamp` must be an integer Unix timestamp in seconds."
    assert eng.hub.get(GUILD).list_jobs() == []
    assert eng.hub.get(GUILD).next_wake() is None
    assert run(eng, "?doat-list") == "No scheduled jobs."


def test_latest_allowed_timestamp_lists_fine(eng):
    assert run(eng, f"!pingroleat {MAX_DUE_UNIX} {ROLE}").startswith("✅")
    assert "(1 total)" in run(eng, "?doat-list")
