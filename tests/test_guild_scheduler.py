import random
import threading

import pytest

from common import BadRequest, DAY_SEC
from guild_scheduler import ScheduleRequest

from conftest import CHANNEL, GUILD, OTHER_GUILD, ROLE, T0


def _req(due, kind="ping-role", subject=ROLE, repeats=False, guild=GUILD):
    return ScheduleRequest(tenant_id=guild, channel_id=CHANNEL, kind=kind, subject=subject,
                           due_unix=due, repeats_daily=repeats)


def _assert_alarm_is_earliest(gs):
    jobs = gs.list_jobs()
    if jobs:
        assert gs.next_wake() == min(j.due_at_ms for j in jobs)
    else:
        assert gs.next_wake() is None


def test_schedule_then_list(gs):
    job = gs.schedule(_req(T0 + 100))
    listed = gs.list_jobs()
    assert len(listed) == 1
    assert listed[0].id == job.id
    assert listed[0].due_at_ms == (T0 + 100) * 1000


def test_alarm_tracks_minimum_through_random_schedule_and_cancel(gs):
    rng = random.Random(7)
    ids = []
    for _ in range(60):
        if ids and rng.random() < 0.4:
            gs.cancel(ids.pop(rng.randrange(len(ids))))
        else:
            ids.append(gs.schedule(_req(T0 + rng.randint(1, 10_000))).id)
        _assert_alarm_is_earliest(gs)
    for jid in ids:
        gs.cancel(jid)
    _assert_alarm_is_earliest(gs)


def test_cancel_twice(gs):
    keep = gs.schedule(_req(T0 + 50))
    job = gs.schedule(_req(T0 + 100))
    assert gs.cancel(job.id).id == job.id
    before = gs.list_jobs()
    assert gs.cancel(job.id) is None
    assert gs.list_jobs() == before == [keep]


def test_cancel_blank_id_is_rejected(gs):
    with pytest.raises(BadRequest):
        gs.cancel("  ")


def test_schedule_rejects_unknown_kind(gs):
    with pytest.raises(BadRequest, match="Invalid target type."):
        gs.schedule(_req(T0 + 10, kind="ping-everyone"))
    assert gs.list_jobs() == []


def test_repeats_daily_only_for_true(gs):
    job = gs.schedule(_req(T0 + 10, repeats="true"))
    assert job.repeats_daily is False


def test_guilds_are_isolated(hub):
    a = hub.get(GUILD)
    b = hub.get(OTHER_GUILD)
    assert hub.get(GUILD) is a
    a.schedule(_req(T0 + 10))
    assert b.list_jobs() == []
    assert b.next_wake() is None


def test_end_to_end_one_shot_role_ping(hub, alarms, clock, messenger):
    gs = hub.get(GUILD)
    gs.schedule(_req(T0 + 60))
    clock.set_unix(T0 + 61)
    assert alarms.run_due() == 1
    assert len(messenger.sent) == 1
    channel, content, mentions = messenger.sent[0]
    assert channel == CHANNEL
    assert mentions == {"roles": [ROLE]}
    assert content.startswith(f"<@&{ROLE}>")
    assert gs.list_jobs() == []
    assert gs.next_wake() is None


def test_end_to_end_daily_message(hub, alarms, clock, messenger):
    gs = hub.get(GUILD)
    gs.schedule(_req(T0 + 10, kind="channel-message", subject="standup", repeats=True))
    clock.set_unix(T0 + 10)
    alarms.run_due()
    clock.set_unix(T0 + 10 + DAY_SEC)
    alarms.run_due()
    assert [c for _, c, _ in messenger.sent] == ["standup", "standup"]
    (job,) = gs.list_jobs()
    assert job.due_unix == T0 + 10 + 2 * DAY_SEC
    assert gs.next_wake() == job.due_at_ms


def test_schedule_during_in_flight_send_keeps_its_alarm(hub, alarms, clock, messenger):
    gs = hub.get(GUILD)
    gs.schedule(_req(T0 + 60))
    clock.set_unix(T0 + 61)
    late = []
    real_send = messenger.send

    def send(channel_id, content, allowed_mentions):
        t = threading.Thread(target=lambda: late.append(gs.schedule(_req(T0 + 500))))
        t.start()
        late.append(t)
        return real_send(channel_id, content, allowed_mentions)

    messenger.send = send
    alarms.run_due()
    late[0].join(timeout=5)

    (job,) = gs.list_jobs()
    assert job.due_unix == T0 + 500
    assert gs.next_wake() == job.due_at_ms
    assert alarms.get_alarm(GUILD) == job.due_at_ms
    assert len(messenger.sent) == 1
