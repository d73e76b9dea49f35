import threading
import time

import pytest

from scheduler import AlarmClock

from conftest import GUILD, OTHER_GUILD, T0_MS


def test_backoff_doubles_and_caps(alarms):
    assert [alarms.backoff_ms(n) for n in (1, 2, 3, 4, 5, 9)] == [1000, 2000, 4000, 8000, 8000, 8000]


def test_success_clears_fired_alarm(store, clock):
    fired = []
    ac = AlarmClock(store, handler=fired.append, now_ms=clock)
    ac.set_alarm(GUILD, T0_MS)
    ac.set_alarm(OTHER_GUILD, T0_MS + 10_000)
    assert ac.run_due() == 1
    assert fired == [GUILD]
    assert ac.get_alarm(GUILD) is None
    assert ac.get_alarm(OTHER_GUILD) == T0_MS + 10_000


def test_handler_that_rearms_keeps_new_alarm(store, clock):
    ac = AlarmClock(store, now_ms=clock)
    ac.set_handler(lambda tid: ac.set_alarm(tid, T0_MS + 60_000))
    ac.set_alarm(GUILD, T0_MS)
    ac.run_due()
    assert ac.get_alarm(GUILD) == T0_MS + 60_000


def test_failure_defers_with_backoff_until_success(store, clock):
    calls = []

    def handler(tid):
        calls.append(clock())
        if len(calls) < 3:
            raise RuntimeError("discord down")

    ac = AlarmClock(store, handler=handler, now_ms=clock, retry_base_ms=1000, retry_max_ms=60_000)
    ac.set_alarm(GUILD, T0_MS)

    ac.run_due()
    row = store.get_alarm(GUILD)
    assert row["attempts"] == 1 and row["retry_at_ms"] == T0_MS + 1000
    assert "discord down" in row["last_error"]
    assert ac.get_alarm(GUILD) == T0_MS

    clock.advance(ms=500)
    assert ac.run_due() == 0

    clock.advance(ms=500)
    ac.run_due()
    row = store.get_alarm(GUILD)
    assert row["attempts"] == 2 and row["retry_at_ms"] == clock() + 2000

    clock.advance(ms=2000)
    ac.run_due()
    assert len(calls) == 3
    assert store.get_alarm(GUILD) is None


def test_thread_fires_due_alarm(store):
    done = threading.Event()
    ac = AlarmClock(store, handler=lambda tid: done.set(), poll_sec=0.05)
    ac.set_alarm(GUILD, 0)
    ac.start()
    try:
        assert done.wait(timeout=5)
    finally:
        ac.stop()
    assert ac.get_alarm(GUILD) is None


def test_firing_without_handler_is_an_error(store, clock):
    ac = AlarmClock(store, now_ms=clock)
    ac.set_alarm(GUILD, T0_MS)
    with pytest.raises(RuntimeError, match="no handler"):
        ac.run_due()
    assert ac.get_alarm(GUILD) == T0_MS


def test_stop_waits_for_in_flight_handler(store):
    entered = threading.Event()
    finished = []

    def handler(tid):
        entered.set()
        time.sleep(0.3)
        finished.append(tid)

    ac = AlarmClock(store, handler=handler, poll_sec=0.05)
    ac.set_alarm(GUILD, 0)
    ac.start()
    assert entered.wait(timeout=5)
    ac.stop()
    assert finished == [GUILD]
    assert ac.get_alarm(GUILD) is None
