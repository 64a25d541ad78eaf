import numpy as np
import pytest

from pairsim.chain import ChainScheduler
from pairsim.errors import ChainConflictError, TradingPausedError


def _recorder():
    calls = []

    def make(label):
        return lambda: calls.append(label)
    return calls, make


def test_steps_run_in_due_order():
    sched = ChainScheduler()
    calls, make = _recorder()
    sched.submit(1, 0.5, make("slow"))
    sched.submit(2, 0.25, make("fast"))
    ran = sched.advance(1.0)
    assert calls == ["fast", "slow"]
    assert [t.status for t in ran] == ["done", "done"]
    assert sched.clock == 1.0


def test_nothing_runs_before_it_is_due():
    sched = ChainScheduler()
    calls, make = _recorder()
    sched.submit(1, 0.75, make("a"))
    assert sched.advance(0.5) == []
    assert sched.clock == 0.5
    assert sched.pending_count() == 1
    sched.advance(0.25)
    assert calls == ["a"]


def test_queue_policy_serialises_one_actor():
    sched = ChainScheduler(conflict_policy="queue")
    calls, make = _recorder()
    first = sched.submit(1, 0.25, make("first"))
    second = sched.submit(1, 0.25, make("second"))
    assert first.status == "pending"
    assert second.status == "queued"

    sched.advance(0.25)
    assert calls == ["first"]
    assert second.due == 0.5
    sched.advance(0.25)
    assert calls == ["first", "second"]


def test_reject_policy_refuses_second_step():
    sched = ChainScheduler(conflict_policy="reject")
    _, make = _recorder()
    sched.submit(1, 0.25, make("first"))
    with pytest.raises(ChainConflictError):
        sched.submit(1, 0.25, make("second"))
    # other actors are independent
    sched.submit(2, 0.25, make("other"))


def test_step_may_chain_its_own_follow_up_under_reject():
    sched = ChainScheduler(conflict_policy="reject")
    calls = []

    def step(n):
        def run():
            calls.append(n)
            if n < 3:
                sched.submit(1, 0.25, step(n + 1))
        return run

    sched.submit(1, 0.25, step(1))
    sched.run_pending()
    assert calls == [1, 2, 3]
    assert sched.clock == 0.75


def test_cancel_drops_pending_and_queued_steps():
    sched = ChainScheduler()
    calls, make = _recorder()
    a = sched.submit(1, 0.25, make("a"))
    b = sched.submit(1, 0.25, make("b"))
    sched.submit(2, 0.25, make("other"))
    assert sched.cancel(1) == 2
    sched.run_pending()
    assert calls == ["other"]
    assert a.status == "cancelled"
    assert b.status == "cancelled"


def test_paused_scheduler_skips_due_steps():
    sched = ChainScheduler()
    calls, make = _recorder()
    t = sched.submit(1, 0.25, make("a"))
    sched.pause()
    sched.advance(1.0)
    assert calls == []
    assert t.status == "skipped"

    sched.resume()
    sched.submit(1, 0.25, make("b"))
    sched.advance(1.0)
    assert calls == ["b"]


def test_failed_step_is_recorded_and_others_continue():
    sched = ChainScheduler()
    calls, make = _recorder()

    def boom():
        raise TradingPausedError("Trading is paused")

    bad = sched.submit(1, 0.25, boom)
    sched.submit(2, 0.5, make("ok"))
    sched.advance(1.0)
    assert bad.status == "failed"
    assert "paused" in bad.error
    assert calls == ["ok"]


def test_run_pending_respects_step_limit():
    sched = ChainScheduler()

    def forever():
        sched.submit(1, 0.25, forever)

    sched.submit(1, 0.25, forever)
    ran = sched.run_pending(max_steps=5)
    assert len(ran) == 5
    assert sched.pending_count() == 1


def test_actor_delay_is_drawn_once_within_bounds():
    np.random.seed(3)
    sched = ChainScheduler(min_interval=0.1, max_interval=1.0)
    d = sched.delay_for(7)
    assert 0.1 <= d <= 1.0
    assert sched.delay_for(7) == d
    task = sched.submit(7, None, lambda: None)
    assert task.delay == d


def test_reset_clears_everything():
    sched = ChainScheduler()
    calls, make = _recorder()
    t = sched.submit(1, 0.25, make("a"))
    sched.advance(0.1)
    sched.pause()
    sched.reset()
    assert t.token.cancelled
    assert sched.pending_count() == 0
    assert sched.clock == 0.0
    assert not sched.paused
    sched.advance(1.0)
    assert calls == []


def test_unexpected_error_still_releases_the_actor_queue():
    sched = ChainScheduler(conflict_policy="queue")
    calls, make = _recorder()

    def broken():
        raise ValueError("bad step")

    bad = sched.submit(1, 0.25, broken)
    second = sched.submit(1, 0.25, make("second"))
    with pytest.raises(ValueError):
        sched.run_pending()
    assert bad.status == "failed"
    assert bad in sched.history
    assert second.status == "pending"
    assert sched.has_pending(1)

    sched.run_pending()
    assert calls == ["second"]
    assert second.status == "done"
    assert sched.pending_count() == 0
    assert not sched.has_pending(1)
