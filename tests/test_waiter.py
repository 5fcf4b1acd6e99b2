import pytest

from deployops.core.waiter import PollState, Waiter, WaitTimeout


class _Predicate:
    def __init__(self, done_on: int | None):
        self.done_on = done_on
        self.calls = 0

    def __call__(self) -> bool:
        self.calls += 1
        return self.done_on is not None and self.calls >= self.done_on


@pytest.mark.parametrize("done_on", [1, 2, 5])
def test_wait_returns_after_exactly_n_calls_without_trailing_sleep(done_on: int):
    sleeps: list[float] = []
    predicate = _Predicate(done_on)

    Waiter(interval=3, max_attempts=5, sleep=sleeps.append).wait(predicate)

    assert predicate.calls == done_on
    assert sleeps == [3] * (done_on - 1)


def test_wait_times_out_after_max_attempts():
    sleeps: list[float] = []
    predicate = _Predicate(None)

    with pytest.raises(WaitTimeout, match="4 attempt"):
        Waiter(interval=2, max_attempts=4, sleep=sleeps.append).wait(predicate)

    assert predicate.calls == 4
    assert sleeps == [2, 2, 2]


def test_wait_with_no_attempts_never_calls_predicate():
    predicate = _Predicate(1)

    with pytest.raises(WaitTimeout):
        Waiter(interval=1, max_attempts=0, sleep=lambda _: None).wait(predicate)

    assert predicate.calls == 0


def test_wait_propagates_predicate_errors():
    def _boom():
        raise KeyError("status")

    with pytest.raises(KeyError):
        Waiter(interval=1, max_attempts=3, sleep=lambda _: None).wait(_boom)


def test_poll_state_reports_every_nth_iteration():
    poll = PollState(log_every=3)

    ticks = [poll.tick() for _ in range(7)]

    assert ticks == [False, False, True, False, False, True, False]
    assert poll.iteration == 7


def test_poll_state_never_reports_when_disabled():
    poll = PollState(log_every=0)

    assert not any(poll.tick() for _ in range(5))
