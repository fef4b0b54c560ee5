import threading

import pytest

from dispatcher import Dispatcher, UserThrottle
from errors import ConflictRetryable, DuplicateTransaction
from schemas import RecurringTrigger


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, secs):
        self.sleeps.append(secs)
        self.now += secs


def _dispatcher(sleeps, max_attempts=4):
    return Dispatcher(
        max_attempts=max_attempts,
        backoff_secs=1,
        workers=1,
        throttle=UserThrottle(100, 60),
        sleep=sleeps.append,
    )


def test_retries_with_exponential_backoff_then_succeeds():
    sleeps = []
    calls = []

    def handler(trigger):
        calls.append(trigger)
        if len(calls) < 3:
            raise ConflictRetryable("row locked")
        return "posted"

    trigger = RecurringTrigger(template_id=7, user_id=1)
    report = _dispatcher(sleeps).dispatch([trigger], handler)

    assert report.succeeded == [(trigger, "posted")]
    assert report.failed == []
    assert len(calls) == 3
    assert sleeps == [1, 2]


def test_exhausted_task_is_reported_with_attempt_count():
    sleeps = []

    def handler(trigger):
        raise RuntimeError("store unavailable")

    trigger = RecurringTrigger(template_id=7, user_id=1)
    report = _dispatcher(sleeps, max_attempts=3).dispatch([trigger], handler)

    assert report.succeeded == []
    assert len(report.failed) == 1
    failed = report.failed[0]
    assert failed.trigger == trigger
    assert failed.attempts == 3
    assert isinstance(failed.error, RuntimeError)
    assert sleeps == [1, 2]


def test_non_retryable_errors_fail_immediately():
    sleeps = []
    calls = []

    def handler(trigger):
        calls.append(trigger)
        raise DuplicateTransaction("already recorded")

    report = _dispatcher(sleeps).dispatch([RecurringTrigger(template_id=1, user_id=1)], handler)

    assert len(calls) == 1
    assert report.failed[0].attempts == 1
    assert sleeps == []


def test_failures_do_not_affect_other_tasks():
    sleeps = []

    def handler(trigger):
        if trigger.template_id == 2:
            raise ValueError("bad template")
        return trigger.template_id

    triggers = [RecurringTrigger(template_id=i, user_id=i) for i in (1, 2, 3)]
    report = Dispatcher(
        max_attempts=2,
        backoff_secs=0,
        workers=3,
        throttle=UserThrottle(100, 60),
        sleep=sleeps.append,
    ).dispatch(triggers, handler)

    assert sorted(result for _, result in report.succeeded) == [1, 3]
    assert [f.trigger.template_id for f in report.failed] == [2]
    assert report.total == 3


def test_empty_dispatch_is_a_no_op():
    report = _dispatcher([]).dispatch([], lambda trigger: None)
    assert report.total == 0


def test_throttle_admits_up_to_limit_per_user_window():
    clock = FakeClock()
    throttle = UserThrottle(2, 60, clock=clock)

    assert throttle.try_acquire(1)
    clock.now = 10
    assert throttle.try_acquire(1)
    assert throttle.try_acquire(2)

    clock.now = 20
    assert not throttle.try_acquire(1)
    assert throttle.wait_time(1) == pytest.approx(40)
    assert throttle.wait_time(2) == 0.0

    clock.now = 60
    assert throttle.try_acquire(1)


def test_throttle_spreads_a_burst_for_one_user():
    clock = FakeClock()
    dispatcher = Dispatcher(
        max_attempts=1,
        workers=2,
        throttle=UserThrottle(10, 60, clock=clock),
        sleep=clock.sleep,
    )
    triggers = [RecurringTrigger(template_id=i, user_id=42) for i in range(25)]

    report = dispatcher.dispatch(triggers, lambda trigger: trigger.template_id)

    # 25 starts at 10 per minute need two full waits.
    assert clock.sleeps == [pytest.approx(60), pytest.approx(60)]
    assert report.total == 25


def test_backlogged_user_does_not_delay_other_users():
    clock = FakeClock()
    started = []
    ran = threading.Semaphore(0)
    # Tasks admitted before each window rolls over: user 1's ten plus user 2's
    # one, then user 1's next ten.
    admitted_per_window = iter([11, 10])

    def handler(trigger):
        started.append((trigger.user_id, clock()))
        ran.release()

    def sleep(secs):
        for _ in range(next(admitted_per_window)):
            assert ran.acquire(timeout=5)
        clock.sleep(secs)

    triggers = [RecurringTrigger(template_id=i, user_id=1) for i in range(30)]
    triggers.append(RecurringTrigger(template_id=99, user_id=2))
    report = Dispatcher(
        max_attempts=1,
        workers=2,
        throttle=UserThrottle(10, 60, clock=clock),
        sleep=sleep,
    ).dispatch(triggers, handler)

    assert report.total == 31
    assert [at for user, at in started if user == 2] == [0.0]
    user_one = sorted(at for user, at in started if user == 1)
    assert user_one == [0.0] * 10 + [60.0] * 10 + [120.0] * 10
