import logging
import threading
import time
from collections import defaultdict, deque
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import get_settings
from errors import NON_RETRYABLE
from schemas import RecurringTrigger

logger = logging.getLogger(__name__)


class UserThrottle:
    """At most ``limit`` task starts per user within any ``period_secs`` window.

    Admission is non-blocking; callers decide what to do while a user waits.
    """

    def __init__(
        self,
        limit: int,
        period_secs: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.period_secs = period_secs
        self._clock = clock
        self._starts: dict[int, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def _window(self, user_id: int, now: float) -> deque[float]:
        starts = self._starts[user_id]
        while starts and now - starts[0] >= self.period_secs:
            starts.popleft()
        return starts

    def try_acquire(self, user_id: int) -> bool:
        with self._lock:
            now = self._clock()
            starts = self._window(user_id, now)
            if len(starts) >= self.limit:
                return False
            starts.append(now)
            return True

    def wait_time(self, user_id: int) -> float:
        """Seconds until ``user_id`` may start another task; 0 when it may now."""
        with self._lock:
            now = self._clock()
            starts = self._window(user_id, now)
            if len(starts) < self.limit:
                return 0.0
            return self.period_secs - (now - starts[0])


class TaskExhausted(Exception):
    def __init__(self, error: BaseException, attempts: int) -> None:
        super().__init__(f"task failed after {attempts} attempt(s): {error!r}")
        self.error = error
        self.attempts = attempts


@dataclass(frozen=True)
class FailedTask:
    trigger: RecurringTrigger
    error: BaseException
    attempts: int


@dataclass
class DispatchReport:
    succeeded: list[tuple[RecurringTrigger, Any]] = field(default_factory=list)
    failed: list[FailedTask] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)


class Dispatcher:
    def __init__(
        self,
        *,
        max_attempts: Optional[int] = None,
        backoff_secs: Optional[float] = None,
        workers: Optional[int] = None,
        throttle: Optional[UserThrottle] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self.max_attempts = max_attempts or settings.dispatch_max_attempts
        self.backoff_secs = (
            settings.dispatch_backoff_secs if backoff_secs is None else backoff_secs
        )
        self.workers = workers or settings.dispatch_workers
        self.throttle = throttle or UserThrottle(
            settings.throttle_limit, settings.throttle_period_secs
        )
        self._sleep = sleep

    def dispatch(
        self,
        triggers: Sequence[RecurringTrigger],
        handler: Callable[[RecurringTrigger], Any],
    ) -> DispatchReport:
        report = DispatchReport()
        if not triggers:
            return report

        backlog: dict[int, deque[RecurringTrigger]] = {}
        for trigger in triggers:
            backlog.setdefault(trigger.user_id, deque()).append(trigger)

        futures: dict[Future, RecurringTrigger] = {}
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            while backlog:
                # One trigger per user per pass; a throttled user is skipped,
                # never waited on by a worker.
                admitted = 0
                for user_id in list(backlog):
                    if not self.throttle.try_acquire(user_id):
                        continue
                    trigger = backlog[user_id].popleft()
                    futures[pool.submit(self._run, trigger, handler)] = trigger
                    admitted += 1
                    if not backlog[user_id]:
                        del backlog[user_id]
                if backlog and not admitted:
                    wait = min(self.throttle.wait_time(user_id) for user_id in backlog)
                    logger.debug(
                        f"throttle_wait: users={sorted(backlog)} secs={wait:.2f}"
                    )
                    self._sleep(max(wait, 0.0))

            for future in as_completed(futures):
                trigger = futures[future]
                try:
                    report.succeeded.append((trigger, future.result()))
                except TaskExhausted as exc:
                    logger.error(
                        f"dispatch_failed: template_id={trigger.template_id}"
                        f" user_id={trigger.user_id} attempts={exc.attempts}"
                        f" error={exc.error!r}"
                    )
                    report.failed.append(FailedTask(trigger, exc.error, exc.attempts))
        logger.info(
            f"dispatch_done: total={report.total} succeeded={len(report.succeeded)}"
            f" failed={len(report.failed)}"
        )
        return report

    def _run(self, trigger: RecurringTrigger, handler: Callable[[RecurringTrigger], Any]):
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_secs, max=60),
            retry=retry_if_not_exception_type(NON_RETRYABLE),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return retrying(handler, trigger)
        except Exception as exc:
            attempts = retrying.statistics.get("attempt_number", 1)
            raise TaskExhausted(exc, attempts) from exc

    @staticmethod
    def _log_retry(state: RetryCallState) -> None:
        trigger = state.args[0] if state.args else None
        logger.warning(
            f"dispatch_retry: trigger={trigger!r} attempt={state.attempt_number}"
            f" error={state.outcome.exception()!r}"
        )
