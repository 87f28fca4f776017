"""
Time handling for the certificate function.

Every wait in the function goes through a Clock so tests can drive the
polling loops without real delays, and through a Deadline so no loop runs past
the Lambda timeout minus the reserve kept for challenge cleanup.
"""
import logging
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Clock:
    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)


class Deadline:
    """Remaining-time budget shared by every loop of one invocation."""

    def __init__(self, clock: Clock, seconds: float, reserve: float = 0.0):
        self.clock = clock
        self.reserve = reserve
        self._expires = clock.monotonic() + seconds

    @classmethod
    def from_context(cls, clock: Clock, context, reserve: float = 60.0, default: float = 900.0):
        if context is not None and hasattr(context, "get_remaining_time_in_millis"):
            seconds = context.get_remaining_time_in_millis() / 1000.0
        else:
            seconds = default
        return cls(clock, seconds, reserve)

    def remaining(self) -> float:
        """Seconds left before the cleanup reserve starts."""
        return max(0.0, self._expires - self.reserve - self.clock.monotonic())

    def budget(self, timeout: float) -> float:
        return min(timeout, self.remaining())

    def expired(self) -> bool:
        return self.remaining() <= 0


class PollState(str, Enum):
    PENDING = "PENDING"
    READY = "READY"
    TIMED_OUT = "TIMED_OUT"


class Poller:
    """
    Polls ``check`` until it reports ready or the timeout elapses.

    The check returns True when the target is ready and False while it is
    still pending; anything it raises propagates unchanged. The delay between
    checks starts at ``interval`` and grows by ``backoff`` up to
    ``max_interval``.
    """

    def __init__(
        self,
        clock: Clock,
        timeout: float,
        interval: float = 2.0,
        backoff: float = 2.0,
        max_interval: float = 30.0,
        max_attempts: Optional[int] = None,
    ):
        self.clock = clock
        self.timeout = timeout
        self.interval = interval
        self.backoff = backoff
        self.max_interval = max_interval
        self.max_attempts = max_attempts
        self.state = PollState.PENDING
        self.attempts = 0

    def run(self, check: Callable[[], bool]) -> PollState:
        started = self.clock.monotonic()
        delay = self.interval
        while self.state is PollState.PENDING:
            self.attempts += 1
            if check():
                self.state = PollState.READY
                break
            elapsed = self.clock.monotonic() - started
            out_of_attempts = self.max_attempts is not None and self.attempts >= self.max_attempts
            if out_of_attempts or elapsed + delay > self.timeout:
                self.state = PollState.TIMED_OUT
                break
            self.clock.sleep(delay)
            delay = min(delay * self.backoff, self.max_interval)
        return self.state


def retry_transient(
    call: Callable,
    is_transient: Callable[[Exception], bool],
    clock: Clock,
    deadline: Optional[Deadline] = None,
    attempts: int = 4,
    delay: float = 1.0,
    backoff: float = 2.0,
):
    """
    Run ``call`` and retry it while it raises transient errors.

    The last transient error is re-raised once ``attempts`` are used or the
    deadline leaves no room for another delay.
    """
    for attempt in range(1, attempts + 1):
        try:
            return call()
        except Exception as e:
            if not is_transient(e):
                raise
            no_time_left = deadline is not None and deadline.remaining() < delay
            if attempt == attempts or no_time_left:
                raise
            logger.warning("Transient error (attempt %s/%s), retrying in %.1fs: %s", attempt, attempts, delay, e)
            clock.sleep(delay)
            delay *= backoff
