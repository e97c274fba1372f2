from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable, Iterator, TypeVar

from .config import PollSettings
from .errors import PollCancelledError, PollTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PollPolicy:
    timeout_seconds: float
    initial_interval_seconds: float = 1.0
    max_interval_seconds: float = 15.0
    backoff_factor: float = 2.0

    @classmethod
    def from_settings(cls, settings: PollSettings, *, timeout_seconds: float) -> PollPolicy:
        return cls(
            timeout_seconds=timeout_seconds,
            initial_interval_seconds=settings.initial_interval_seconds,
            max_interval_seconds=settings.max_interval_seconds,
            backoff_factor=settings.backoff_factor,
        )

    def intervals(self) -> Iterator[float]:
        interval = self.initial_interval_seconds
        while True:
            yield min(interval, self.max_interval_seconds)
            interval *= self.backoff_factor


def poll_until(
    fetch: Callable[[], T],
    done: Callable[[T], bool],
    *,
    policy: PollPolicy,
    description: str,
    stop_event: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
    describe: Callable[[T], str] | None = None,
) -> T:
    """Call ``fetch`` until ``done`` accepts its result and return that result.

    Exceptions raised by ``fetch`` or ``done`` propagate immediately. When the
    deadline passes first a :class:`PollTimeoutError` is raised. Setting
    ``stop_event`` aborts the wait with :class:`PollCancelledError`.
    """
    deadline = clock() + policy.timeout_seconds
    last_observed = "nothing observed"
    intervals = policy.intervals()
    while True:
        if stop_event is not None and stop_event.is_set():
            raise PollCancelledError(f"cancelled while waiting for {description}")

        value = fetch()
        if done(value):
            return value
        if describe is not None:
            last_observed = describe(value)

        remaining = deadline - clock()
        if remaining <= 0:
            raise PollTimeoutError(
                f"timed out after {policy.timeout_seconds:g}s waiting for {description} (last observed: {last_observed})"
            )

        delay = min(next(intervals), remaining)
        logger.debug("waiting %.1fs for %s (%s)", delay, description, last_observed)
        if stop_event is not None:
            if stop_event.wait(delay):
                raise PollCancelledError(f"cancelled while waiting for {description}")
        elif delay > 0:
            time.sleep(delay)
