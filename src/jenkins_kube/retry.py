"""Deadline helpers for tenacity polling loops."""

from tenacity import RetryCallState, stop_after_delay
from tenacity.stop import stop_base
from tenacity.wait import wait_base


def _spent(retry_state: RetryCallState) -> float:
    return max(retry_state.seconds_since_start or 0.0, retry_state.idle_for)


class stop_after_idle(stop_base):  # noqa: N801 - tenacity naming
    """Stop once the time spent sleeping between attempts reaches a limit."""

    def __init__(self, max_idle: float) -> None:
        self.max_idle = max_idle

    def __call__(self, retry_state: RetryCallState) -> bool:
        return retry_state.idle_for >= self.max_idle


class wait_until_deadline(wait_base):  # noqa: N801 - tenacity naming
    """Wrap a wait strategy so no sleep runs past the deadline.

    Args:
        wait: Strategy producing the unclipped sleep.
        seconds: Deadline measured from the first attempt.

    """

    def __init__(self, wait: wait_base, seconds: float) -> None:
        self.wait = wait
        self.seconds = seconds

    def __call__(self, retry_state: RetryCallState) -> float:
        return max(0.0, min(self.wait(retry_state), self.seconds - _spent(retry_state)))


def deadline(seconds: float) -> stop_base:
    """Stop on whichever comes first: wall-clock time or accumulated backoff."""
    return stop_after_delay(seconds) | stop_after_idle(seconds)
