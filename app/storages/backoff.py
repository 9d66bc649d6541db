"""Jittered exponential backoff.

All durations are float seconds. The random source is a zero-argument callable
returning a float in [0, 1), so tests can pin it.
"""

from __future__ import annotations

import random
from typing import Callable

RandomSource = Callable[[], float]


def nominal_delay(base_delay: float, attempt: int) -> float:
    """Return the un-jittered delay for a 0-based attempt: base * 2**attempt."""

    return base_delay * (2 ** attempt)


def jitter_delay(delay: float, rand: RandomSource = random.random) -> float:
    """Return an equal-jitter delay uniformly spread over [delay, 2 * delay).

    Args:
        delay: Deterministic floor.
        rand: Random source.

    Returns:
        float: Jittered delay, never below `delay`.
    """

    return delay + rand() * delay


def cap_delay(delay: float, max_delay: float) -> float:
    """Return the smaller of the two durations."""

    return min(delay, max_delay)


def sleep_interval(
    base_delay: float,
    attempt: int,
    max_delay: float,
    rand: RandomSource = random.random,
) -> float:
    """Compute how long to sleep after a failed attempt.

    The nominal delay is halved before jitter so the jittered range stays
    around the nominal value instead of doubling it.

    Args:
        base_delay: Delay for attempt 0.
        attempt: 0-based index of the attempt that just failed.
        max_delay: Ceiling for the returned interval.
        rand: Random source.

    Returns:
        float: Seconds to wait before the next attempt.
    """

    return cap_delay(jitter_delay(nominal_delay(base_delay, attempt) / 2, rand), max_delay)
