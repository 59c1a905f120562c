"""Retry schedule and jitter for webhook delivery attempts.

Default schedule (delay before attempt N, milliseconds):
  Attempt 1:       0   (initial)
  Attempt 2:   2_000
  Attempt 3:  10_000
  Attempt 4:  60_000
  Attempt 5: 300_000

The first retries come quickly to absorb transient blips; later ones back off
hard so a broken endpoint is not hammered. Uniform jitter (±10% by default)
spreads out retries of many subscriptions failing at the same moment.
"""

import random
from typing import Sequence

DEFAULT_RETRY_SCHEDULE_MS: tuple[int, ...] = (0, 2_000, 10_000, 60_000, 300_000)
DEFAULT_JITTER_RATIO = 0.1


def base_delay_ms(attempt_number: int, schedule: Sequence[int] = DEFAULT_RETRY_SCHEDULE_MS) -> int:
    """Delay before `attempt_number` (1-based), without jitter.

    Attempts past the end of the schedule reuse its last entry.

    >>> base_delay_ms(2)
    2000
    """

    if attempt_number < 1 or not schedule:
        return 0
    index = min(attempt_number, len(schedule)) - 1
    return int(schedule[index])


def apply_jitter(delay_ms: int, ratio: float = DEFAULT_JITTER_RATIO, rng: random.Random | None = None) -> int:
    """Spread `delay_ms` uniformly within ±`ratio`, never below zero."""

    source = rng or random
    jitter = delay_ms * ratio * source.uniform(-1.0, 1.0)
    return max(0, int(round(delay_ms + jitter)))


def next_retry_delay_ms(
    failed_attempt: int,
    schedule: Sequence[int] = DEFAULT_RETRY_SCHEDULE_MS,
    ratio: float = DEFAULT_JITTER_RATIO,
    rng: random.Random | None = None,
) -> int:
    """Jittered wait after `failed_attempt` fails, before the next one runs."""

    return apply_jitter(base_delay_ms(failed_attempt + 1, schedule), ratio, rng)
