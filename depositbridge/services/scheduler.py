from __future__ import annotations

from datetime import datetime, timedelta


def backoff_minutes(
    attempt_count: int,
    *,
    base_interval_minutes: float,
    multiplier: float,
    cap_minutes: float,
) -> float:
    # The first deferral (attempt 1) waits exactly the base interval.
    exponent = max(0, int(attempt_count) - 1)
    delay = float(base_interval_minutes) * (float(multiplier) ** exponent)
    return min(delay, float(cap_minutes))


def next_attempt_at(
    attempt_count: int,
    *,
    base_interval_minutes: float,
    multiplier: float,
    cap_minutes: float,
    now: datetime,
) -> datetime:
    # Absolute due time for the pending row; the tick compares it with its own clock.
    delay = backoff_minutes(
        attempt_count,
        base_interval_minutes=base_interval_minutes,
        multiplier=multiplier,
        cap_minutes=cap_minutes,
    )
    return now + timedelta(minutes=delay)
