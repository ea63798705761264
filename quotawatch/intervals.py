"""Poll interval policy: urgency grows with utilization.

Adaptive mode maps the worst-case utilization of an account to a delay;
fixed mode always uses the configured interval.  No result is ever below
the configured minimum interval.
"""

from typing import Optional, Sequence

from quotawatch.config import ADAPTIVE_BUCKETS, ADAPTIVE_IDLE_INTERVAL, SchedulerConfig
from quotawatch.models import UsageSnapshot


def interval_for(
    utilization: float,
    buckets: Sequence[tuple[float, int]] = ADAPTIVE_BUCKETS,
    idle_interval: int = ADAPTIVE_IDLE_INTERVAL,
) -> int:
    """Map a utilization percentage to a poll interval in seconds.

    >>> [interval_for(u) for u in (95, 80, 60, 10)]
    [60, 180, 300, 600]
    >>> interval_for(90), interval_for(75), interval_for(50)
    (60, 180, 300)
    """
    for floor, seconds in sorted(buckets, key=lambda b: b[0], reverse=True):
        if utilization >= floor:
            return seconds
    return idle_interval


def worst_utilization(snapshots: Sequence[UsageSnapshot]) -> Optional[float]:
    """Maximum utilization across every limit of every snapshot.

    >>> worst_utilization([]) is None
    True
    """
    values = [s.max_utilization() for s in snapshots if s.limits]
    return max(values) if values else None


def next_interval(snapshot: Optional[UsageSnapshot], config: SchedulerConfig) -> int:
    """Interval to wait after a fetch, given the latest snapshot (if any).

    Adaptive mode without a snapshot yet falls back to the fixed interval.

    >>> next_interval(None, SchedulerConfig())
    300
    """
    if config.mode == "fixed" or snapshot is None or not snapshot.limits:
        seconds = config.fixed_interval_seconds
    else:
        seconds = interval_for(
            snapshot.max_utilization(),
            buckets=config.adaptive_buckets,
            idle_interval=config.adaptive_idle_interval,
        )
    return max(seconds, config.min_interval_seconds)


def backoff_interval(base: int, rate_limit_streak: int, config: SchedulerConfig) -> int:
    """Lengthen *base* after provider throttling: doubled per streak, capped.

    >>> cfg = SchedulerConfig()
    >>> [backoff_interval(300, n, cfg) for n in (0, 1, 2, 5)]
    [300, 600, 1200, 3600]
    """
    if rate_limit_streak <= 0:
        return base
    return min(base * (2 ** rate_limit_streak), max(base, config.max_backoff_seconds))
