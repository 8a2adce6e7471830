"""
Retention classifier.

Time-Machine style decay: hourly snapshots for the last day, daily for
the last month, weekly after that. Classification is a pure function of
the snapshot timestamps and a reference time.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .identifiers import parse_snapshot_id

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
WEEK_MS = 7 * DAY_MS


@dataclass
class RetentionPolicy:
    """Window sizes for each tier."""

    hourly_hours: int = 24
    daily_days: int = 30
    weekly_weeks: int = 520

    def validate(self) -> None:
        for name in ('hourly_hours', 'daily_days', 'weekly_weeks'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer, got {value!r}")


DEFAULT_RETENTION = RetentionPolicy()


def _to_ms(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(ts.timestamp() * 1000)


def classify(
    snapshots: Iterable[Tuple[str, datetime]],
    now: Optional[datetime] = None,
    policy: RetentionPolicy = DEFAULT_RETENTION,
) -> Set[str]:
    """
    Return the ids to keep.

    snapshots: (id, timestamp) pairs in any order.

    Snapshots are visited oldest to newest and the first one seen in each
    hour/day/week bucket represents it. Snapshots older than the weekly
    window are dropped. The most recent snapshot is always kept.
    """
    ordered = sorted(snapshots, key=lambda item: (_to_ms(item[1]), item[0]))
    if not ordered:
        return set()

    now_ms = _to_ms(now or datetime.now(timezone.utc))
    hourly_ms = policy.hourly_hours * HOUR_MS
    daily_ms = policy.daily_days * DAY_MS
    weekly_ms = policy.weekly_weeks * WEEK_MS

    keep = set()
    seen: Dict[str, Set[int]] = {'hour': set(), 'day': set(), 'week': set()}

    for snapshot_id, ts in ordered:
        ts_ms = _to_ms(ts)
        age = now_ms - ts_ms
        if age <= hourly_ms:
            tier, bucket = 'hour', ts_ms // HOUR_MS
        elif age <= daily_ms:
            tier, bucket = 'day', ts_ms // DAY_MS
        elif age <= weekly_ms:
            tier, bucket = 'week', ts_ms // WEEK_MS
        else:
            continue
        if bucket not in seen[tier]:
            seen[tier].add(bucket)
            keep.add(snapshot_id)

    keep.add(ordered[-1][0])
    return keep


def plan_prune(
    snapshot_ids: Iterable[str],
    now: Optional[datetime] = None,
    policy: RetentionPolicy = DEFAULT_RETENTION,
) -> Tuple[List[str], List[str]]:
    """
    Split snapshot ids into (keep, delete), both sorted.

    Ids that do not parse as timestamps are always kept.
    """
    timed = []
    untimed = []
    for snapshot_id in snapshot_ids:
        ts = parse_snapshot_id(snapshot_id)
        if ts is None:
            untimed.append(snapshot_id)
        else:
            timed.append((snapshot_id, ts))

    keep_set = classify(timed, now, policy) | set(untimed)
    keep = sorted(keep_set)
    delete = sorted(snapshot_id for snapshot_id, _ in timed if snapshot_id not in keep_set)
    return keep, delete
