"""
Snapshot identifiers.

An id is an ISO-8601 UTC timestamp with colons replaced by hyphens, e.g.
2026-02-03T17-18-00.000Z, so ids sort in time order as plain strings.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

_ID_RE = re.compile(
    r'^(\d{4})-(\d{2})-(\d{2})T(\d{2})-(\d{2})-(\d{2})(?:\.(\d{3}))?Z\Z'
)


def make_snapshot_id(now: Optional[datetime] = None) -> str:
    """Build the id for a snapshot taken at now (default: current UTC time)."""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return now.strftime('%Y-%m-%dT%H-%M-%S.') + f"{now.microsecond // 1000:03d}Z"


def parse_snapshot_id(snapshot_id: str) -> Optional[datetime]:
    """
    Recover the UTC timestamp encoded in a snapshot id.

    Accepts ids with or without milliseconds; returns None if the id is
    not timestamp-shaped.
    """
    match = _ID_RE.match(snapshot_id)
    if not match:
        return None
    year, month, day, hour, minute, second, millis = match.groups()
    try:
        return datetime(
            int(year), int(month), int(day), int(hour), int(minute), int(second),
            int(millis or 0) * 1000, tzinfo=timezone.utc,
        )
    except ValueError:
        return None


def next_free_snapshot_id(exists, now: Optional[datetime] = None) -> str:
    """
    Return a fresh id, stepping forward a millisecond at a time while
    exists(id) reports a collision.
    """
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    now = now.replace(microsecond=(now.microsecond // 1000) * 1000)
    snapshot_id = make_snapshot_id(now)
    while exists(snapshot_id):
        now += timedelta(milliseconds=1)
        snapshot_id = make_snapshot_id(now)
    return snapshot_id
