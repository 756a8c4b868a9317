from __future__ import annotations

from datetime import datetime, timedelta, timezone


# Reactivation windows are anchored to a fixed civil offset with no DST.
REACTIVATION_TZ = timezone(timedelta(hours=8))
REACTIVATION_TZ_LABEL = "UTC+08:00"

WINDOW = timedelta(hours=24)


def latest_reactivation_boundary(now: datetime, hour: int, minute: int) -> datetime:
    """Return the most recent boundary instant at or before ``now``, in UTC.

    A naive ``now`` is taken to be UTC, like every timestamp stored by keygate.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local_now = now.astimezone(REACTIVATION_TZ)
    boundary = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if boundary > local_now:
        boundary -= WINDOW
    return boundary.astimezone(timezone.utc)


def next_reactivation_at(now: datetime, hour: int, minute: int) -> datetime:
    return latest_reactivation_boundary(now, hour, minute) + WINDOW
