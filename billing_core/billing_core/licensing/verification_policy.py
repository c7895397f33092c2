"""Rejection-rate blocking rules for student verification.

A user whose submissions are rejected ``MAX_REJECTIONS_PER_MONTH`` times
within one calendar month is blocked for ``VERIFICATION_BLOCK_DURATION``
from the rejection that reached the limit.

The block is recorded on the crossing rejection row, and it is also derived
from rejection history alone by :func:`derive_block_status`.  Both paths use
:func:`block_until_for_rejection`, so the stored and derived values agree.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from billing_core.licensing.models import MAX_REJECTIONS_PER_MONTH, VERIFICATION_BLOCK_DURATION


def month_start(moment: datetime) -> datetime:
    """Return midnight UTC on the first day of *moment*'s calendar month."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    moment = moment.astimezone(UTC)
    return moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def history_window_start(now: datetime) -> datetime:
    """Earliest review time that can still contribute to an unexpired block."""
    return month_start(now - VERIFICATION_BLOCK_DURATION)


def block_until_for_rejection(count_in_month: int, reviewed_at: datetime) -> datetime | None:
    """Return the block expiry set by a rejection, or ``None``.

    Parameters
    ----------
    count_in_month:
        Number of the user's rejections in the rejection's calendar month,
        including this one.
    reviewed_at:
        When the rejection was recorded.
    """
    if count_in_month == MAX_REJECTIONS_PER_MONTH:
        return reviewed_at + VERIFICATION_BLOCK_DURATION
    return None


@dataclass(frozen=True)
class BlockStatus:
    is_blocked: bool
    blocked_until: datetime | None
    rejections_this_month: int
    max_rejections: int = MAX_REJECTIONS_PER_MONTH


def derive_block_status(rejection_times: Iterable[datetime], now: datetime) -> BlockStatus:
    """Compute block state from the user's rejection timestamps.

    Rejections are grouped by calendar month; each month that reached the
    limit yields a block ending ``VERIFICATION_BLOCK_DURATION`` after its
    limit-reaching rejection.  The latest unexpired block wins.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)

    by_month: dict[datetime, list[datetime]] = defaultdict(list)
    for ts in rejection_times:
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=UTC)
        by_month[month_start(ts)].append(ts)

    blocked_until: datetime | None = None
    for times in by_month.values():
        times.sort()
        for index, ts in enumerate(times, start=1):
            until = block_until_for_rejection(index, ts)
            if until is not None and until > now and (blocked_until is None or until > blocked_until):
                blocked_until = until

    return BlockStatus(
        is_blocked=blocked_until is not None,
        blocked_until=blocked_until,
        rejections_this_month=len(by_month.get(month_start(now), [])),
    )
