"""
Retention policy engine.

Maps a snapshot list and a keep-N-per-period policy to the set of snapshot
ids that survive a prune pass. Pure: no I/O, no clock, no side effects.

For each period kind (day, ISO week, month, year) snapshots are grouped by
the calendar period of their creation time; the newest snapshot of a group
represents it, and the representatives of the newest N groups are kept.
The union over all kinds is kept, plus the newest snapshot unconditionally.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from vaultkeeper.errors import ConfigurationError
from vaultkeeper.repository.restic import Snapshot


@dataclass(frozen=True)
class RetentionPolicy:
    """Number of most recent periods to keep, per period kind."""

    keep_daily: int = 7
    keep_weekly: int = 4
    keep_monthly: int = 6
    keep_yearly: int = 3

    def validate(self) -> None:
        for name in ("keep_daily", "keep_weekly", "keep_monthly", "keep_yearly"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")

    @classmethod
    def from_config(cls, config) -> RetentionPolicy:
        """Build a policy from a RetentionConfig."""
        return cls(
            keep_daily=config.keep_daily,
            keep_weekly=config.keep_weekly,
            keep_monthly=config.keep_monthly,
            keep_yearly=config.keep_yearly,
        )


def _day(ts: datetime) -> Hashable:
    return ts.date()


def _week(ts: datetime) -> Hashable:
    iso = ts.isocalendar()
    return (iso[0], iso[1])


def _month(ts: datetime) -> Hashable:
    return (ts.year, ts.month)


def _year(ts: datetime) -> Hashable:
    return ts.year


PERIODS: tuple[tuple[str, Callable[[datetime], Hashable]], ...] = (
    ("keep_daily", _day),
    ("keep_weekly", _week),
    ("keep_monthly", _month),
    ("keep_yearly", _year),
)


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC)


def decide_prune(snapshots: Iterable[Snapshot], policy: RetentionPolicy) -> set[str]:
    """
    Decide which snapshots to keep.

    Args:
        snapshots: Snapshots in any order.
        policy: Retention counts.

    Returns:
        Ids of the snapshots to keep. Everything else may be pruned.
    """
    policy.validate()

    # Newest first; id breaks ties so the result is deterministic
    ordered = sorted(snapshots, key=lambda s: (_utc(s.time), s.id), reverse=True)
    if not ordered:
        return set()

    keep: set[str] = {ordered[0].id}

    for attr, bucket_of in PERIODS:
        limit = getattr(policy, attr)
        if limit <= 0:
            continue
        seen: set[Hashable] = set()
        for snapshot in ordered:
            bucket = bucket_of(_utc(snapshot.time))
            if bucket in seen:
                continue
            seen.add(bucket)
            keep.add(snapshot.id)
            if len(seen) >= limit:
                break

    return keep
