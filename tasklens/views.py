"""Derived task views.

Everything here is a pure function over a snapshot that is already owner
scoped: nothing touches the store or the cache, nothing mutates its input,
and "now" plus the local timezone are always passed in. Day buckets use the
caller's local calendar day, expressed as UTC bounds.
"""
from datetime import datetime, time, timedelta, tzinfo
from typing import Iterable, NamedTuple

from .models import TaskRead


class BucketCounts(NamedTuple):
    inbox: int
    due_today: int
    due_this_week: int
    overdue: int

    def as_dict(self) -> dict:
        return self._asdict()


def sort_for_display(tasks: Iterable[TaskRead]) -> tuple[TaskRead, ...]:
    """Order invariant: order ascending, then created_at, then id."""
    return tuple(sorted(tasks, key=lambda t: (t.order, t.created_at, t.id)))


def local_day_bounds(now: datetime, tz: tzinfo) -> tuple[datetime, datetime]:
    """Return (start, end) of the local calendar day containing ``now``.

    ``end`` is the last representable instant of the day, matching an
    inclusive ``<=`` comparison.
    """
    local_day = now.astimezone(tz).date()
    start = datetime.combine(local_day, time.min, tzinfo=tz)
    end = datetime.combine(local_day, time.max, tzinfo=tz)
    return start, end


def _week_end(now: datetime, tz: tzinfo) -> datetime:
    # end of the local day seven calendar days from today
    local_day = now.astimezone(tz).date()
    return datetime.combine(local_day + timedelta(days=7), time.max, tzinfo=tz)


def inbox(tasks: Iterable[TaskRead]) -> tuple[TaskRead, ...]:
    return tuple(t for t in tasks if t.due_date is None)


def due_today(tasks: Iterable[TaskRead], now: datetime, tz: tzinfo) -> tuple[TaskRead, ...]:
    start, end = local_day_bounds(now, tz)
    return tuple(t for t in tasks if t.due_date is not None and start <= t.due_date <= end)


def due_this_week(tasks: Iterable[TaskRead], now: datetime, tz: tzinfo) -> tuple[TaskRead, ...]:
    start, _ = local_day_bounds(now, tz)
    end = _week_end(now, tz)
    return tuple(t for t in tasks if t.due_date is not None and start <= t.due_date <= end)


def overdue(tasks: Iterable[TaskRead], now: datetime, tz: tzinfo) -> tuple[TaskRead, ...]:
    start, _ = local_day_bounds(now, tz)
    return tuple(t for t in tasks if t.due_date is not None and t.due_date < start and not t.is_complete)


def by_tag(tasks: Iterable[TaskRead], tag_name: str) -> tuple[TaskRead, ...]:
    # Matches on the tag *name*: renaming a tag changes which tasks match.
    return tuple(t for t in tasks if any(tag.name == tag_name for tag in t.tags))


def counts(tasks: Iterable[TaskRead], now: datetime, tz: tzinfo) -> BucketCounts:
    """Sizes of the four buckets over incomplete tasks.

    Buckets are counted independently; a task due today also counts
    towards this week.
    """
    open_tasks = tuple(t for t in tasks if not t.is_complete)
    return BucketCounts(
        inbox=len(inbox(open_tasks)),
        due_today=len(due_today(open_tasks, now, tz)),
        due_this_week=len(due_this_week(open_tasks, now, tz)),
        overdue=len(overdue(open_tasks, now, tz)),
    )
