from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from deadswitch.core.config import settings
from deadswitch.models.reminder_schedule import (
    FINAL_DELIVERY,
    PRIORITY_CRITICAL,
    PRIORITY_NORMAL,
    REMINDER,
)


@dataclass(frozen=True)
class PlannedEntry:
    """A notification that should exist for the current deadline (not yet persisted)."""
    scheduled_at: datetime
    reminder_type: str
    priority: str
    offset_minutes: int


def generate_schedule(
    deadline: datetime,
    reminder_minutes: Iterable[int],
    now: datetime | None,
    critical_offset_minutes: int | None = None,
) -> list[PlannedEntry]:
    """Plan reminder entries leading up to ``deadline`` plus the final delivery.

    Offsets are minutes before the deadline. Entries at or before ``now`` are
    skipped; pass ``now=None`` to get the complete plan regardless of time.
    The final delivery is always present, even if the deadline already passed.
    """
    if critical_offset_minutes is None:
        critical_offset_minutes = settings.critical_offset_minutes
    entries: list[PlannedEntry] = []
    seen: set[datetime] = {deadline}
    for minutes in sorted(set(reminder_minutes or []), reverse=True):
        scheduled_at = deadline - timedelta(minutes=minutes)
        if scheduled_at in seen:
            continue
        if now is not None and scheduled_at <= now:
            continue
        seen.add(scheduled_at)
        priority = PRIORITY_CRITICAL if minutes < critical_offset_minutes else PRIORITY_NORMAL
        entries.append(PlannedEntry(scheduled_at, REMINDER, priority, minutes))
    entries.append(PlannedEntry(deadline, FINAL_DELIVERY, PRIORITY_CRITICAL, 0))
    entries.sort(key=lambda e: e.scheduled_at)
    return entries


def next_reminder(entries: Iterable[PlannedEntry]) -> PlannedEntry | None:
    for entry in sorted(entries, key=lambda e: e.scheduled_at):
        if entry.reminder_type == REMINDER:
            return entry
    return None
