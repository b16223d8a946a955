from sqlalchemy import Integer, String, DateTime, ForeignKey, Boolean, JSON
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Any

from deadswitch.core.clock import utcnow
from deadswitch.models.base import Base

NO_CHECK_IN = "no_check_in"
REGULAR_CHECK_IN = "regular_check_in"
SCHEDULED = "scheduled"
RECURRING = "recurring"
PANIC_TRIGGER = "panic_trigger"
INACTIVITY_TO_DATE = "inactivity_to_date"

CHECK_IN_TYPES = frozenset({NO_CHECK_IN, REGULAR_CHECK_IN, INACTIVITY_TO_DATE})
DATE_TYPES = frozenset({SCHEDULED, RECURRING})
CONDITION_TYPES = CHECK_IN_TYPES | DATE_TYPES | {PANIC_TRIGGER}

class Condition(Base):
    __tablename__ = "message_conditions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    message_id: Mapped[int] = mapped_column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), unique=True, index=True)
    condition_type: Mapped[str] = mapped_column(String(32), default=NO_CHECK_IN)
    hours_threshold: Mapped[int] = mapped_column(Integer, default=0)
    minutes_threshold: Mapped[int] = mapped_column(Integer, default=0)
    trigger_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    # {"type": daily|weekly|monthly|yearly, "interval": n, "day"?, "month"?, "start_time"?: "HH:MM"}
    recurring_pattern: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    # {"keep_armed": bool, "cancel_window_seconds": int, "trigger_keyword"?: str}
    panic_config: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    panic_triggered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    # user ids that receive the final delivery; the owner only gets reminders
    recipients: Mapped[list[str]] = mapped_column(JSON, default=list)
    last_checked: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=False)
    # minutes before the deadline
    reminder_minutes: Mapped[list[int]] = mapped_column(JSON, default=list)
    schedule_version: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
