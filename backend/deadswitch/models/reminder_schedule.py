from sqlalchemy import Integer, String, DateTime, ForeignKey, Index, Text, text
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from deadswitch.core.clock import utcnow
from deadswitch.models.base import Base

REMINDER = "reminder"
FINAL_DELIVERY = "final_delivery"

PRIORITY_NORMAL = "normal"
PRIORITY_CRITICAL = "critical"

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

class ReminderScheduleEntry(Base):
    __tablename__ = "reminder_schedule"
    __table_args__ = (
        # at most one pending row per planned notification, even under racing reconciliations
        Index(
            "uq_reminder_schedule_pending",
            "condition_id", "reminder_type", "scheduled_at",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_reminder_schedule_due", "status", "scheduled_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    condition_id: Mapped[int] = mapped_column(Integer, ForeignKey("message_conditions.id", ondelete="CASCADE"), index=True)
    message_id: Mapped[int] = mapped_column(Integer, index=True)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime)  # deadline - offset (UTC), never moved
    reminder_type: Mapped[str] = mapped_column(String(16), default=REMINDER)  # reminder|final_delivery
    priority: Mapped[str] = mapped_column(String(16), default=PRIORITY_NORMAL)  # normal|critical
    status: Mapped[str] = mapped_column(String(16), default=STATUS_PENDING)  # pending|sent|failed|cancelled
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    # backoff after a failed attempt; dispatch waits for max(scheduled_at, next_attempt_at)
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def due_at(self) -> datetime:
        if self.next_attempt_at and self.next_attempt_at > self.scheduled_at:
            return self.next_attempt_at
        return self.scheduled_at
