from sqlalchemy import Integer, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime

from deadswitch.models.base import Base

class DeliveredMessage(Base):
    __tablename__ = "delivered_messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    message_id: Mapped[int] = mapped_column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), index=True)
    condition_id: Mapped[int] = mapped_column(Integer, ForeignKey("message_conditions.id", ondelete="CASCADE"), index=True)
    entry_id: Mapped[int] = mapped_column(Integer, ForeignKey("reminder_schedule.id", ondelete="CASCADE"))
    delivered_at: Mapped[datetime] = mapped_column(DateTime)
