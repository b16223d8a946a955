from pydantic import BaseModel, Field
from datetime import datetime
from typing import Literal, Optional

ConditionType = Literal["no_check_in", "regular_check_in", "scheduled", "recurring", "panic_trigger", "inactivity_to_date"]


class RecurringPattern(BaseModel):
    type: Literal["daily", "weekly", "monthly", "yearly"]
    interval: int = Field(1, ge=1)
    day: Optional[int] = Field(None, description="0-6 (Sunday first) for weekly, 1-31 for monthly/yearly")
    month: Optional[int] = Field(None, ge=1, le=12)
    start_time: Optional[str] = Field(None, description="HH:MM (UTC)")


class PanicConfig(BaseModel):
    keep_armed: bool = False
    cancel_window_seconds: int = Field(0, ge=0)
    trigger_keyword: Optional[str] = None


class ConditionFields(BaseModel):
    hours_threshold: Optional[int] = Field(None, ge=0)
    minutes_threshold: Optional[int] = Field(None, ge=0)
    trigger_date: Optional[datetime] = None
    recurring_pattern: Optional[RecurringPattern] = None
    panic_config: Optional[PanicConfig] = None
    reminder_minutes: Optional[list[int]] = Field(None, description="Minutes before the deadline")
    recipients: Optional[list[str]] = Field(None, description="User ids that receive the final delivery")

    def config(self) -> dict:
        """Only the fields the client actually sent, nested models as plain dicts."""
        return self.model_dump(exclude_unset=True)


class ConditionCreate(ConditionFields):
    message_id: int
    condition_type: ConditionType
    arm: bool = False

    def config(self) -> dict:
        data = super().config()
        data.pop("message_id", None)
        data.pop("arm", None)
        data["condition_type"] = self.condition_type
        return data


class ConditionUpdate(ConditionFields):
    condition_type: Optional[ConditionType] = None


class ConditionOut(BaseModel):
    id: int
    message_id: int
    condition_type: str
    active: bool
    hours_threshold: int
    minutes_threshold: int
    trigger_date: Optional[datetime]
    recurring_pattern: Optional[dict]
    panic_config: Optional[dict]
    last_checked: Optional[datetime]
    reminder_minutes: list[int]
    recipients: list[str]
    deadline: Optional[datetime]
    next_reminder_at: Optional[datetime]
    schedule_version: int

    class Config:
        from_attributes = True


class ScheduleEntryOut(BaseModel):
    id: int
    condition_id: int
    message_id: int
    scheduled_at: datetime
    reminder_type: str
    priority: str
    status: str
    retry_count: int
    next_attempt_at: Optional[datetime]
    last_attempt_at: Optional[datetime]
    last_error: Optional[str]
    sent_at: Optional[datetime]

    class Config:
        from_attributes = True


class ArmOut(BaseModel):
    id: int
    active: bool
    deadline: Optional[datetime]


class DisarmOut(BaseModel):
    id: int
    active: bool
    cancelled: int


class PanicBody(BaseModel):
    message_id: int


class PanicOut(BaseModel):
    message_id: int
    delivery_at: datetime


class CheckInBody(BaseModel):
    method: str = Field("app", max_length=32)
    keyword: Optional[str] = Field(None, max_length=64, description="Panic keyword sent through the check-in channel")


class CheckInOut(BaseModel):
    timestamp: datetime
    method: str
    conditions_updated: int
    panic_triggered: int = 0

    class Config:
        from_attributes = True


class NextDeadlineOut(BaseModel):
    deadline: Optional[datetime]


class MessageCreate(BaseModel):
    title: str = Field("", max_length=255)


class MessageOut(BaseModel):
    id: int
    user_id: str
    title: str
    created_at: datetime

    class Config:
        from_attributes = True
