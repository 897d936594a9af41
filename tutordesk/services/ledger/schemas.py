"""API request/response schemas for ledger endpoints."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class CancelBehavior(str, Enum):
    """What un-marking a paid lesson does to the balance."""

    REFUND = "REFUND"
    WRITE_OFF = "WRITE_OFF"


class AccountView(BaseModel):
    teacher_id: int
    student_id: int
    custom_name: str | None = None
    balance_lessons: int
    price_per_lesson: int
    lesson_reminders_enabled: bool
    payment_reminders_enabled: bool
    is_archived: bool

    @classmethod
    def from_row(cls, account) -> "AccountView":
        return cls(
            teacher_id=account.teacher_id,
            student_id=account.student_id,
            custom_name=account.custom_name,
            balance_lessons=account.balance_lessons,
            price_per_lesson=account.price_per_lesson,
            lesson_reminders_enabled=account.lesson_reminders_enabled,
            payment_reminders_enabled=account.payment_reminders_enabled,
            is_archived=account.is_archived,
        )


class EventView(BaseModel):
    id: str
    student_id: int
    lesson_id: int | None = None
    type: str
    lessons_delta: int
    price_snapshot: int | None = None
    money_amount: int | None = None
    reason: str | None = None
    comment: str | None = None
    created_at: datetime


class AdjustRequest(BaseModel):
    """Manual balance change entered by the teacher."""

    delta: int
    type: str | None = None
    comment: str | None = Field(default=None, max_length=500)
    money_amount: int | None = None
    created_at: datetime | None = None


class TogglePaidRequest(BaseModel):
    student_id: int
    consume_credit: bool | None = None
    cancel_behavior: CancelBehavior | None = None


class PaymentToggleResult(BaseModel):
    lesson_id: int
    student_id: int
    is_paid: bool
    lesson_is_paid: bool
    balance_lessons: int
    event_type: str
    lessons_delta: int


class SettlementResult(BaseModel):
    """Outcome of completing or canceling a lesson."""

    lesson_id: int
    status: str
    charged_student_ids: list[int] = Field(default_factory=list)
    refunded_student_ids: list[int] = Field(default_factory=list)


class DebtItem(BaseModel):
    lesson_id: int
    student_id: int
    student_name: str | None = None
    start_at: datetime
    duration_minutes: int
    status: str
    amount: int


class DebtSummary(BaseModel):
    items: list[DebtItem] = Field(default_factory=list)
    count: int = 0
    total: int = 0


class BalanceReplay(BaseModel):
    teacher_id: int
    student_id: int
    balance_lessons: int
    replayed_balance: int
    events: int

    @property
    def consistent(self) -> bool:
        return self.balance_lessons == self.replayed_balance
