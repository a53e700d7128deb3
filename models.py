from datetime import date as dt_date, datetime, timezone
from enum import Enum
from typing import Optional, List

from sqlalchemy import Column, DateTime, JSON, UniqueConstraint
from sqlalchemy.sql.sqltypes import Date
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field, Relationship


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UtcDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    SQLite keeps no offset, so values are written there as naive UTC and
    tagged UTC again on load. Naive input is taken to be UTC already.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None) if dialect.name == "sqlite" else value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Role(str, Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    EMPLOYEE = "EMPLOYEE"


class ExpenseStatus(str, Enum):
    DRAFT = "DRAFT"
    WAITING_APPROVAL = "WAITING_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self in (ExpenseStatus.APPROVED, ExpenseStatus.REJECTED)


class RuleType(str, Enum):
    SEQUENTIAL = "SEQUENTIAL"
    PARALLEL = "PARALLEL"
    PERCENTAGE = "PERCENTAGE"
    SPECIFIC = "SPECIFIC"
    HYBRID = "HYBRID"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Company(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    country: str
    currency: str

    users: List["User"] = Relationship(back_populates="company")
    expenses: List["Expense"] = Relationship(back_populates="company")


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    role: Role = Role.EMPLOYEE
    manager_id: Optional[int] = Field(default=None, foreign_key="user.id")
    company_id: int = Field(foreign_key="company.id", index=True)
    is_active: bool = True

    company: Optional[Company] = Relationship(back_populates="users")


class Expense(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: int = Field(foreign_key="company.id", index=True)
    submitter_id: int = Field(foreign_key="user.id", index=True)
    original_currency: str
    original_amount: float
    # frozen at submission, never rewritten
    converted_amount: Optional[float] = None
    conversion_rate: Optional[float] = None
    rate_timestamp: Optional[datetime] = Field(default=None, sa_type=UtcDateTime)
    category: str
    description: Optional[str] = None
    date: Optional[dt_date] = Field(default=None, sa_column=Column(Date))
    status: ExpenseStatus = Field(default=ExpenseStatus.DRAFT, index=True)
    submitted_at: Optional[datetime] = Field(default=None, sa_type=UtcDateTime)
    # copy of the governing rule as it was when the steps were built
    rule_id: Optional[int] = Field(default=None, foreign_key="approvalrule.id")
    rule_type: Optional[RuleType] = None
    threshold_percent: Optional[int] = None
    specific_approver_id: Optional[int] = None
    rejection_reason: Optional[str] = None

    steps: List["ApprovalStep"] = Relationship(back_populates="expense")
    company: Optional[Company] = Relationship(back_populates="expenses")


class ApprovalRule(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    company_id: int = Field(foreign_key="company.id", index=True)
    name: str
    type: RuleType
    # percentage threshold as integer 0-100, nullable
    threshold_percent: Optional[int] = None
    specific_approver_id: Optional[int] = Field(default=None, foreign_key="user.id")
    applies_to_category: Optional[str] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    priority: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow, sa_type=UtcDateTime)


class ApprovalStep(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("expense_id", "approver_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    expense_id: int = Field(foreign_key="expense.id", index=True)
    approver_id: int = Field(foreign_key="user.id", index=True)
    sequence_index: int = 0
    status: StepStatus = Field(default=StepStatus.PENDING)
    action_by: Optional[int] = Field(default=None, foreign_key="user.id")
    action_at: Optional[datetime] = Field(default=None, sa_type=UtcDateTime)
    comments: Optional[str] = None

    expense: Optional[Expense] = Relationship(back_populates="steps")


class ExchangeRate(SQLModel, table=True):
    """Append-only rate cache. Rows are inserted, never updated."""
    __table_args__ = (UniqueConstraint("base_currency", "target_currency", "timestamp"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    base_currency: str = Field(index=True)
    target_currency: str = Field(index=True)
    rate: float
    timestamp: datetime = Field(default_factory=utcnow, index=True, sa_type=UtcDateTime)


class AuditLog(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    entity: str
    entity_id: int = Field(index=True)
    action: str
    actor_id: Optional[int] = None
    # the expense an event belongs to, whatever its entity
    expense_id: Optional[int] = Field(default=None, index=True)
    snapshot: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UtcDateTime)
