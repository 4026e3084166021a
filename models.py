from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from money import money, money_sum


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


MONEY = Numeric(12, 2)


def _values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class EventFrequency(str, Enum):
    one_time = "one-time"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    quarterly = "quarterly"
    annual = "annual"


class IncomeStatus(str, Enum):
    scheduled = "scheduled"
    received = "received"
    cancelled = "cancelled"


class PaymentType(str, Enum):
    once = "once"
    recurring = "recurring"
    variable = "variable"


class PaymentStatus(str, Enum):
    scheduled = "scheduled"
    paid = "paid"
    overdue = "overdue"
    cancelled = "cancelled"


class AttributionType(str, Enum):
    manual = "manual"
    automatic = "automatic"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit = "credit"
    loan = "loan"


ASSET_ACCOUNT_TYPES = (AccountType.checking, AccountType.savings)
LIABILITY_ACCOUNT_TYPES = (AccountType.credit, AccountType.loan)


class ReportType(str, Enum):
    cash_flow = "cash_flow"
    spending_analysis = "spending_analysis"
    budget_performance = "budget_performance"
    income_analysis = "income_analysis"
    net_worth = "net_worth"
    savings_rate = "savings_rate"
    monthly_summary = "monthly_summary"
    annual_summary = "annual_summary"


class ReportFrequency(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    annual = "annual"


class ScheduleStatus(str, Enum):
    active = "active"
    paused = "paused"
    error = "error"
    completed = "completed"


class ExecutionStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class DeliveryStatus(str, Enum):
    pending = "pending"
    sent = "sent"
    failed = "failed"


EVENT_FREQUENCY_ENUM = SAEnum(
    EventFrequency, name="eventfrequency", values_callable=_values
)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class Family(Base, TimestampMixin):
    __tablename__ = "families"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    income_events: Mapped[list["IncomeEvent"]] = relationship(
        "IncomeEvent", back_populates="family", cascade="all, delete-orphan"
    )
    payments: Mapped[list["Payment"]] = relationship(
        "Payment", back_populates="family", cascade="all, delete-orphan"
    )
    scheduled_reports: Mapped[list["ScheduledReport"]] = relationship(
        "ScheduledReport", back_populates="family", cascade="all, delete-orphan"
    )
    budget_categories: Mapped[list["BudgetCategory"]] = relationship(
        "BudgetCategory", cascade="all, delete-orphan"
    )
    spending_categories: Mapped[list["SpendingCategory"]] = relationship(
        "SpendingCategory", cascade="all, delete-orphan"
    )
    bank_accounts: Mapped[list["BankAccount"]] = relationship(
        "BankAccount", cascade="all, delete-orphan"
    )


class IncomeEvent(Base, TimestampMixin):
    __tablename__ = "income_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(
        ForeignKey("families.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    source: Mapped[Optional[str]] = mapped_column(String(255))
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    actual_date: Mapped[Optional[date]] = mapped_column(Date)
    actual_amount: Mapped[Optional[Decimal]] = mapped_column(MONEY)
    frequency: Mapped[EventFrequency] = mapped_column(
        EVENT_FREQUENCY_ENUM, nullable=False, default=EventFrequency.one_time
    )
    # day of month the series was created on; spawned events keep it
    anchor_day: Mapped[Optional[int]] = mapped_column(Integer)
    next_occurrence: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[IncomeStatus] = mapped_column(
        SAEnum(IncomeStatus), nullable=False, default=IncomeStatus.scheduled
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    family: Mapped["Family"] = relationship("Family", back_populates="income_events")
    attributions: Mapped[list["Attribution"]] = relationship(
        "Attribution", back_populates="income_event", cascade="all, delete-orphan"
    )
    budget_allocations: Mapped[list["BudgetAllocation"]] = relationship(
        "BudgetAllocation", back_populates="income_event", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_income_amount_positive"),
        Index("ix_income_family_scheduled", "family_id", "scheduled_date"),
        Index("ix_income_family_actual", "family_id", "status", "actual_date"),
    )

    @property
    def attribution_cap(self) -> Decimal:
        if self.status == IncomeStatus.received and self.actual_amount is not None:
            return money(self.actual_amount)
        return money(self.amount)

    @property
    def attributed_amount(self) -> Decimal:
        return money_sum(a.amount for a in self.attributions)

    @property
    def remaining_amount(self) -> Decimal:
        return money(self.attribution_cap - self.attributed_amount)

    @property
    def received_amount(self) -> Decimal:
        return money(self.actual_amount if self.actual_amount is not None else self.amount)

    @property
    def recurrence_day(self) -> int:
        return self.anchor_day or self.scheduled_date.day


class Payment(Base, TimestampMixin):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(
        ForeignKey("families.id", ondelete="CASCADE"), nullable=False
    )
    payee: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_date: Mapped[Optional[date]] = mapped_column(Date)
    paid_amount: Mapped[Optional[Decimal]] = mapped_column(MONEY)
    payment_type: Mapped[PaymentType] = mapped_column(
        SAEnum(PaymentType), nullable=False, default=PaymentType.once
    )
    frequency: Mapped[EventFrequency] = mapped_column(
        EVENT_FREQUENCY_ENUM, nullable=False, default=EventFrequency.one_time
    )
    anchor_day: Mapped[Optional[int]] = mapped_column(Integer)
    next_due_date: Mapped[Optional[date]] = mapped_column(Date)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    spending_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("spending_categories.id", ondelete="SET NULL")
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    family: Mapped["Family"] = relationship("Family", back_populates="payments")
    spending_category: Mapped[Optional["SpendingCategory"]] = relationship(
        "SpendingCategory"
    )
    attributions: Mapped[list["Attribution"]] = relationship(
        "Attribution", back_populates="payment", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payment_amount_positive"),
        Index("ix_payment_family_due", "family_id", "due_date"),
    )

    def status_on(self, today: date) -> PaymentStatus:
        if self.cancelled_at is not None:
            return PaymentStatus.cancelled
        if self.paid_date is not None:
            return PaymentStatus.paid
        if self.due_date < today:
            return PaymentStatus.overdue
        return PaymentStatus.scheduled

    @property
    def status(self) -> PaymentStatus:
        from recurrence import local_today

        return self.status_on(local_today())

    @property
    def attributed_amount(self) -> Decimal:
        return money_sum(a.amount for a in self.attributions)

    @property
    def remaining_amount(self) -> Decimal:
        return money(money(self.amount) - self.attributed_amount)

    @property
    def recurrence_day(self) -> int:
        return self.anchor_day or self.due_date.day


class Attribution(Base):
    __tablename__ = "attributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    payment_id: Mapped[int] = mapped_column(
        ForeignKey("payments.id", ondelete="CASCADE"), nullable=False
    )
    income_event_id: Mapped[int] = mapped_column(
        ForeignKey("income_events.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    attribution_type: Mapped[AttributionType] = mapped_column(
        SAEnum(AttributionType), nullable=False, default=AttributionType.manual
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    payment: Mapped["Payment"] = relationship("Payment", back_populates="attributions")
    income_event: Mapped["IncomeEvent"] = relationship(
        "IncomeEvent", back_populates="attributions"
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_attribution_amount_positive"),
        Index("ix_attribution_payment", "payment_id"),
        Index("ix_attribution_income", "income_event_id"),
    )


class BudgetCategory(Base, TimestampMixin):
    __tablename__ = "budget_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(
        ForeignKey("families.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    target_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    spending_categories: Mapped[list["SpendingCategory"]] = relationship(
        "SpendingCategory", back_populates="budget_category"
    )

    __table_args__ = (
        UniqueConstraint("family_id", "name", name="uq_budget_category_family_name"),
        CheckConstraint(
            "target_percentage >= 0 AND target_percentage <= 100",
            name="ck_budget_category_percentage_range",
        ),
    )


class BudgetAllocation(Base):
    __tablename__ = "budget_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    income_event_id: Mapped[int] = mapped_column(
        ForeignKey("income_events.id", ondelete="CASCADE"), nullable=False
    )
    budget_category_id: Mapped[int] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    income_event: Mapped["IncomeEvent"] = relationship(
        "IncomeEvent", back_populates="budget_allocations"
    )
    budget_category: Mapped["BudgetCategory"] = relationship("BudgetCategory")

    __table_args__ = (
        UniqueConstraint(
            "income_event_id",
            "budget_category_id",
            name="uq_budget_allocation_income_category",
        ),
    )


class SpendingCategory(Base, TimestampMixin):
    __tablename__ = "spending_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(
        ForeignKey("families.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    budget_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("budget_categories.id", ondelete="SET NULL")
    )

    budget_category: Mapped[Optional["BudgetCategory"]] = relationship(
        "BudgetCategory", back_populates="spending_categories"
    )


class BankAccount(Base, TimestampMixin):
    __tablename__ = "bank_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(
        ForeignKey("families.id", ondelete="CASCADE"), nullable=False
    )
    institution_name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False
    )
    current_balance: Mapped[Decimal] = mapped_column(
        MONEY, nullable=False, default=Decimal("0")
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="bank_account", cascade="all, delete-orphan"
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    bank_account_id: Mapped[int] = mapped_column(
        ForeignKey("bank_accounts.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    merchant_name: Mapped[Optional[str]] = mapped_column(String(255))
    spending_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("spending_categories.id", ondelete="SET NULL")
    )

    bank_account: Mapped["BankAccount"] = relationship(
        "BankAccount", back_populates="transactions"
    )
    spending_category: Mapped[Optional["SpendingCategory"]] = relationship(
        "SpendingCategory"
    )

    __table_args__ = (
        Index("ix_transactions_account_date", "bank_account_id", "date"),
    )


class ScheduledReport(Base, TimestampMixin):
    __tablename__ = "scheduled_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(
        ForeignKey("families.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    report_type: Mapped[ReportType] = mapped_column(SAEnum(ReportType), nullable=False)
    frequency: Mapped[ReportFrequency] = mapped_column(
        SAEnum(ReportFrequency), nullable=False
    )
    recipients: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    parameters: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    delivery_day: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    delivery_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=9)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    status: Mapped[ScheduleStatus] = mapped_column(
        SAEnum(ScheduleStatus), nullable=False, default=ScheduleStatus.active
    )
    # naive UTC
    next_execution: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_execution: Mapped[Optional[datetime]] = mapped_column(DateTime)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    family: Mapped["Family"] = relationship(
        "Family", back_populates="scheduled_reports"
    )
    executions: Mapped[list["ScheduledReportExecution"]] = relationship(
        "ScheduledReportExecution",
        back_populates="scheduled_report",
        cascade="all, delete-orphan",
        order_by="ScheduledReportExecution.executed_at.desc()",
    )

    __table_args__ = (
        CheckConstraint(
            "delivery_hour >= 0 AND delivery_hour <= 23",
            name="ck_scheduled_report_hour_range",
        ),
        Index("ix_scheduled_reports_due", "status", "next_execution"),
        Index("ix_scheduled_reports_family", "family_id"),
    )


class ScheduledReportExecution(Base):
    __tablename__ = "scheduled_report_executions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    scheduled_report_id: Mapped[int] = mapped_column(
        ForeignKey("scheduled_reports.id", ondelete="CASCADE"), nullable=False
    )
    executed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    status: Mapped[ExecutionStatus] = mapped_column(
        SAEnum(ExecutionStatus), nullable=False, default=ExecutionStatus.pending
    )
    report_data: Mapped[Optional[dict]] = mapped_column(JSON)
    error: Mapped[Optional[str]] = mapped_column(Text)
    delivery_status: Mapped[DeliveryStatus] = mapped_column(
        SAEnum(DeliveryStatus), nullable=False, default=DeliveryStatus.pending
    )
    delivery_error: Mapped[Optional[str]] = mapped_column(Text)

    scheduled_report: Mapped["ScheduledReport"] = relationship(
        "ScheduledReport", back_populates="executions"
    )

    __table_args__ = (
        Index("ix_executions_report_executed", "scheduled_report_id", "executed_at"),
    )
