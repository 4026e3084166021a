import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from models import (
    AttributionType,
    DeliveryStatus,
    EventFrequency,
    ExecutionStatus,
    IncomeStatus,
    PaymentStatus,
    PaymentType,
    ReportFrequency,
    ReportType,
    ScheduleStatus,
)
from periods import Granularity

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

BudgetStatus = Literal["under_budget", "on_track", "over_budget", "way_over_budget"]
SavingsTrend = Literal["increasing", "decreasing", "stable"]


def _validate_recipients(values: Optional[list[str]]) -> Optional[list[str]]:
    if values is None:
        return values
    cleaned = []
    for value in values:
        address = value.strip()
        if not EMAIL_RE.match(address):
            raise ValueError(f"Invalid email address: {value}")
        cleaned.append(address)
    return cleaned


class IncomeEventIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    source: Optional[str] = Field(default=None, max_length=255)
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    scheduled_date: date
    frequency: EventFrequency = EventFrequency.one_time
    notes: Optional[str] = None


class IncomeEventUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    source: Optional[str] = Field(default=None, max_length=255)
    amount: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    scheduled_date: Optional[date] = None
    frequency: Optional[EventFrequency] = None
    notes: Optional[str] = None


class MarkReceivedIn(BaseModel):
    actual_date: date
    actual_amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)


class PaymentIn(BaseModel):
    payee: str = Field(..., min_length=1, max_length=255)
    amount: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    due_date: date
    payment_type: PaymentType = PaymentType.once
    frequency: EventFrequency = EventFrequency.one_time
    spending_category_id: Optional[int] = None
    notes: Optional[str] = None

    @model_validator(mode="after")
    def validate_recurrence(self) -> "PaymentIn":
        if (
            self.payment_type == PaymentType.recurring
            and self.frequency == EventFrequency.one_time
        ):
            raise ValueError("Recurring payments need a repeating frequency")
        return self


class PaymentUpdate(BaseModel):
    payee: Optional[str] = Field(default=None, min_length=1, max_length=255)
    amount: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    due_date: Optional[date] = None
    spending_category_id: Optional[int] = None
    notes: Optional[str] = None


class MarkPaidIn(BaseModel):
    paid_date: date
    paid_amount: Optional[Decimal] = Field(
        default=None, ge=0, max_digits=12, decimal_places=2
    )


class AttributionIn(BaseModel):
    payment_id: int
    income_event_id: int
    amount: Decimal
    attribution_type: AttributionType = AttributionType.manual


class ProposedAttribution(BaseModel):
    income_event_id: int
    amount: Decimal


class CapacityCheckIn(BaseModel):
    attributions: list[ProposedAttribution] = Field(..., min_length=1)


class SplitPaymentIn(BaseModel):
    income_event_ids: list[int] = Field(..., min_length=1)
    weights: Optional[list[Decimal]] = None

    @model_validator(mode="after")
    def validate_weights(self) -> "SplitPaymentIn":
        if self.weights is not None and len(self.weights) != len(self.income_event_ids):
            raise ValueError("weights must match income_event_ids")
        if len(set(self.income_event_ids)) != len(self.income_event_ids):
            raise ValueError("income_event_ids must be unique")
        return self


class BudgetCategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    target_percentage: Decimal = Field(..., ge=0, le=100, decimal_places=2)
    sort_order: int = 0
    is_active: bool = True


class ReportParameters(BaseModel):
    """Report options stored on a schedule or sent with an on-demand request."""

    model_config = ConfigDict(extra="ignore")

    group_by: Granularity = Granularity.month
    include_projections: bool = False
    target_savings_rate: Decimal = Field(default=Decimal("20"), ge=0, le=100)
    month: Optional[date] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None


class ScheduledReportIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    report_type: ReportType
    frequency: ReportFrequency
    recipients: list[str] = Field(..., min_length=1)
    parameters: ReportParameters = Field(default_factory=ReportParameters)
    delivery_day: Optional[int] = None
    delivery_hour: Optional[int] = None
    timezone: Optional[str] = None
    start_date: Optional[datetime] = None

    @field_validator("recipients")
    @classmethod
    def validate_recipients(cls, v: list[str]) -> list[str]:
        return _validate_recipients(v)


class ScheduledReportUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    recipients: Optional[list[str]] = Field(default=None, min_length=1)
    parameters: Optional[ReportParameters] = None
    frequency: Optional[ReportFrequency] = None
    delivery_day: Optional[int] = None
    delivery_hour: Optional[int] = None
    timezone: Optional[str] = None

    @field_validator("recipients")
    @classmethod
    def validate_recipients(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        return _validate_recipients(v)


class IncomeEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    source: Optional[str]
    amount: Decimal
    scheduled_date: date
    actual_date: Optional[date]
    actual_amount: Optional[Decimal]
    frequency: EventFrequency
    next_occurrence: Optional[date]
    status: IncomeStatus
    attributed_amount: Decimal
    remaining_amount: Decimal


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payee: str
    amount: Decimal
    due_date: date
    paid_date: Optional[date]
    paid_amount: Optional[Decimal]
    payment_type: PaymentType
    frequency: EventFrequency
    next_due_date: Optional[date]
    status: PaymentStatus
    attributed_amount: Decimal
    remaining_amount: Decimal


class AttributionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    payment_id: int
    income_event_id: int
    amount: Decimal
    attribution_type: AttributionType
    created_at: datetime


class ScheduledReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    report_type: ReportType
    frequency: ReportFrequency
    recipients: list[str]
    parameters: dict[str, Any]
    delivery_day: int
    delivery_hour: int
    timezone: str
    status: ScheduleStatus
    next_execution: datetime
    last_execution: Optional[datetime]


class ExecutionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    scheduled_report_id: int
    executed_at: datetime
    completed_at: Optional[datetime]
    status: ExecutionStatus
    report_data: Optional[dict[str, Any]]
    error: Optional[str]
    delivery_status: DeliveryStatus
    delivery_error: Optional[str]


class SourceShare(BaseModel):
    source: str
    amount: Decimal
    percentage: Decimal


class CategoryShare(BaseModel):
    category: str
    amount: Decimal
    percentage: Decimal


class CashFlowPeriod(BaseModel):
    period: str
    period_start: date
    period_end: date
    total_income: Decimal
    total_expenses: Decimal
    net_cash_flow: Decimal
    income_breakdown: list[SourceShare]
    expense_breakdown: list[CategoryShare]
    projected_income: Optional[Decimal] = None
    projected_payments: Optional[Decimal] = None


class CashFlowReport(BaseModel):
    group_by: Granularity
    periods: list[CashFlowPeriod]


class SpendingCategoryBreakdown(BaseModel):
    category_id: Optional[int]
    category_name: str
    amount: Decimal
    percentage: Decimal
    transaction_count: int
    average_transaction: Decimal


class CategoryAmount(BaseModel):
    category_id: Optional[int]
    category_name: str
    amount: Decimal


class MonthlySpendingTrend(BaseModel):
    month: str
    amount: Decimal
    category_breakdown: list[CategoryAmount]


class MerchantTotal(BaseModel):
    merchant_name: str
    amount: Decimal
    transaction_count: int


class SpendingAnalysis(BaseModel):
    total_spent: Decimal
    category_breakdown: list[SpendingCategoryBreakdown]
    monthly_trends: list[MonthlySpendingTrend]
    top_merchants: list[MerchantTotal]


class OverallBudgetPerformance(BaseModel):
    total_budgeted: Decimal
    total_spent: Decimal
    remaining_budget: Decimal
    performance_score: Decimal


class BudgetCategoryPerformance(BaseModel):
    category_id: int
    category_name: str
    budgeted: Decimal
    spent: Decimal
    remaining: Decimal
    performance_percentage: Decimal
    status: BudgetStatus


class MonthlyBudgetTrend(BaseModel):
    month: str
    budgeted: Decimal
    spent: Decimal
    performance_score: Decimal


class BudgetPerformance(BaseModel):
    overall_performance: OverallBudgetPerformance
    category_performance: list[BudgetCategoryPerformance]
    monthly_trends: list[MonthlyBudgetTrend]


class IncomeSourceAnalysis(BaseModel):
    source: str
    amount: Decimal
    percentage: Decimal
    frequency: EventFrequency
    reliability: Decimal


class MonthlyIncomeTrend(BaseModel):
    month: str
    amount: Decimal
    regular_amount: Decimal
    irregular_amount: Decimal


class IncomeAnalysis(BaseModel):
    total_income: Decimal
    regular_income: Decimal
    irregular_income: Decimal
    average_monthly_income: Decimal
    income_consistency: Decimal
    sources: list[IncomeSourceAnalysis]
    monthly_trends: list[MonthlyIncomeTrend]


class AccountTypeTotal(BaseModel):
    account_type: str
    amount: Decimal


class BalanceGroup(BaseModel):
    total: Decimal
    breakdown: list[AccountTypeTotal]


class NetWorth(BaseModel):
    current_net_worth: Decimal
    assets: BalanceGroup
    liabilities: BalanceGroup


class SavingsMonth(BaseModel):
    month: str
    income: Decimal
    expenses: Decimal
    savings: Decimal
    savings_rate: Decimal


class SavingsRate(BaseModel):
    current_savings_rate: Decimal
    target_savings_rate: Decimal
    monthly_data: list[SavingsMonth]
    average_savings_rate: Decimal
    savings_trend: SavingsTrend


class IncomeTotals(BaseModel):
    total: Decimal
    sources: list[SourceShare]


class ExpenseTotals(BaseModel):
    total: Decimal
    categories: list[CategoryShare]


class TopExpense(BaseModel):
    description: str
    amount: Decimal
    category: str
    date: date


class MonthlySummary(BaseModel):
    month: str
    income: IncomeTotals
    expenses: ExpenseTotals
    net_cash_flow: Decimal
    savings_rate: Decimal
    budget_performance: Decimal
    top_expenses: list[TopExpense]


class AnnualSummary(BaseModel):
    year: int
    period_start: date
    period_end: date
    cash_flow: list[CashFlowPeriod]
    spending: SpendingAnalysis
    budget: BudgetPerformance
    income: IncomeAnalysis
    savings: SavingsRate
