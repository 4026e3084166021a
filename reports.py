from collections import Counter
from datetime import date
from decimal import Decimal
from typing import Callable, Iterable, Optional, Union

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from models import (
    ASSET_ACCOUNT_TYPES,
    LIABILITY_ACCOUNT_TYPES,
    AccountType,
    BankAccount,
    BudgetAllocation,
    BudgetCategory,
    EventFrequency,
    IncomeEvent,
    IncomeStatus,
    Payment,
    ReportType,
    SpendingCategory,
    Transaction,
)
from money import money, money_sum, percent
from periods import (
    DateRange,
    Granularity,
    ReportPeriod,
    generate_periods,
    month_range,
    months_between,
)
from schemas import (
    AccountTypeTotal,
    AnnualSummary,
    BalanceGroup,
    BudgetCategoryPerformance,
    BudgetPerformance,
    CashFlowPeriod,
    CashFlowReport,
    CategoryAmount,
    CategoryShare,
    ExpenseTotals,
    IncomeAnalysis,
    IncomeSourceAnalysis,
    IncomeTotals,
    MerchantTotal,
    MonthlyBudgetTrend,
    MonthlyIncomeTrend,
    MonthlySpendingTrend,
    MonthlySummary,
    NetWorth,
    OverallBudgetPerformance,
    ReportParameters,
    SavingsMonth,
    SavingsRate,
    SourceShare,
    SpendingAnalysis,
    SpendingCategoryBreakdown,
    TopExpense,
)

UNCATEGORIZED = "Uncategorized"
TOP_MERCHANTS = 10
TOP_EXPENSES = 10
SAVINGS_TREND_BAND = Decimal("2")
HUNDRED = Decimal("100")
ZERO = Decimal("0.00")


def budget_status(performance_percentage: Decimal) -> str:
    if performance_percentage <= 75:
        return "under_budget"
    if performance_percentage <= 100:
        return "on_track"
    if performance_percentage <= 125:
        return "over_budget"
    return "way_over_budget"


def budget_score(budgeted: Decimal, spent: Decimal) -> Decimal:
    """0-100 score; full marks at or under budget, zero at double the budget."""
    if budgeted == 0:
        return ZERO if spent > 0 else money(HUNDRED)
    score = HUNDRED - (spent - budgeted) / budgeted * HUNDRED
    return money(min(HUNDRED, max(Decimal("0"), score)))


def _within(value: date, period: Union[ReportPeriod, DateRange]) -> bool:
    return period.start <= value <= period.end


def _income_source(event: IncomeEvent) -> str:
    return event.source or event.name or "Other"


def _category_name(txn: Transaction) -> str:
    return txn.spending_category.name if txn.spending_category else UNCATEGORIZED


def _source_shares(events: Iterable[IncomeEvent]) -> list[SourceShare]:
    totals: dict[str, Decimal] = {}
    for event in events:
        source = _income_source(event)
        totals[source] = money(totals.get(source, ZERO) + event.received_amount)
    total = money_sum(totals.values())
    shares = [
        SourceShare(source=source, amount=amount, percentage=percent(amount, total))
        for source, amount in totals.items()
    ]
    shares.sort(key=lambda s: s.amount, reverse=True)
    return shares


def _category_shares(transactions: Iterable[Transaction]) -> list[CategoryShare]:
    totals: dict[str, Decimal] = {}
    for txn in transactions:
        name = _category_name(txn)
        totals[name] = money(totals.get(name, ZERO) + money(txn.amount))
    total = money_sum(totals.values())
    shares = [
        CategoryShare(category=name, amount=amount, percentage=percent(amount, total))
        for name, amount in totals.items()
    ]
    shares.sort(key=lambda s: s.amount, reverse=True)
    return shares


class ReportService:
    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def _received_income(self, date_range: DateRange) -> list[IncomeEvent]:
        stmt = (
            select(IncomeEvent)
            .where(
                IncomeEvent.family_id == self.family_id,
                IncomeEvent.status == IncomeStatus.received,
                IncomeEvent.actual_date.between(date_range.start, date_range.end),
            )
            .order_by(IncomeEvent.actual_date, IncomeEvent.id)
        )
        return list(self.session.scalars(stmt).all())

    def _scheduled_income(self, date_range: DateRange) -> list[IncomeEvent]:
        stmt = (
            select(IncomeEvent)
            .where(
                IncomeEvent.family_id == self.family_id,
                IncomeEvent.status != IncomeStatus.cancelled,
                IncomeEvent.scheduled_date.between(date_range.start, date_range.end),
            )
            .order_by(IncomeEvent.scheduled_date, IncomeEvent.id)
        )
        return list(self.session.scalars(stmt).all())

    def _expenses(self, date_range: DateRange) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .join(BankAccount, BankAccount.id == Transaction.bank_account_id)
            .options(joinedload(Transaction.spending_category))
            .where(
                BankAccount.family_id == self.family_id,
                Transaction.amount > 0,
                Transaction.date.between(date_range.start, date_range.end),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def _open_payments(self, date_range: DateRange) -> list[Payment]:
        stmt = select(Payment).where(
            Payment.family_id == self.family_id,
            Payment.paid_date.is_(None),
            Payment.cancelled_at.is_(None),
            Payment.due_date.between(date_range.start, date_range.end),
        )
        return list(self.session.scalars(stmt).all())

    def _allocations(self, date_range: DateRange) -> list[tuple[int, Decimal, date]]:
        stmt = (
            select(
                BudgetAllocation.budget_category_id,
                BudgetAllocation.amount,
                IncomeEvent.actual_date,
            )
            .join(IncomeEvent, IncomeEvent.id == BudgetAllocation.income_event_id)
            .where(
                IncomeEvent.family_id == self.family_id,
                IncomeEvent.status == IncomeStatus.received,
                IncomeEvent.actual_date.between(date_range.start, date_range.end),
            )
        )
        return [
            (row.budget_category_id, money(row.amount), row.actual_date)
            for row in self.session.execute(stmt).all()
        ]

    def _budgeted_spending(
        self, date_range: DateRange
    ) -> list[tuple[int, Decimal, date]]:
        stmt = (
            select(
                SpendingCategory.budget_category_id,
                Transaction.amount,
                Transaction.date,
            )
            .join(SpendingCategory, SpendingCategory.id == Transaction.spending_category_id)
            .join(BankAccount, BankAccount.id == Transaction.bank_account_id)
            .where(
                BankAccount.family_id == self.family_id,
                SpendingCategory.budget_category_id.is_not(None),
                Transaction.amount > 0,
                Transaction.date.between(date_range.start, date_range.end),
            )
        )
        return [
            (row.budget_category_id, money(row.amount), row.date)
            for row in self.session.execute(stmt).all()
        ]

    def cash_flow(
        self,
        date_range: DateRange,
        group_by: Union[Granularity, str] = Granularity.month,
        include_projections: bool = False,
    ) -> CashFlowReport:
        group_by = Granularity(group_by)
        income = self._received_income(date_range)
        expenses = self._expenses(date_range)
        scheduled: list[IncomeEvent] = []
        payments: list[Payment] = []
        if include_projections:
            scheduled = [
                e
                for e in self._scheduled_income(date_range)
                if e.status == IncomeStatus.scheduled
            ]
            payments = self._open_payments(date_range)

        periods = []
        for period in generate_periods(date_range.start, date_range.end, group_by):
            bucket_income = [e for e in income if _within(e.actual_date, period)]
            bucket_expenses = [t for t in expenses if _within(t.date, period)]
            total_income = money_sum(e.received_amount for e in bucket_income)
            total_expenses = money_sum(t.amount for t in bucket_expenses)
            row = CashFlowPeriod(
                period=period.label,
                period_start=period.start,
                period_end=period.end,
                total_income=total_income,
                total_expenses=total_expenses,
                net_cash_flow=money(total_income - total_expenses),
                income_breakdown=_source_shares(bucket_income),
                expense_breakdown=_category_shares(bucket_expenses),
            )
            if include_projections:
                row.projected_income = money_sum(
                    e.amount for e in scheduled if _within(e.scheduled_date, period)
                )
                row.projected_payments = money_sum(
                    p.amount for p in payments if _within(p.due_date, period)
                )
            periods.append(row)
        return CashFlowReport(group_by=group_by, periods=periods)

    def spending_analysis(self, date_range: DateRange) -> SpendingAnalysis:
        expenses = self._expenses(date_range)
        total_spent = money_sum(t.amount for t in expenses)

        categories: dict[Optional[int], dict] = {}
        for txn in expenses:
            entry = categories.setdefault(
                txn.spending_category_id,
                {"name": _category_name(txn), "amount": ZERO, "count": 0},
            )
            entry["amount"] = money(entry["amount"] + money(txn.amount))
            entry["count"] += 1
        breakdown = [
            SpendingCategoryBreakdown(
                category_id=category_id,
                category_name=entry["name"],
                amount=entry["amount"],
                percentage=percent(entry["amount"], total_spent),
                transaction_count=entry["count"],
                average_transaction=money(entry["amount"] / entry["count"]),
            )
            for category_id, entry in categories.items()
        ]
        breakdown.sort(key=lambda b: b.amount, reverse=True)

        trends = []
        for period in generate_periods(date_range.start, date_range.end, Granularity.month):
            bucket = [t for t in expenses if _within(t.date, period)]
            per_category: dict[Optional[int], CategoryAmount] = {}
            for txn in bucket:
                item = per_category.get(txn.spending_category_id)
                if item is None:
                    item = CategoryAmount(
                        category_id=txn.spending_category_id,
                        category_name=_category_name(txn),
                        amount=ZERO,
                    )
                    per_category[txn.spending_category_id] = item
                item.amount = money(item.amount + money(txn.amount))
            trends.append(
                MonthlySpendingTrend(
                    month=period.label,
                    amount=money_sum(t.amount for t in bucket),
                    category_breakdown=sorted(
                        per_category.values(), key=lambda c: c.amount, reverse=True
                    ),
                )
            )

        return SpendingAnalysis(
            total_spent=total_spent,
            category_breakdown=breakdown,
            monthly_trends=trends,
            top_merchants=self._top_merchants(expenses),
        )

    @staticmethod
    def _top_merchants(expenses: list[Transaction]) -> list[MerchantTotal]:
        merchants: dict[str, MerchantTotal] = {}
        for txn in expenses:
            name = txn.merchant_name or "Unknown"
            item = merchants.get(name)
            if item is None:
                item = MerchantTotal(merchant_name=name, amount=ZERO, transaction_count=0)
                merchants[name] = item
            item.amount = money(item.amount + money(txn.amount))
            item.transaction_count += 1
        ranked = sorted(merchants.values(), key=lambda m: (-m.amount, m.merchant_name))
        return ranked[:TOP_MERCHANTS]

    def budget_performance(self, date_range: DateRange) -> BudgetPerformance:
        categories = self.session.scalars(
            select(BudgetCategory)
            .where(
                BudgetCategory.family_id == self.family_id,
                BudgetCategory.is_active.is_(True),
            )
            .order_by(BudgetCategory.sort_order, BudgetCategory.name)
        ).all()
        active_ids = {c.id for c in categories}
        allocations = [a for a in self._allocations(date_range) if a[0] in active_ids]
        spending = [s for s in self._budgeted_spending(date_range) if s[0] in active_ids]

        performance = []
        for category in categories:
            budgeted = money_sum(a[1] for a in allocations if a[0] == category.id)
            spent = money_sum(s[1] for s in spending if s[0] == category.id)
            ratio = percent(spent, budgeted)
            performance.append(
                BudgetCategoryPerformance(
                    category_id=category.id,
                    category_name=category.name,
                    budgeted=budgeted,
                    spent=spent,
                    remaining=money(budgeted - spent),
                    performance_percentage=ratio,
                    status=budget_status(ratio),
                )
            )
        performance.sort(key=lambda p: p.spent, reverse=True)

        total_budgeted = money_sum(p.budgeted for p in performance)
        total_spent = money_sum(p.spent for p in performance)

        trends = []
        for period in generate_periods(date_range.start, date_range.end, Granularity.month):
            budgeted = money_sum(a[1] for a in allocations if _within(a[2], period))
            spent = money_sum(s[1] for s in spending if _within(s[2], period))
            trends.append(
                MonthlyBudgetTrend(
                    month=period.label,
                    budgeted=budgeted,
                    spent=spent,
                    performance_score=budget_score(budgeted, spent),
                )
            )

        return BudgetPerformance(
            overall_performance=OverallBudgetPerformance(
                total_budgeted=total_budgeted,
                total_spent=total_spent,
                remaining_budget=money(total_budgeted - total_spent),
                performance_score=budget_score(total_budgeted, total_spent),
            ),
            category_performance=performance,
            monthly_trends=trends,
        )

    def income_analysis(self, date_range: DateRange) -> IncomeAnalysis:
        income = self._received_income(date_range)
        total_income = money_sum(e.received_amount for e in income)
        regular_income = money_sum(
            e.received_amount for e in income if e.frequency != EventFrequency.one_time
        )
        months = max(1, months_between(date_range.start, date_range.end))

        trends = []
        for period in generate_periods(date_range.start, date_range.end, Granularity.month):
            bucket = [e for e in income if _within(e.actual_date, period)]
            amount = money_sum(e.received_amount for e in bucket)
            regular = money_sum(
                e.received_amount for e in bucket if e.frequency != EventFrequency.one_time
            )
            trends.append(
                MonthlyIncomeTrend(
                    month=period.label,
                    amount=amount,
                    regular_amount=regular,
                    irregular_amount=money(amount - regular),
                )
            )

        return IncomeAnalysis(
            total_income=total_income,
            regular_income=regular_income,
            irregular_income=money(total_income - regular_income),
            average_monthly_income=money(total_income / months),
            income_consistency=self._consistency([t.amount for t in trends]),
            sources=self._income_sources(income, date_range),
            monthly_trends=trends,
        )

    @staticmethod
    def _consistency(monthly_amounts: list[Decimal]) -> Decimal:
        """100 minus the coefficient of variation of monthly income, as a percentage."""
        if not monthly_amounts:
            return ZERO
        count = Decimal(len(monthly_amounts))
        mean = sum(monthly_amounts, ZERO) / count
        if mean <= 0:
            return ZERO
        if len(monthly_amounts) == 1:
            return money(HUNDRED)
        variance = sum(((a - mean) ** 2 for a in monthly_amounts), ZERO) / count
        score = HUNDRED - variance.sqrt() / mean * HUNDRED
        return money(min(HUNDRED, max(ZERO, score)))

    def _income_sources(
        self, income: list[IncomeEvent], date_range: DateRange
    ) -> list[IncomeSourceAnalysis]:
        expected: dict[str, list[IncomeEvent]] = {}
        for event in self._scheduled_income(date_range):
            expected.setdefault(_income_source(event), []).append(event)

        frequencies: dict[str, Counter] = {}
        for event in income:
            frequencies.setdefault(_income_source(event), Counter())[event.frequency] += 1

        sources = []
        for share in _source_shares(income):
            planned = expected.get(share.source, [])
            if planned:
                received = sum(1 for e in planned if e.status == IncomeStatus.received)
                reliability = percent(received, len(planned))
            else:
                reliability = money(HUNDRED)
            frequency = frequencies[share.source].most_common(1)[0][0]
            sources.append(
                IncomeSourceAnalysis(
                    source=share.source,
                    amount=share.amount,
                    percentage=share.percentage,
                    frequency=frequency,
                    reliability=reliability,
                )
            )
        return sources

    def net_worth(self) -> NetWorth:
        accounts = self.session.scalars(
            select(BankAccount).where(
                BankAccount.family_id == self.family_id,
                BankAccount.deleted_at.is_(None),
            )
        ).all()

        by_type: dict[AccountType, Decimal] = {}
        total_assets = ZERO
        total_liabilities = ZERO
        for account in accounts:
            balance = money(account.current_balance)
            by_type[account.account_type] = money(
                by_type.get(account.account_type, ZERO) + balance
            )
            if account.account_type in ASSET_ACCOUNT_TYPES:
                total_assets = money(total_assets + balance)
            elif account.account_type in LIABILITY_ACCOUNT_TYPES:
                # balances may be stored with either sign
                total_liabilities = money(total_liabilities + abs(balance))

        asset_breakdown = []
        liability_breakdown = []
        for account_type in AccountType:
            if account_type not in by_type:
                continue
            amount = by_type[account_type]
            if account_type in ASSET_ACCOUNT_TYPES:
                asset_breakdown.append(
                    AccountTypeTotal(account_type=account_type.value, amount=amount)
                )
            elif account_type in LIABILITY_ACCOUNT_TYPES:
                liability_breakdown.append(
                    AccountTypeTotal(account_type=account_type.value, amount=abs(amount))
                )

        return NetWorth(
            current_net_worth=money(total_assets - total_liabilities),
            assets=BalanceGroup(total=total_assets, breakdown=asset_breakdown),
            liabilities=BalanceGroup(total=total_liabilities, breakdown=liability_breakdown),
        )

    def savings_rate(
        self, date_range: DateRange, target_savings_rate: Decimal = Decimal("20")
    ) -> SavingsRate:
        income = self._received_income(date_range)
        expenses = self._expenses(date_range)

        monthly = []
        for period in generate_periods(date_range.start, date_range.end, Granularity.month):
            month_income = money_sum(
                e.received_amount for e in income if _within(e.actual_date, period)
            )
            month_expenses = money_sum(
                t.amount for t in expenses if _within(t.date, period)
            )
            savings = money(month_income - month_expenses)
            monthly.append(
                SavingsMonth(
                    month=period.label,
                    income=month_income,
                    expenses=month_expenses,
                    savings=savings,
                    savings_rate=percent(savings, month_income),
                )
            )

        rates = [m.savings_rate for m in monthly]
        average = money(sum(rates, Decimal("0")) / len(rates)) if rates else ZERO
        return SavingsRate(
            current_savings_rate=rates[-1] if rates else ZERO,
            target_savings_rate=money(target_savings_rate),
            monthly_data=monthly,
            average_savings_rate=average,
            savings_trend=self._savings_trend(rates),
        )

    @staticmethod
    def _savings_trend(rates: list[Decimal]) -> str:
        recent = rates[-3:]
        earlier = rates[-6:-3]
        if not recent or not earlier:
            return "stable"
        recent_avg = sum(recent, Decimal("0")) / len(recent)
        earlier_avg = sum(earlier, Decimal("0")) / len(earlier)
        if recent_avg > earlier_avg + SAVINGS_TREND_BAND:
            return "increasing"
        if recent_avg < earlier_avg - SAVINGS_TREND_BAND:
            return "decreasing"
        return "stable"

    def monthly_summary(self, month: date) -> MonthlySummary:
        date_range = month_range(month)
        income = self._received_income(date_range)
        expenses = self._expenses(date_range)

        total_income = money_sum(e.received_amount for e in income)
        total_expenses = money_sum(t.amount for t in expenses)
        net = money(total_income - total_expenses)
        budget = self.budget_performance(date_range)

        ranked = sorted(expenses, key=lambda t: (-money(t.amount), t.date, t.id))
        top = [
            TopExpense(
                description=t.description,
                amount=money(t.amount),
                category=_category_name(t),
                date=t.date,
            )
            for t in ranked[:TOP_EXPENSES]
        ]
        return MonthlySummary(
            month=f"{date_range.start.year:04d}-{date_range.start.month:02d}",
            income=IncomeTotals(total=total_income, sources=_source_shares(income)),
            expenses=ExpenseTotals(
                total=total_expenses, categories=_category_shares(expenses)
            ),
            net_cash_flow=net,
            savings_rate=percent(net, total_income),
            budget_performance=budget.overall_performance.performance_score,
            top_expenses=top,
        )


def annual_summary(service: ReportService, date_range: DateRange) -> AnnualSummary:
    """Year-end digest assembled from the individual reports over one range."""
    return AnnualSummary(
        year=date_range.start.year,
        period_start=date_range.start,
        period_end=date_range.end,
        cash_flow=service.cash_flow(date_range, Granularity.month).periods,
        spending=service.spending_analysis(date_range),
        budget=service.budget_performance(date_range),
        income=service.income_analysis(date_range),
        savings=service.savings_rate(date_range),
    )


ReportBuilder = Callable[[ReportService, DateRange, ReportParameters], BaseModel]

BASE_REPORTS: dict[ReportType, ReportBuilder] = {
    ReportType.cash_flow: lambda s, r, p: s.cash_flow(
        r, p.group_by, p.include_projections
    ),
    ReportType.spending_analysis: lambda s, r, p: s.spending_analysis(r),
    ReportType.budget_performance: lambda s, r, p: s.budget_performance(r),
    ReportType.income_analysis: lambda s, r, p: s.income_analysis(r),
    ReportType.net_worth: lambda s, r, p: s.net_worth(),
    ReportType.savings_rate: lambda s, r, p: s.savings_rate(r, p.target_savings_rate),
    ReportType.monthly_summary: lambda s, r, p: s.monthly_summary(p.month or r.end),
}


def generate_report(
    service: ReportService,
    report_type: Union[ReportType, str],
    date_range: DateRange,
    parameters: Optional[ReportParameters] = None,
) -> BaseModel:
    report_type = ReportType(report_type)
    parameters = parameters or ReportParameters()
    if report_type == ReportType.annual_summary:
        return annual_summary(service, date_range)
    return BASE_REPORTS[report_type](service, date_range, parameters)
