from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from allocation import split
from config import get_settings
from errors import InvalidAmount, NotFoundError, OverAllocation
from models import (
    Attribution,
    AttributionType,
    BudgetAllocation,
    BudgetCategory,
    IncomeEvent,
    IncomeStatus,
    Payment,
    PaymentStatus,
    PaymentType,
    ScheduledReport,
    ScheduledReportExecution,
    ScheduleStatus,
    utcnow,
)
from money import money, money_sum, percent
from recurrence import (
    local_today,
    next_event_date,
    next_event_date_after,
    next_occurrence,
    resolve_timezone,
    utc_naive,
    validate_delivery_schedule,
)
from schemas import (
    BudgetCategoryIn,
    IncomeEventIn,
    IncomeEventUpdate,
    MarkPaidIn,
    MarkReceivedIn,
    PaymentIn,
    PaymentUpdate,
    ScheduledReportIn,
    ScheduledReportUpdate,
)

logger = logging.getLogger(__name__)


def _sum_attributions(session: Session, *criteria) -> Decimal:
    total = session.execute(
        select(func.coalesce(func.sum(Attribution.amount), 0)).where(*criteria)
    ).scalar_one()
    return money(total or 0)


def payment_attributed_total(session: Session, payment_id: int) -> Decimal:
    return _sum_attributions(session, Attribution.payment_id == payment_id)


def income_attributed_total(session: Session, income_event_id: int) -> Decimal:
    return _sum_attributions(session, Attribution.income_event_id == income_event_id)


def lock_row(model, row_id: int):
    """Row lock on a parent so concurrent cap checks serialize.

    SQLite drops FOR UPDATE and relies on its single writer instead.
    """
    return select(model.id).where(model.id == row_id).with_for_update()


class IncomeService:
    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def get(self, income_event_id: int) -> IncomeEvent:
        event = self.session.get(IncomeEvent, income_event_id)
        if not event or event.family_id != self.family_id:
            raise NotFoundError("Income event not found")
        return event

    def list(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        status: Optional[IncomeStatus] = None,
    ) -> list[IncomeEvent]:
        stmt = select(IncomeEvent).where(IncomeEvent.family_id == self.family_id)
        if start:
            stmt = stmt.where(IncomeEvent.scheduled_date >= start)
        if end:
            stmt = stmt.where(IncomeEvent.scheduled_date <= end)
        if status:
            stmt = stmt.where(IncomeEvent.status == status)
        stmt = stmt.order_by(IncomeEvent.scheduled_date, IncomeEvent.id)
        return list(self.session.scalars(stmt).all())

    def create(self, data: IncomeEventIn) -> IncomeEvent:
        event = IncomeEvent(
            family_id=self.family_id,
            name=data.name,
            source=data.source,
            amount=money(data.amount),
            scheduled_date=data.scheduled_date,
            frequency=data.frequency,
            anchor_day=data.scheduled_date.day,
            next_occurrence=next_event_date(data.frequency, data.scheduled_date),
            status=IncomeStatus.scheduled,
            notes=data.notes,
        )
        self.session.add(event)
        self.session.commit()
        self.session.refresh(event)
        return event

    def update(self, income_event_id: int, data: IncomeEventUpdate) -> IncomeEvent:
        event = self.get(income_event_id)
        if event.status == IncomeStatus.received:
            raise ValueError("Received income cannot be edited")
        if event.status == IncomeStatus.cancelled:
            raise ValueError("Cancelled income cannot be edited")

        changes = data.model_dump(exclude_unset=True)
        if changes.get("amount") is not None:
            attributed = income_attributed_total(self.session, event.id)
            if money(changes["amount"]) < attributed:
                raise OverAllocation(
                    f"Amount cannot be lower than the attributed total {attributed}"
                )
            changes["amount"] = money(changes["amount"])

        for field, value in changes.items():
            if value is not None or field in ("source", "notes"):
                setattr(event, field, value)
        if "scheduled_date" in changes:
            event.anchor_day = event.scheduled_date.day
        if "scheduled_date" in changes or "frequency" in changes:
            event.next_occurrence = next_event_date(
                event.frequency, event.scheduled_date, event.recurrence_day
            )
        self.session.commit()
        self.session.refresh(event)
        return event

    def mark_received(self, income_event_id: int, data: MarkReceivedIn) -> IncomeEvent:
        event = self.get(income_event_id)
        if event.status == IncomeStatus.cancelled:
            raise ValueError("Cancelled income cannot be received")
        if event.status == IncomeStatus.received:
            raise ValueError("Income already marked as received")

        actual_amount = money(data.actual_amount)
        attributed = income_attributed_total(self.session, event.id)
        if actual_amount < attributed:
            raise OverAllocation(
                f"Actual amount cannot be lower than the attributed total {attributed}"
            )

        event.status = IncomeStatus.received
        event.actual_date = data.actual_date
        event.actual_amount = actual_amount
        event.next_occurrence = next_event_date_after(
            event.frequency,
            event.scheduled_date,
            max(event.scheduled_date, data.actual_date),
            anchor_day=event.recurrence_day,
        )
        if event.next_occurrence is not None:
            self._spawn_next(event)
        self.session.commit()
        self.session.refresh(event)
        return event

    def _spawn_next(self, event: IncomeEvent) -> Optional[IncomeEvent]:
        exists_stmt = (
            select(IncomeEvent.id)
            .where(
                IncomeEvent.family_id == self.family_id,
                IncomeEvent.name == event.name,
                IncomeEvent.frequency == event.frequency,
                IncomeEvent.scheduled_date == event.next_occurrence,
            )
            .limit(1)
        )
        if self.session.execute(exists_stmt).scalar_one_or_none():
            return None

        anchor_day = event.recurrence_day
        upcoming = IncomeEvent(
            family_id=self.family_id,
            name=event.name,
            source=event.source,
            amount=event.amount,
            scheduled_date=event.next_occurrence,
            frequency=event.frequency,
            anchor_day=anchor_day,
            next_occurrence=next_event_date(
                event.frequency, event.next_occurrence, anchor_day
            ),
            status=IncomeStatus.scheduled,
            notes=event.notes,
        )
        self.session.add(upcoming)
        self.session.flush()
        logger.info(
            f"income_next_occurrence: income_event_id={event.id} "
            f"next_id={upcoming.id} scheduled_date={upcoming.scheduled_date}"
        )
        return upcoming

    def revert_received(self, income_event_id: int) -> IncomeEvent:
        event = self.get(income_event_id)
        if event.status != IncomeStatus.received:
            raise ValueError("Income is not marked as received")
        attributed = income_attributed_total(self.session, event.id)
        if attributed > money(event.amount):
            raise OverAllocation(
                "Remove attributions above the scheduled amount before reverting"
            )
        event.status = IncomeStatus.scheduled
        event.actual_date = None
        event.actual_amount = None
        event.next_occurrence = next_event_date(
            event.frequency, event.scheduled_date, event.recurrence_day
        )
        self.session.commit()
        self.session.refresh(event)
        return event

    def cancel(self, income_event_id: int) -> IncomeEvent:
        event = self.get(income_event_id)
        if event.status == IncomeStatus.received:
            raise ValueError("Received income cannot be cancelled")
        if income_attributed_total(self.session, event.id) > 0:
            raise ValueError("Remove attributions before cancelling income")
        event.status = IncomeStatus.cancelled
        self.session.commit()
        self.session.refresh(event)
        return event

    def delete(self, income_event_id: int) -> None:
        event = self.get(income_event_id)
        self.session.delete(event)
        self.session.commit()

    def upcoming(self, days: int = 30, today: Optional[date] = None) -> list[IncomeEvent]:
        today = today or local_today()
        stmt = (
            select(IncomeEvent)
            .where(
                IncomeEvent.family_id == self.family_id,
                IncomeEvent.status == IncomeStatus.scheduled,
                IncomeEvent.scheduled_date >= today,
                IncomeEvent.scheduled_date <= today + timedelta(days=days),
            )
            .order_by(IncomeEvent.scheduled_date, IncomeEvent.id)
        )
        return list(self.session.scalars(stmt).all())

    def summary(self, start: date, end: date) -> dict[str, object]:
        events = self.list(start=start, end=end)
        expected = money_sum(
            e.amount for e in events if e.status != IncomeStatus.cancelled
        )
        received = money_sum(
            e.actual_amount for e in events if e.status == IncomeStatus.received
        )
        attributed = money_sum(e.attributed_amount for e in events)
        by_status: dict[str, int] = {status.value: 0 for status in IncomeStatus}
        for event in events:
            by_status[event.status.value] += 1
        return {
            "start": start,
            "end": end,
            "count": len(events),
            "expected_total": expected,
            "received_total": received,
            "attributed_total": attributed,
            "by_status": by_status,
        }


class PaymentService:
    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def get(self, payment_id: int) -> Payment:
        payment = self.session.get(Payment, payment_id)
        if not payment or payment.family_id != self.family_id:
            raise NotFoundError("Payment not found")
        return payment

    def list(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        status: Optional[PaymentStatus] = None,
        today: Optional[date] = None,
    ) -> list[Payment]:
        stmt = select(Payment).where(Payment.family_id == self.family_id)
        if start:
            stmt = stmt.where(Payment.due_date >= start)
        if end:
            stmt = stmt.where(Payment.due_date <= end)
        stmt = stmt.order_by(Payment.due_date, Payment.id)
        payments = list(self.session.scalars(stmt).all())
        if status:
            today = today or local_today()
            payments = [p for p in payments if p.status_on(today) == status]
        return payments

    def create(self, data: PaymentIn) -> Payment:
        next_due = None
        if data.payment_type == PaymentType.recurring:
            next_due = next_event_date(data.frequency, data.due_date)
        payment = Payment(
            family_id=self.family_id,
            payee=data.payee,
            amount=money(data.amount),
            due_date=data.due_date,
            payment_type=data.payment_type,
            frequency=data.frequency,
            anchor_day=data.due_date.day,
            next_due_date=next_due,
            spending_category_id=data.spending_category_id,
            notes=data.notes,
        )
        self.session.add(payment)
        self.session.commit()
        self.session.refresh(payment)
        return payment

    def update(self, payment_id: int, data: PaymentUpdate) -> Payment:
        payment = self.get(payment_id)
        if payment.paid_date is not None:
            raise ValueError("Paid payments cannot be edited")
        if payment.cancelled_at is not None:
            raise ValueError("Cancelled payments cannot be edited")

        changes = data.model_dump(exclude_unset=True)
        if changes.get("amount") is not None:
            attributed = payment_attributed_total(self.session, payment.id)
            if money(changes["amount"]) < attributed:
                raise OverAllocation(
                    f"Amount cannot be lower than the attributed total {attributed}"
                )
            changes["amount"] = money(changes["amount"])

        for field, value in changes.items():
            if value is not None or field in ("spending_category_id", "notes"):
                setattr(payment, field, value)
        if "due_date" in changes:
            payment.anchor_day = payment.due_date.day
            if payment.payment_type == PaymentType.recurring:
                payment.next_due_date = next_event_date(
                    payment.frequency, payment.due_date, payment.recurrence_day
                )
        self.session.commit()
        self.session.refresh(payment)
        return payment

    def mark_paid(self, payment_id: int, data: MarkPaidIn) -> Payment:
        payment = self.get(payment_id)
        if payment.cancelled_at is not None:
            raise ValueError("Cancelled payments cannot be paid")
        if payment.paid_date is not None:
            raise ValueError("Payment already marked as paid")

        payment.paid_date = data.paid_date
        payment.paid_amount = money(
            data.paid_amount if data.paid_amount is not None else payment.amount
        )
        if (
            payment.payment_type == PaymentType.recurring
            and payment.next_due_date is not None
        ):
            self._spawn_next(payment)
        self.session.commit()
        self.session.refresh(payment)
        return payment

    def _spawn_next(self, payment: Payment) -> Optional[Payment]:
        exists_stmt = (
            select(Payment.id)
            .where(
                Payment.family_id == self.family_id,
                Payment.payee == payment.payee,
                Payment.payment_type == PaymentType.recurring,
                Payment.due_date == payment.next_due_date,
            )
            .limit(1)
        )
        if self.session.execute(exists_stmt).scalar_one_or_none():
            return None

        anchor_day = payment.recurrence_day
        upcoming = Payment(
            family_id=self.family_id,
            payee=payment.payee,
            amount=payment.amount,
            due_date=payment.next_due_date,
            payment_type=payment.payment_type,
            frequency=payment.frequency,
            anchor_day=anchor_day,
            next_due_date=next_event_date(
                payment.frequency, payment.next_due_date, anchor_day
            ),
            spending_category_id=payment.spending_category_id,
            notes=payment.notes,
        )
        self.session.add(upcoming)
        self.session.flush()
        logger.info(
            f"payment_next_occurrence: payment_id={payment.id} "
            f"next_id={upcoming.id} due_date={upcoming.due_date}"
        )
        return upcoming

    def revert_paid(self, payment_id: int) -> Payment:
        payment = self.get(payment_id)
        if payment.paid_date is None:
            raise ValueError("Payment is not marked as paid")
        payment.paid_date = None
        payment.paid_amount = None
        self.session.commit()
        self.session.refresh(payment)
        return payment

    def cancel(self, payment_id: int) -> Payment:
        payment = self.get(payment_id)
        if payment.paid_date is not None:
            raise ValueError("Paid payments cannot be cancelled")
        if payment.cancelled_at is None:
            payment.cancelled_at = utcnow()
        self.session.commit()
        self.session.refresh(payment)
        return payment

    def delete(self, payment_id: int) -> None:
        payment = self.get(payment_id)
        self.session.delete(payment)
        self.session.commit()

    def _open_payments(self):
        return select(Payment).where(
            Payment.family_id == self.family_id,
            Payment.paid_date.is_(None),
            Payment.cancelled_at.is_(None),
        )

    def overdue(self, today: Optional[date] = None) -> list[Payment]:
        today = today or local_today()
        stmt = (
            self._open_payments()
            .where(Payment.due_date < today)
            .order_by(Payment.due_date, Payment.id)
        )
        return list(self.session.scalars(stmt).all())

    def upcoming(self, days: int = 30, today: Optional[date] = None) -> list[Payment]:
        today = today or local_today()
        stmt = (
            self._open_payments()
            .where(
                Payment.due_date >= today,
                Payment.due_date <= today + timedelta(days=days),
            )
            .order_by(Payment.due_date, Payment.id)
        )
        return list(self.session.scalars(stmt).all())

    def summary(
        self, start: date, end: date, today: Optional[date] = None
    ) -> dict[str, object]:
        today = today or local_today()
        payments = self.list(start=start, end=end)
        by_status: dict[str, int] = {status.value: 0 for status in PaymentStatus}
        total_due = Decimal("0.00")
        total_paid = Decimal("0.00")
        overdue_total = Decimal("0.00")
        for payment in payments:
            status = payment.status_on(today)
            by_status[status.value] += 1
            if status == PaymentStatus.cancelled:
                continue
            total_due = money(total_due + payment.amount)
            if status == PaymentStatus.paid:
                total_paid = money(total_paid + payment.paid_amount)
            elif status == PaymentStatus.overdue:
                overdue_total = money(overdue_total + payment.amount)
        return {
            "start": start,
            "end": end,
            "count": len(payments),
            "total_due": total_due,
            "total_paid": total_paid,
            "overdue_total": overdue_total,
            "attributed_total": money_sum(p.attributed_amount for p in payments),
            "by_status": by_status,
        }


class AttributionService:
    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def _payment(self, payment_id: int) -> Payment:
        return PaymentService(self.session, self.family_id).get(payment_id)

    def _income(self, income_event_id: int) -> IncomeEvent:
        return IncomeService(self.session, self.family_id).get(income_event_id)

    def get(self, attribution_id: int) -> Attribution:
        attribution = self.session.get(Attribution, attribution_id)
        if not attribution or attribution.payment.family_id != self.family_id:
            raise NotFoundError("Attribution not found")
        return attribution

    def for_payment(self, payment_id: int) -> list[Attribution]:
        self._payment(payment_id)
        stmt = (
            select(Attribution)
            .where(Attribution.payment_id == payment_id)
            .order_by(Attribution.created_at, Attribution.id)
        )
        return list(self.session.scalars(stmt).all())

    def for_income(self, income_event_id: int) -> list[Attribution]:
        self._income(income_event_id)
        stmt = (
            select(Attribution)
            .where(Attribution.income_event_id == income_event_id)
            .order_by(Attribution.created_at, Attribution.id)
        )
        return list(self.session.scalars(stmt).all())

    def _refresh_totals(self, payment: Payment, income: IncomeEvent) -> None:
        self.session.expire(payment, ["attributions"])
        self.session.expire(income, ["attributions"])

    def _add(
        self,
        payment: Payment,
        income: IncomeEvent,
        amount: Decimal,
        attribution_type: AttributionType,
    ) -> Attribution:
        if amount <= 0:
            raise InvalidAmount("Attribution amount must be positive")
        if payment.cancelled_at is not None:
            raise ValueError("Payment is cancelled")
        if income.status == IncomeStatus.cancelled:
            raise ValueError("Income event is cancelled")

        self.session.execute(lock_row(Payment, payment.id))
        self.session.execute(lock_row(IncomeEvent, income.id))
        payment_total = payment_attributed_total(self.session, payment.id)
        if payment_total + amount > money(payment.amount):
            raise OverAllocation("Attribution exceeds payment amount")

        income_total = income_attributed_total(self.session, income.id)
        if income_total + amount > income.attribution_cap:
            raise OverAllocation("Attribution exceeds income amount")

        attribution = Attribution(
            payment_id=payment.id,
            income_event_id=income.id,
            amount=amount,
            attribution_type=attribution_type,
        )
        self.session.add(attribution)
        self.session.flush()
        self._refresh_totals(payment, income)
        return attribution

    def attribute(
        self,
        payment_id: int,
        income_event_id: int,
        amount: Decimal,
        attribution_type: AttributionType = AttributionType.manual,
    ) -> Attribution:
        payment = self._payment(payment_id)
        income = self._income(income_event_id)
        attribution = self._add(payment, income, money(amount), attribution_type)
        self.session.commit()
        self.session.refresh(attribution)
        return attribution

    def delete_attribution(self, attribution_id: int) -> None:
        attribution = self.get(attribution_id)
        payment = attribution.payment
        income = attribution.income_event
        self.session.delete(attribution)
        self.session.flush()
        self._refresh_totals(payment, income)
        self.session.commit()

    def split_payment(
        self,
        payment_id: int,
        income_event_ids: Sequence[int],
        weights: Optional[Sequence[Decimal]] = None,
    ) -> list[Attribution]:
        """Attribute a whole payment across several income events.

        Without weights the payment is split evenly. The payment must not be
        attributed yet.
        """
        if not income_event_ids:
            raise ValueError("At least one income event is required")
        if weights is None:
            weights = [Decimal("1")] * len(income_event_ids)
        if len(weights) != len(income_event_ids):
            raise ValueError("weights must match income events")

        payment = self._payment(payment_id)
        if payment_attributed_total(self.session, payment.id) > 0:
            raise ValueError("Payment already has attributions")
        incomes = [self._income(income_id) for income_id in income_event_ids]

        parts = split(payment.amount, weights)
        if money_sum(parts) != money(payment.amount):
            raise OverAllocation("Split parts must add up to the payment amount")

        created: list[Attribution] = []
        try:
            for income, part in zip(incomes, parts):
                if part == 0:
                    continue
                created.append(
                    self._add(payment, income, part, AttributionType.manual)
                )
        except ValueError:
            self.session.rollback()
            raise
        self.session.commit()
        return created

    def auto_attribute(
        self, window_days: int = 7, today: Optional[date] = None
    ) -> list[Attribution]:
        """Match unattributed open payments to income with enough room left.

        Oldest payments are matched first. Each goes to the income event
        dated closest to its due date (within ``window_days``) whose remaining
        capacity covers the full payment amount.
        """
        attributed_ids = select(Attribution.payment_id)
        payments = self.session.scalars(
            select(Payment)
            .where(
                Payment.family_id == self.family_id,
                Payment.paid_date.is_(None),
                Payment.cancelled_at.is_(None),
                Payment.amount > 0,
                Payment.id.not_in(attributed_ids),
            )
            .order_by(Payment.due_date, Payment.id)
        ).all()
        incomes = self.session.scalars(
            select(IncomeEvent)
            .where(
                IncomeEvent.family_id == self.family_id,
                IncomeEvent.status != IncomeStatus.cancelled,
            )
            .order_by(IncomeEvent.scheduled_date, IncomeEvent.id)
        ).all()

        created: list[Attribution] = []
        for payment in payments:
            amount = money(payment.amount)
            best: Optional[IncomeEvent] = None
            best_key: Optional[tuple[int, date, int]] = None
            for income in incomes:
                income_date = income.actual_date or income.scheduled_date
                distance = abs((income_date - payment.due_date).days)
                if distance > window_days:
                    continue
                remaining = income.attribution_cap - income_attributed_total(
                    self.session, income.id
                )
                if remaining < amount:
                    continue
                key = (distance, income_date, income.id)
                if best_key is None or key < best_key:
                    best, best_key = income, key
            if best is None:
                continue
            created.append(
                self._add(payment, best, amount, AttributionType.automatic)
            )

        self.session.commit()
        logger.info(
            f"auto_attribute: family_id={self.family_id} "
            f"candidates={len(payments)} matched={len(created)}"
        )
        return created

    def suggest_attributions(
        self, payment_id: int, limit: int = 10
    ) -> list[dict[str, object]]:
        """Rank income events that could fund what is left of a payment.

        ``high`` when the income lands on or before the due date and covers
        the remainder, ``medium`` when it covers at least half, else ``low``.
        """
        payment = self._payment(payment_id)
        outstanding = money(
            money(payment.amount) - payment_attributed_total(self.session, payment.id)
        )
        if outstanding <= 0 or payment.cancelled_at is not None:
            return []

        incomes = self.session.scalars(
            select(IncomeEvent)
            .where(
                IncomeEvent.family_id == self.family_id,
                IncomeEvent.status != IncomeStatus.cancelled,
            )
            .order_by(IncomeEvent.scheduled_date, IncomeEvent.id)
        ).all()

        suggestions = []
        for income in incomes:
            available = money(
                income.attribution_cap
                - income_attributed_total(self.session, income.id)
            )
            if available <= 0:
                continue
            income_date = income.actual_date or income.scheduled_date
            if income_date <= payment.due_date and available >= outstanding:
                confidence = "high"
            elif available >= outstanding / 2:
                confidence = "medium"
            else:
                confidence = "low"
            suggestions.append(
                {
                    "income_event_id": income.id,
                    "income_event_name": income.name,
                    "scheduled_date": income.scheduled_date,
                    "available_amount": available,
                    "suggested_amount": min(outstanding, available),
                    "confidence": confidence,
                }
            )
            if len(suggestions) >= limit:
                break

        rank = {"high": 0, "medium": 1, "low": 2}
        suggestions.sort(key=lambda s: rank[s["confidence"]])
        return suggestions

    def validate_capacity(
        self, payment_id: int, proposed: Sequence[tuple[int, Decimal]]
    ) -> dict[str, object]:
        """Check a set of ``(income_event_id, amount)`` pairs without saving them."""
        payment = self._payment(payment_id)
        payment_amount = money(payment.amount)
        existing = payment_attributed_total(self.session, payment.id)
        total_proposed = money_sum(amount for _, amount in proposed)

        errors: list[str] = []
        if payment.cancelled_at is not None:
            errors.append("Payment is cancelled")
        if existing + total_proposed > payment_amount:
            errors.append("Total attributions exceed payment amount")

        claimed: dict[int, Decimal] = {}
        for income_event_id, amount in proposed:
            amount = money(amount)
            if amount <= 0:
                errors.append("Attribution amounts must be positive")
                continue
            try:
                income = self._income(income_event_id)
            except NotFoundError:
                errors.append(f"Income event not found: {income_event_id}")
                continue
            if income.status == IncomeStatus.cancelled:
                errors.append(f"Income event is cancelled: {income.name}")
                continue
            claimed[income.id] = claimed.get(income.id, Decimal("0.00")) + amount
            available = income.attribution_cap - income_attributed_total(
                self.session, income.id
            )
            if claimed[income.id] > available:
                errors.append(
                    f"Amount {amount} exceeds available income for {income.name}"
                )

        return {
            "is_valid": not errors,
            "errors": errors,
            "total_proposed": total_proposed,
            "payment_amount": payment_amount,
            "remaining_amount": money(payment_amount - existing),
        }

    def payment_summary(self, payment_id: int) -> dict[str, object]:
        payment = self._payment(payment_id)
        attributions = self.for_payment(payment_id)
        attributed = money_sum(a.amount for a in attributions)
        amount = money(payment.amount)
        return {
            "payment_id": payment.id,
            "amount": amount,
            "attributed_amount": attributed,
            "remaining_amount": money(amount - attributed),
            "attributed_percentage": percent(attributed, amount),
            "attributions": [
                {
                    "id": a.id,
                    "income_event_id": a.income_event_id,
                    "amount": money(a.amount),
                    "attribution_type": a.attribution_type.value,
                    "percentage": percent(a.amount, amount),
                }
                for a in attributions
            ],
        }

    def income_summary(self, income_event_id: int) -> dict[str, object]:
        income = self._income(income_event_id)
        attributions = self.for_income(income_event_id)
        attributed = money_sum(a.amount for a in attributions)
        cap = income.attribution_cap
        return {
            "income_event_id": income.id,
            "amount": cap,
            "attributed_amount": attributed,
            "remaining_amount": money(cap - attributed),
            "attributed_percentage": percent(attributed, cap),
            "attributions": [
                {
                    "id": a.id,
                    "payment_id": a.payment_id,
                    "amount": money(a.amount),
                    "attribution_type": a.attribution_type.value,
                    "percentage": percent(a.amount, cap),
                }
                for a in attributions
            ],
        }


class BudgetService:
    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def get_category(self, category_id: int) -> BudgetCategory:
        category = self.session.get(BudgetCategory, category_id)
        if not category or category.family_id != self.family_id:
            raise NotFoundError("Budget category not found")
        return category

    def list_categories(self, include_inactive: bool = False) -> list[BudgetCategory]:
        stmt = select(BudgetCategory).where(BudgetCategory.family_id == self.family_id)
        if not include_inactive:
            stmt = stmt.where(BudgetCategory.is_active.is_(True))
        stmt = stmt.order_by(BudgetCategory.sort_order, BudgetCategory.name)
        return list(self.session.scalars(stmt).all())

    def _percentage_total(self, exclude_id: Optional[int] = None) -> Decimal:
        stmt = select(func.coalesce(func.sum(BudgetCategory.target_percentage), 0)).where(
            BudgetCategory.family_id == self.family_id,
            BudgetCategory.is_active.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(BudgetCategory.id != exclude_id)
        return money(self.session.execute(stmt).scalar_one() or 0)

    def _check_total(self, data: BudgetCategoryIn, exclude_id: Optional[int]) -> None:
        if not data.is_active:
            return
        total = self._percentage_total(exclude_id) + money(data.target_percentage)
        if total > 100:
            raise ValueError(f"Budget category percentages exceed 100% ({total}%)")

    def _check_name(self, name: str, exclude_id: Optional[int]) -> None:
        stmt = select(BudgetCategory.id).where(
            BudgetCategory.family_id == self.family_id,
            func.lower(BudgetCategory.name) == name.strip().lower(),
        )
        if exclude_id is not None:
            stmt = stmt.where(BudgetCategory.id != exclude_id)
        if self.session.execute(stmt.limit(1)).scalar_one_or_none():
            raise ValueError("Budget category name must be unique")

    def create_category(self, data: BudgetCategoryIn) -> BudgetCategory:
        self._check_name(data.name, None)
        self._check_total(data, None)
        category = BudgetCategory(
            family_id=self.family_id,
            name=data.name.strip(),
            target_percentage=money(data.target_percentage),
            sort_order=data.sort_order,
            is_active=data.is_active,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def update_category(self, category_id: int, data: BudgetCategoryIn) -> BudgetCategory:
        category = self.get_category(category_id)
        self._check_name(data.name, category.id)
        self._check_total(data, category.id)
        category.name = data.name.strip()
        category.target_percentage = money(data.target_percentage)
        category.sort_order = data.sort_order
        category.is_active = data.is_active
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete_category(self, category_id: int) -> None:
        category = self.get_category(category_id)
        self.session.delete(category)
        self.session.commit()

    def validate_percentages(self) -> dict[str, object]:
        total = self._percentage_total()
        return {
            "total_percentage": total,
            "remaining_percentage": money(Decimal("100") - total),
            "is_valid": total <= 100,
        }

    def allocations_for(self, income_event_id: int) -> list[BudgetAllocation]:
        IncomeService(self.session, self.family_id).get(income_event_id)
        stmt = (
            select(BudgetAllocation)
            .join(BudgetCategory, BudgetAllocation.budget_category_id == BudgetCategory.id)
            .where(BudgetAllocation.income_event_id == income_event_id)
            .order_by(BudgetCategory.sort_order, BudgetCategory.name)
        )
        return list(self.session.scalars(stmt).all())

    def generate_allocation(self, income_event_id: int) -> list[BudgetAllocation]:
        """Distribute an income event over the active budget categories.

        Each category receives its target percentage of the income. The
        allocated total is rounded once and split by percentage so the rows
        add up to it exactly.
        """
        income = IncomeService(self.session, self.family_id).get(income_event_id)
        if income.status == IncomeStatus.cancelled:
            raise ValueError("Cancelled income cannot be allocated")
        if self.allocations_for(income_event_id):
            raise ValueError("Budget allocation already exists for this income event")
        categories = self.list_categories()
        if not categories:
            raise ValueError("No active budget categories")

        base = (
            income.received_amount
            if income.status == IncomeStatus.received
            else money(income.amount)
        )
        percentages = [money(c.target_percentage) for c in categories]
        allocated_total = money(base * sum(percentages, Decimal("0")) / Decimal("100"))
        amounts = split(allocated_total, percentages)

        rows = []
        for category, pct, amount in zip(categories, percentages, amounts):
            row = BudgetAllocation(
                income_event_id=income.id,
                budget_category_id=category.id,
                amount=amount,
                percentage=pct,
            )
            self.session.add(row)
            rows.append(row)
        self.session.commit()
        return rows

    def delete_allocations(self, income_event_id: int) -> int:
        rows = self.allocations_for(income_event_id)
        for row in rows:
            self.session.delete(row)
        self.session.commit()
        return len(rows)


class ScheduledReportService:
    def __init__(self, session: Session, family_id: int) -> None:
        self.session = session
        self.family_id = family_id

    def get(self, report_id: int) -> ScheduledReport:
        report = self.session.get(ScheduledReport, report_id)
        if not report or report.family_id != self.family_id:
            raise NotFoundError("Scheduled report not found")
        return report

    def list(
        self,
        status: Optional[ScheduleStatus] = None,
        report_type: Optional[str] = None,
    ) -> list[ScheduledReport]:
        stmt = select(ScheduledReport).where(
            ScheduledReport.family_id == self.family_id
        )
        if status:
            stmt = stmt.where(ScheduledReport.status == status)
        if report_type:
            stmt = stmt.where(ScheduledReport.report_type == report_type)
        stmt = stmt.order_by(ScheduledReport.created_at.desc(), ScheduledReport.id.desc())
        return list(self.session.scalars(stmt).all())

    def create(
        self, data: ScheduledReportIn, now: Optional[datetime] = None
    ) -> ScheduledReport:
        settings = get_settings()
        delivery_day = data.delivery_day if data.delivery_day is not None else 1
        delivery_hour = (
            data.delivery_hour
            if data.delivery_hour is not None
            else settings.default_delivery_hour
        )
        timezone = data.timezone or settings.timezone
        validate_delivery_schedule(data.frequency, delivery_day, delivery_hour)
        resolve_timezone(timezone)

        reference = data.start_date or now or utcnow()
        first_run = next_occurrence(
            data.frequency, delivery_day, reference, timezone, delivery_hour
        )
        report = ScheduledReport(
            family_id=self.family_id,
            name=data.name,
            description=data.description,
            report_type=data.report_type,
            frequency=data.frequency,
            recipients=data.recipients,
            parameters=data.parameters.model_dump(mode="json", exclude_none=True),
            delivery_day=delivery_day,
            delivery_hour=delivery_hour,
            timezone=timezone,
            status=ScheduleStatus.active,
            next_execution=utc_naive(first_run),
        )
        self.session.add(report)
        self.session.commit()
        self.session.refresh(report)
        logger.info(
            f"scheduled_report_created: id={report.id} type={report.report_type.value} "
            f"frequency={report.frequency.value} next_execution={report.next_execution}"
        )
        return report

    def update(
        self,
        report_id: int,
        data: ScheduledReportUpdate,
        now: Optional[datetime] = None,
    ) -> ScheduledReport:
        report = self.get(report_id)
        changes = data.model_dump(exclude_unset=True)

        if data.name is not None:
            report.name = data.name
        if "description" in changes:
            report.description = data.description
        if data.recipients is not None:
            report.recipients = data.recipients
        if data.parameters is not None:
            report.parameters = data.parameters.model_dump(mode="json", exclude_none=True)

        schedule_fields = ("frequency", "delivery_day", "delivery_hour", "timezone")
        if any(changes.get(field) is not None for field in schedule_fields):
            frequency = data.frequency or report.frequency
            delivery_day = (
                data.delivery_day if data.delivery_day is not None else report.delivery_day
            )
            delivery_hour = (
                data.delivery_hour
                if data.delivery_hour is not None
                else report.delivery_hour
            )
            timezone = data.timezone or report.timezone
            validate_delivery_schedule(frequency, delivery_day, delivery_hour)
            next_run = next_occurrence(
                frequency, delivery_day, now or utcnow(), timezone, delivery_hour
            )
            report.frequency = frequency
            report.delivery_day = delivery_day
            report.delivery_hour = delivery_hour
            report.timezone = timezone
            report.next_execution = utc_naive(next_run)

        self.session.commit()
        self.session.refresh(report)
        return report

    def pause(self, report_id: int) -> ScheduledReport:
        report = self.get(report_id)
        if report.status == ScheduleStatus.completed:
            raise ValueError("Completed reports cannot be paused")
        report.status = ScheduleStatus.paused
        self.session.commit()
        self.session.refresh(report)
        return report

    def resume(self, report_id: int) -> ScheduledReport:
        report = self.get(report_id)
        if report.status not in (ScheduleStatus.paused, ScheduleStatus.error):
            raise ValueError("Only paused or failed reports can be resumed")
        previous = report.status
        report.status = ScheduleStatus.active
        report.claimed_at = None
        self.session.commit()
        self.session.refresh(report)
        logger.info(
            f"scheduled_report_resumed: id={report.id} from={previous.value} "
            f"next_execution={report.next_execution}"
        )
        return report

    def delete(self, report_id: int) -> None:
        report = self.get(report_id)
        self.session.delete(report)
        self.session.commit()

    def history(self, report_id: int, limit: int = 50) -> list[ScheduledReportExecution]:
        self.get(report_id)
        stmt = (
            select(ScheduledReportExecution)
            .where(ScheduledReportExecution.scheduled_report_id == report_id)
            .order_by(
                ScheduledReportExecution.executed_at.desc(),
                ScheduledReportExecution.id.desc(),
            )
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def last_error(self, report_id: int) -> Optional[str]:
        latest = self.history(report_id, limit=1)
        return latest[0].error if latest else None

    def run_now(self, report_id: int, executor, now: Optional[datetime] = None):
        report = self.get(report_id)
        return executor.execute(report.id, now=now, manual=True)
