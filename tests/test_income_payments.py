from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import NotFoundError, OverAllocation
from models import (
    EventFrequency,
    Family,
    IncomeEvent,
    IncomeStatus,
    Payment,
    PaymentStatus,
    PaymentType,
)
from schemas import (
    IncomeEventIn,
    IncomeEventUpdate,
    MarkPaidIn,
    MarkReceivedIn,
    PaymentIn,
    PaymentUpdate,
)
from services import AttributionService, IncomeService, PaymentService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_family(session):
    family = Family(name="Household")
    session.add(family)
    session.commit()
    session.refresh(family)
    return family


def test_recurring_income_sets_next_occurrence() -> None:
    session = make_session()
    family = make_family(session)
    incomes = IncomeService(session, family.id)

    salary = incomes.create(
        IncomeEventIn(
            name="Salary",
            source="Employer",
            amount=Decimal("3000.00"),
            scheduled_date=date(2026, 1, 31),
            frequency=EventFrequency.monthly,
        )
    )
    bonus = incomes.create(
        IncomeEventIn(
            name="Bonus", amount=Decimal("500.00"), scheduled_date=date(2026, 1, 31)
        )
    )

    assert salary.next_occurrence == date(2026, 2, 28)
    assert salary.status == IncomeStatus.scheduled
    assert bonus.next_occurrence is None


def test_mark_received_spawns_next_event_once() -> None:
    session = make_session()
    family = make_family(session)
    incomes = IncomeService(session, family.id)
    salary = incomes.create(
        IncomeEventIn(
            name="Salary",
            amount=Decimal("3000.00"),
            scheduled_date=date(2026, 1, 31),
            frequency=EventFrequency.monthly,
        )
    )

    received = incomes.mark_received(
        salary.id,
        MarkReceivedIn(actual_date=date(2026, 2, 2), actual_amount=Decimal("2950.00")),
    )
    assert received.status == IncomeStatus.received
    assert received.actual_amount == Decimal("2950.00")
    assert received.next_occurrence == date(2026, 2, 28)

    events = incomes.list()
    assert [e.scheduled_date for e in events] == [date(2026, 1, 31), date(2026, 2, 28)]
    spawned = events[1]
    assert spawned.status == IncomeStatus.scheduled
    assert spawned.amount == Decimal("3000.00")
    assert spawned.next_occurrence == date(2026, 3, 31)

    with pytest.raises(ValueError):
        incomes.mark_received(
            salary.id,
            MarkReceivedIn(actual_date=date(2026, 2, 2), actual_amount=Decimal("1")),
        )

    incomes.revert_received(salary.id)
    incomes.mark_received(
        salary.id,
        MarkReceivedIn(actual_date=date(2026, 2, 1), actual_amount=Decimal("3000.00")),
    )
    count = len(
        session.scalars(
            select(IncomeEvent).where(IncomeEvent.scheduled_date == date(2026, 2, 28))
        ).all()
    )
    assert count == 1


def test_revert_received_clears_actuals() -> None:
    session = make_session()
    family = make_family(session)
    incomes = IncomeService(session, family.id)
    event = incomes.create(
        IncomeEventIn(name="Gift", amount=Decimal("100.00"), scheduled_date=date(2026, 3, 1))
    )
    incomes.mark_received(
        event.id,
        MarkReceivedIn(actual_date=date(2026, 3, 2), actual_amount=Decimal("120.00")),
    )

    reverted = incomes.revert_received(event.id)
    assert reverted.status == IncomeStatus.scheduled
    assert reverted.actual_date is None
    assert reverted.actual_amount is None

    with pytest.raises(ValueError):
        incomes.revert_received(event.id)


def test_income_update_guards() -> None:
    session = make_session()
    family = make_family(session)
    incomes = IncomeService(session, family.id)
    payments = PaymentService(session, family.id)
    event = incomes.create(
        IncomeEventIn(name="Salary", amount=Decimal("1000.00"), scheduled_date=date(2026, 3, 1))
    )
    payment = payments.create(
        PaymentIn(payee="Rent", amount=Decimal("800.00"), due_date=date(2026, 3, 2))
    )
    AttributionService(session, family.id).attribute(
        payment.id, event.id, Decimal("700.00")
    )

    with pytest.raises(OverAllocation):
        incomes.update(event.id, IncomeEventUpdate(amount=Decimal("600.00")))

    updated = incomes.update(
        event.id,
        IncomeEventUpdate(scheduled_date=date(2026, 3, 5), frequency=EventFrequency.weekly),
    )
    assert updated.next_occurrence == date(2026, 3, 12)

    incomes.mark_received(
        event.id,
        MarkReceivedIn(actual_date=date(2026, 3, 5), actual_amount=Decimal("1000.00")),
    )
    with pytest.raises(ValueError):
        incomes.update(event.id, IncomeEventUpdate(name="Renamed"))


def test_income_upcoming_and_summary() -> None:
    session = make_session()
    family = make_family(session)
    incomes = IncomeService(session, family.id)
    soon = incomes.create(
        IncomeEventIn(name="Soon", amount=Decimal("100.00"), scheduled_date=date(2026, 3, 10))
    )
    incomes.create(
        IncomeEventIn(name="Later", amount=Decimal("200.00"), scheduled_date=date(2026, 6, 1))
    )
    received = incomes.create(
        IncomeEventIn(name="Done", amount=Decimal("50.00"), scheduled_date=date(2026, 3, 2))
    )
    incomes.mark_received(
        received.id,
        MarkReceivedIn(actual_date=date(2026, 3, 2), actual_amount=Decimal("55.00")),
    )

    upcoming = incomes.upcoming(days=30, today=date(2026, 3, 1))
    assert [e.id for e in upcoming] == [soon.id]

    summary = incomes.summary(date(2026, 3, 1), date(2026, 3, 31))
    assert summary["count"] == 2
    assert summary["expected_total"] == Decimal("150.00")
    assert summary["received_total"] == Decimal("55.00")
    assert summary["by_status"]["received"] == 1


def test_payment_status_is_derived_from_dates() -> None:
    session = make_session()
    family = make_family(session)
    payments = PaymentService(session, family.id)
    today = date(2026, 3, 15)

    late = payments.create(
        PaymentIn(payee="Water", amount=Decimal("40.00"), due_date=date(2026, 3, 1))
    )
    future = payments.create(
        PaymentIn(payee="Power", amount=Decimal("90.00"), due_date=date(2026, 3, 20))
    )
    settled = payments.create(
        PaymentIn(payee="Phone", amount=Decimal("30.00"), due_date=date(2026, 3, 2))
    )
    dropped = payments.create(
        PaymentIn(payee="Gym", amount=Decimal("25.00"), due_date=date(2026, 3, 3))
    )
    payments.mark_paid(settled.id, MarkPaidIn(paid_date=date(2026, 3, 2)))
    payments.cancel(dropped.id)

    assert late.status_on(today) == PaymentStatus.overdue
    assert future.status_on(today) == PaymentStatus.scheduled
    assert settled.status_on(today) == PaymentStatus.paid
    assert settled.paid_amount == Decimal("30.00")
    assert dropped.status_on(today) == PaymentStatus.cancelled

    assert [p.id for p in payments.overdue(today=today)] == [late.id]
    assert [p.id for p in payments.upcoming(days=10, today=today)] == [future.id]
    assert [
        p.id for p in payments.list(status=PaymentStatus.paid, today=today)
    ] == [settled.id]

    summary = payments.summary(date(2026, 3, 1), date(2026, 3, 31), today=today)
    assert summary["total_due"] == Decimal("160.00")
    assert summary["total_paid"] == Decimal("30.00")
    assert summary["overdue_total"] == Decimal("40.00")
    assert summary["by_status"] == {
        "scheduled": 1,
        "paid": 1,
        "overdue": 1,
        "cancelled": 1,
    }

    with pytest.raises(ValueError):
        payments.cancel(settled.id)
    with pytest.raises(ValueError):
        payments.mark_paid(dropped.id, MarkPaidIn(paid_date=today))


def test_recurring_payment_spawns_next_due() -> None:
    session = make_session()
    family = make_family(session)
    payments = PaymentService(session, family.id)
    insurance = payments.create(
        PaymentIn(
            payee="Insurance",
            amount=Decimal("240.00"),
            due_date=date(2026, 1, 15),
            payment_type=PaymentType.recurring,
            frequency=EventFrequency.quarterly,
        )
    )
    assert insurance.next_due_date == date(2026, 4, 15)

    payments.mark_paid(
        insurance.id,
        MarkPaidIn(paid_date=date(2026, 1, 14), paid_amount=Decimal("235.50")),
    )
    rows = session.scalars(select(Payment).order_by(Payment.due_date)).all()
    assert [p.due_date for p in rows] == [date(2026, 1, 15), date(2026, 4, 15)]
    assert rows[1].next_due_date == date(2026, 7, 15)
    assert rows[0].paid_amount == Decimal("235.50")

    payments.revert_paid(insurance.id)
    payments.mark_paid(insurance.id, MarkPaidIn(paid_date=date(2026, 1, 15)))
    assert len(session.scalars(select(Payment)).all()) == 2


MONTH_ENDS = [
    date(2026, 1, 31),
    date(2026, 2, 28),
    date(2026, 3, 31),
    date(2026, 4, 30),
    date(2026, 5, 31),
]


def test_monthly_income_keeps_month_end_anchor() -> None:
    session = make_session()
    family = make_family(session)
    incomes = IncomeService(session, family.id)
    current = incomes.create(
        IncomeEventIn(
            name="Salary",
            amount=Decimal("3000.00"),
            scheduled_date=date(2026, 1, 31),
            frequency=EventFrequency.monthly,
        )
    )
    assert current.anchor_day == 31

    for _ in range(4):
        received = incomes.mark_received(
            current.id,
            MarkReceivedIn(
                actual_date=current.scheduled_date, actual_amount=Decimal("3000.00")
            ),
        )
        current = incomes.list(status=IncomeStatus.scheduled)[-1]
        assert received.next_occurrence == current.scheduled_date
        assert current.anchor_day == 31

    assert [e.scheduled_date for e in incomes.list()] == MONTH_ENDS
    assert current.next_occurrence == date(2026, 6, 30)


def test_monthly_payment_keeps_month_end_anchor() -> None:
    session = make_session()
    family = make_family(session)
    payments = PaymentService(session, family.id)
    current = payments.create(
        PaymentIn(
            payee="Rent",
            amount=Decimal("900.00"),
            due_date=date(2026, 1, 31),
            payment_type=PaymentType.recurring,
            frequency=EventFrequency.monthly,
        )
    )

    for _ in range(4):
        payments.mark_paid(current.id, MarkPaidIn(paid_date=current.due_date))
        current = session.scalars(
            select(Payment)
            .where(Payment.paid_date.is_(None))
            .order_by(Payment.due_date.desc())
        ).first()

    rows = session.scalars(select(Payment).order_by(Payment.due_date)).all()
    assert [p.due_date for p in rows] == MONTH_ENDS
    assert all(p.anchor_day == 31 for p in rows)
    assert current.next_due_date == date(2026, 6, 30)


def test_rescheduling_income_moves_anchor() -> None:
    session = make_session()
    family = make_family(session)
    incomes = IncomeService(session, family.id)
    salary = incomes.create(
        IncomeEventIn(
            name="Salary",
            amount=Decimal("3000.00"),
            scheduled_date=date(2026, 1, 31),
            frequency=EventFrequency.monthly,
        )
    )

    moved = incomes.update(
        salary.id, IncomeEventUpdate(scheduled_date=date(2026, 1, 15))
    )
    assert moved.anchor_day == 15
    assert moved.next_occurrence == date(2026, 2, 15)


def test_recurring_payment_needs_repeating_frequency() -> None:
    with pytest.raises(ValidationError):
        PaymentIn(
            payee="Rent",
            amount=Decimal("800.00"),
            due_date=date(2026, 1, 1),
            payment_type=PaymentType.recurring,
        )


def test_payment_update_and_lookup() -> None:
    session = make_session()
    family = make_family(session)
    payments = PaymentService(session, family.id)
    payment = payments.create(
        PaymentIn(payee="Rent", amount=Decimal("800.00"), due_date=date(2026, 1, 1))
    )

    updated = payments.update(
        payment.id, PaymentUpdate(amount=Decimal("850.00"), notes="new lease")
    )
    assert updated.amount == Decimal("850.00")
    assert updated.notes == "new lease"

    payments.delete(payment.id)
    with pytest.raises(NotFoundError):
        payments.get(payment.id)
