from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import sessionmaker

from database import Base
from errors import InvalidAmount, NotFoundError, OverAllocation
from models import AttributionType, EventFrequency, Family, Payment
from schemas import IncomeEventIn, MarkPaidIn, MarkReceivedIn, PaymentIn
from services import (
    AttributionService,
    IncomeService,
    PaymentService,
    income_attributed_total,
    lock_row,
    payment_attributed_total,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_family(session, name="Household"):
    family = Family(name=name)
    session.add(family)
    session.commit()
    session.refresh(family)
    return family


def add_income(session, family_id, amount, scheduled, name="Salary"):
    return IncomeService(session, family_id).create(
        IncomeEventIn(
            name=name,
            amount=Decimal(amount),
            scheduled_date=scheduled,
            frequency=EventFrequency.one_time,
        )
    )


def add_payment(session, family_id, amount, due, payee="Rent"):
    return PaymentService(session, family_id).create(
        PaymentIn(payee=payee, amount=Decimal(amount), due_date=due)
    )


def test_attribution_respects_payment_amount() -> None:
    session = make_session()
    family = make_family(session)
    income = add_income(session, family.id, "1000.00", date(2026, 1, 1))
    payment = add_payment(session, family.id, "600.00", date(2026, 1, 3))
    ledger = AttributionService(session, family.id)

    ledger.attribute(payment.id, income.id, Decimal("400.00"))
    assert payment.remaining_amount == Decimal("200.00")
    assert income.remaining_amount == Decimal("600.00")

    with pytest.raises(OverAllocation):
        ledger.attribute(payment.id, income.id, Decimal("250.00"))

    ledger.attribute(payment.id, income.id, Decimal("200.00"))
    assert payment_attributed_total(session, payment.id) == Decimal("600.00")
    assert payment.remaining_amount == Decimal("0.00")


def test_attribution_respects_income_amount() -> None:
    session = make_session()
    family = make_family(session)
    income = add_income(session, family.id, "300.00", date(2026, 1, 1))
    first = add_payment(session, family.id, "1000.00", date(2026, 1, 3))
    second = add_payment(session, family.id, "50.00", date(2026, 1, 4), payee="Phone")
    ledger = AttributionService(session, family.id)

    ledger.attribute(first.id, income.id, Decimal("300.00"))
    with pytest.raises(OverAllocation):
        ledger.attribute(second.id, income.id, Decimal("0.01"))
    assert income_attributed_total(session, income.id) == Decimal("300.00")


def test_received_amount_caps_attributions() -> None:
    session = make_session()
    family = make_family(session)
    income = add_income(session, family.id, "1000.00", date(2026, 1, 1))
    payment = add_payment(session, family.id, "900.00", date(2026, 1, 3))
    ledger = AttributionService(session, family.id)
    incomes = IncomeService(session, family.id)

    ledger.attribute(payment.id, income.id, Decimal("300.00"))
    with pytest.raises(OverAllocation):
        incomes.mark_received(
            income.id,
            MarkReceivedIn(actual_date=date(2026, 1, 2), actual_amount=Decimal("250.00")),
        )

    incomes.mark_received(
        income.id,
        MarkReceivedIn(actual_date=date(2026, 1, 2), actual_amount=Decimal("500.00")),
    )
    ledger.attribute(payment.id, income.id, Decimal("200.00"))
    with pytest.raises(OverAllocation):
        ledger.attribute(payment.id, income.id, Decimal("0.01"))


@pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00"), Decimal("0.004")])
def test_non_positive_amount_is_rejected(amount) -> None:
    session = make_session()
    family = make_family(session)
    income = add_income(session, family.id, "100.00", date(2026, 1, 1))
    payment = add_payment(session, family.id, "100.00", date(2026, 1, 1))

    with pytest.raises(InvalidAmount):
        AttributionService(session, family.id).attribute(payment.id, income.id, amount)


def test_delete_attribution_restores_remaining_amount() -> None:
    session = make_session()
    family = make_family(session)
    income = add_income(session, family.id, "1000.00", date(2026, 1, 1))
    payment = add_payment(session, family.id, "600.00", date(2026, 1, 3))
    ledger = AttributionService(session, family.id)

    attribution = ledger.attribute(payment.id, income.id, Decimal("600.00"))
    assert payment.remaining_amount == Decimal("0.00")

    ledger.delete_attribution(attribution.id)
    assert payment.remaining_amount == Decimal("600.00")
    assert income.remaining_amount == Decimal("1000.00")
    assert ledger.for_payment(payment.id) == []

    with pytest.raises(NotFoundError):
        ledger.delete_attribution(attribution.id)


def test_cancelled_parents_cannot_be_attributed() -> None:
    session = make_session()
    family = make_family(session)
    income = add_income(session, family.id, "1000.00", date(2026, 1, 1))
    payment = add_payment(session, family.id, "100.00", date(2026, 1, 3))
    ledger = AttributionService(session, family.id)

    PaymentService(session, family.id).cancel(payment.id)
    with pytest.raises(ValueError):
        ledger.attribute(payment.id, income.id, Decimal("10.00"))

    other = add_payment(session, family.id, "100.00", date(2026, 1, 3), payee="Gym")
    IncomeService(session, family.id).cancel(income.id)
    with pytest.raises(ValueError):
        ledger.attribute(other.id, income.id, Decimal("10.00"))


def test_income_with_attributions_cannot_be_cancelled() -> None:
    session = make_session()
    family = make_family(session)
    income = add_income(session, family.id, "1000.00", date(2026, 1, 1))
    payment = add_payment(session, family.id, "100.00", date(2026, 1, 3))
    AttributionService(session, family.id).attribute(payment.id, income.id, Decimal("100"))

    with pytest.raises(ValueError):
        IncomeService(session, family.id).cancel(income.id)


def test_deleting_payment_removes_its_attributions() -> None:
    session = make_session()
    family = make_family(session)
    income = add_income(session, family.id, "1000.00", date(2026, 1, 1))
    payment = add_payment(session, family.id, "100.00", date(2026, 1, 3))
    AttributionService(session, family.id).attribute(payment.id, income.id, Decimal("100"))

    PaymentService(session, family.id).delete(payment.id)
    assert income_attributed_total(session, income.id) == Decimal("0.00")


def test_split_payment_evenly() -> None:
    session = make_session()
    family = make_family(session)
    incomes = [
        add_income(session, family.id, "1000.00", date(2026, 1, day), name=f"Job {day}")
        for day in (1, 2, 3)
    ]
    payment = add_payment(session, family.id, "10.00", date(2026, 1, 5))

    created = AttributionService(session, family.id).split_payment(
        payment.id, [i.id for i in incomes]
    )
    assert [a.amount for a in created] == [
        Decimal("3.34"),
        Decimal("3.33"),
        Decimal("3.33"),
    ]
    assert [a.income_event_id for a in created] == [i.id for i in incomes]
    assert payment_attributed_total(session, payment.id) == Decimal("10.00")


def test_split_payment_by_weight_skips_zero_parts() -> None:
    session = make_session()
    family = make_family(session)
    first = add_income(session, family.id, "1000.00", date(2026, 1, 1), name="A")
    second = add_income(session, family.id, "1000.00", date(2026, 1, 2), name="B")
    third = add_income(session, family.id, "1000.00", date(2026, 1, 3), name="C")
    payment = add_payment(session, family.id, "100.00", date(2026, 1, 5))

    created = AttributionService(session, family.id).split_payment(
        payment.id,
        [first.id, second.id, third.id],
        [Decimal("3"), Decimal("1"), Decimal("0")],
    )
    assert [(a.income_event_id, a.amount) for a in created] == [
        (first.id, Decimal("75.00")),
        (second.id, Decimal("25.00")),
    ]


def test_split_payment_is_all_or_nothing() -> None:
    session = make_session()
    family = make_family(session)
    roomy = add_income(session, family.id, "1000.00", date(2026, 1, 1), name="A")
    small = add_income(session, family.id, "10.00", date(2026, 1, 2), name="B")
    payment = add_payment(session, family.id, "100.00", date(2026, 1, 5))
    ledger = AttributionService(session, family.id)

    with pytest.raises(OverAllocation):
        ledger.split_payment(payment.id, [roomy.id, small.id])
    assert payment_attributed_total(session, payment.id) == Decimal("0.00")

    ledger.split_payment(payment.id, [roomy.id])
    with pytest.raises(ValueError):
        ledger.split_payment(payment.id, [roomy.id])


def test_auto_attribute_picks_closest_income_with_room() -> None:
    session = make_session()
    family = make_family(session)
    early = add_income(session, family.id, "1000.00", date(2026, 1, 8), name="Early")
    late = add_income(session, family.id, "600.00", date(2026, 1, 25), name="Late")
    rent = add_payment(session, family.id, "500.00", date(2026, 1, 10))
    car = add_payment(session, family.id, "800.00", date(2026, 1, 20), payee="Car")
    loan = add_payment(session, family.id, "600.00", date(2026, 1, 24), payee="Loan")
    paid = add_payment(session, family.id, "20.00", date(2026, 1, 9), payee="Paid")
    PaymentService(session, family.id).mark_paid(
        paid.id, MarkPaidIn(paid_date=date(2026, 1, 9))
    )

    ledger = AttributionService(session, family.id)
    created = ledger.auto_attribute(window_days=7)

    matched = {a.payment_id: a.income_event_id for a in created}
    assert matched == {rent.id: early.id, loan.id: late.id}
    assert all(a.attribution_type == AttributionType.automatic for a in created)
    assert car.id not in matched

    assert ledger.auto_attribute(window_days=7) == []


def test_payment_summary_percentages() -> None:
    session = make_session()
    family = make_family(session)
    income = add_income(session, family.id, "1000.00", date(2026, 1, 1))
    payment = add_payment(session, family.id, "200.00", date(2026, 1, 3))
    ledger = AttributionService(session, family.id)
    ledger.attribute(payment.id, income.id, Decimal("50.00"))

    summary = ledger.payment_summary(payment.id)
    assert summary["attributed_amount"] == Decimal("50.00")
    assert summary["remaining_amount"] == Decimal("150.00")
    assert summary["attributed_percentage"] == Decimal("25.00")

    income_summary = ledger.income_summary(income.id)
    assert income_summary["attributed_percentage"] == Decimal("5.00")


def test_other_family_cannot_see_records() -> None:
    session = make_session()
    family = make_family(session)
    other = make_family(session, name="Neighbours")
    income = add_income(session, family.id, "1000.00", date(2026, 1, 1))
    payment = add_payment(session, family.id, "100.00", date(2026, 1, 3))

    with pytest.raises(NotFoundError):
        AttributionService(session, other.id).attribute(
            payment.id, income.id, Decimal("10.00")
        )


def test_suggest_attributions_ranks_by_confidence() -> None:
    session = make_session()
    family = make_family(session)
    ledger = AttributionService(session, family.id)
    spent = add_income(session, family.id, "200.00", date(2026, 1, 2), name="Refund")
    small = add_income(session, family.id, "100.00", date(2026, 1, 5), name="Gift")
    partial = add_income(session, family.id, "400.00", date(2026, 1, 10), name="Side job")
    salary = add_income(session, family.id, "1000.00", date(2026, 1, 15))
    late = add_income(session, family.id, "2000.00", date(2026, 1, 25), name="Bonus")
    other = add_payment(session, family.id, "200.00", date(2026, 1, 3), payee="Phone")
    ledger.attribute(other.id, spent.id, Decimal("200.00"))
    payment = add_payment(session, family.id, "600.00", date(2026, 1, 20))

    suggestions = ledger.suggest_attributions(payment.id)

    assert [(s["income_event_id"], s["confidence"]) for s in suggestions] == [
        (salary.id, "high"),
        (partial.id, "medium"),
        (late.id, "medium"),
        (small.id, "low"),
    ]
    assert [s["suggested_amount"] for s in suggestions] == [
        Decimal("600.00"),
        Decimal("400.00"),
        Decimal("600.00"),
        Decimal("100.00"),
    ]
    assert len(ledger.suggest_attributions(payment.id, limit=2)) == 2

    ledger.attribute(payment.id, salary.id, Decimal("600.00"))
    assert ledger.suggest_attributions(payment.id) == []


def test_validate_capacity_is_a_dry_run() -> None:
    session = make_session()
    family = make_family(session)
    ledger = AttributionService(session, family.id)
    salary = add_income(session, family.id, "500.00", date(2026, 1, 1))
    bonus = add_income(session, family.id, "300.00", date(2026, 1, 2), name="Bonus")
    payment = add_payment(session, family.id, "600.00", date(2026, 1, 3))
    ledger.attribute(payment.id, salary.id, Decimal("100.00"))

    ok = ledger.validate_capacity(
        payment.id, [(salary.id, Decimal("300.00")), (bonus.id, Decimal("200.00"))]
    )
    assert ok["is_valid"] is True
    assert ok["errors"] == []
    assert ok["total_proposed"] == Decimal("500.00")
    assert ok["remaining_amount"] == Decimal("500.00")

    twice = ledger.validate_capacity(
        payment.id, [(salary.id, Decimal("300.00")), (salary.id, Decimal("200.00"))]
    )
    assert twice["is_valid"] is False
    assert twice["errors"] == ["Amount 200.00 exceeds available income for Salary"]

    bad = ledger.validate_capacity(
        payment.id,
        [(bonus.id, Decimal("600.00")), (9999, Decimal("10.00")), (bonus.id, Decimal("0"))],
    )
    assert bad["is_valid"] is False
    assert bad["errors"] == [
        "Total attributions exceed payment amount",
        "Amount 600.00 exceeds available income for Bonus",
        "Income event not found: 9999",
        "Attribution amounts must be positive",
    ]
    assert payment_attributed_total(session, payment.id) == Decimal("100.00")

    with pytest.raises(NotFoundError):
        ledger.validate_capacity(9999, [(salary.id, Decimal("1.00"))])


def test_parent_rows_are_locked_before_the_cap_check() -> None:
    pg_sql = str(lock_row(Payment, 5).compile(dialect=postgresql.dialect()))
    assert pg_sql.endswith("FOR UPDATE")
    assert "FOR UPDATE" not in str(lock_row(Payment, 5).compile(dialect=sqlite.dialect()))

    session = make_session()
    family = make_family(session)
    income = add_income(session, family.id, "1000.00", date(2026, 1, 1))
    payment = add_payment(session, family.id, "600.00", date(2026, 1, 3))
    statements = []

    @event.listens_for(session.get_bind(), "before_cursor_execute")
    def record(conn, cursor, statement, parameters, context, executemany):
        statements.append(" ".join(statement.split()))

    AttributionService(session, family.id).attribute(
        payment.id, income.id, Decimal("100.00")
    )

    lock_payment = statements.index(
        "SELECT payments.id FROM payments WHERE payments.id = ?"
    )
    lock_income = statements.index(
        "SELECT income_events.id FROM income_events WHERE income_events.id = ?"
    )
    insert = next(
        i for i, s in enumerate(statements) if s.startswith("INSERT INTO attributions")
    )
    assert lock_payment < lock_income < insert
