from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Family
from schemas import BudgetCategoryIn, IncomeEventIn, MarkReceivedIn
from services import BudgetService, IncomeService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def setup_budget(session, percentages):
    family = Family(name="Household")
    session.add(family)
    session.commit()
    session.refresh(family)
    budget = BudgetService(session, family.id)
    categories = [
        budget.create_category(
            BudgetCategoryIn(name=name, target_percentage=Decimal(pct), sort_order=order)
        )
        for order, (name, pct) in enumerate(percentages)
    ]
    return family, budget, categories


def test_category_percentages_cannot_exceed_100() -> None:
    session = make_session()
    _, budget, categories = setup_budget(
        session, [("Housing", "50"), ("Food", "30"), ("Savings", "20")]
    )
    assert budget.validate_percentages() == {
        "total_percentage": Decimal("100.00"),
        "remaining_percentage": Decimal("0.00"),
        "is_valid": True,
    }

    with pytest.raises(ValueError):
        budget.create_category(BudgetCategoryIn(name="Fun", target_percentage=Decimal("1")))

    inactive = budget.create_category(
        BudgetCategoryIn(name="Fun", target_percentage=Decimal("10"), is_active=False)
    )
    assert inactive.id not in [c.id for c in budget.list_categories()]

    updated = budget.update_category(
        categories[1].id, BudgetCategoryIn(name="Groceries", target_percentage=Decimal("25"))
    )
    assert updated.name == "Groceries"
    assert budget.validate_percentages()["remaining_percentage"] == Decimal("5.00")


def test_category_names_are_unique_per_family() -> None:
    session = make_session()
    _, budget, _ = setup_budget(session, [("Housing", "50")])
    with pytest.raises(ValueError):
        budget.create_category(BudgetCategoryIn(name="housing", target_percentage=Decimal("5")))


def test_generate_allocation_sums_exactly() -> None:
    session = make_session()
    family, budget, categories = setup_budget(
        session, [("Housing", "50"), ("Food", "30"), ("Savings", "20")]
    )
    income = IncomeService(session, family.id).create(
        IncomeEventIn(name="Salary", amount=Decimal("1234.57"), scheduled_date=date(2026, 1, 1))
    )

    rows = budget.generate_allocation(income.id)
    assert [r.budget_category_id for r in rows] == [c.id for c in categories]
    assert [r.amount for r in rows] == [
        Decimal("617.29"),
        Decimal("370.37"),
        Decimal("246.91"),
    ]
    assert sum((r.amount for r in rows), Decimal("0")) == Decimal("1234.57")

    with pytest.raises(ValueError):
        budget.generate_allocation(income.id)

    assert budget.delete_allocations(income.id) == 3
    assert budget.allocations_for(income.id) == []


def test_partial_budget_allocates_only_assigned_share() -> None:
    session = make_session()
    family, budget, _ = setup_budget(session, [("Housing", "50"), ("Food", "30")])
    incomes = IncomeService(session, family.id)
    income = incomes.create(
        IncomeEventIn(name="Salary", amount=Decimal("900.00"), scheduled_date=date(2026, 1, 1))
    )
    incomes.mark_received(
        income.id,
        MarkReceivedIn(actual_date=date(2026, 1, 1), actual_amount=Decimal("1000.00")),
    )

    rows = budget.generate_allocation(income.id)
    assert [r.amount for r in rows] == [Decimal("500.00"), Decimal("300.00")]
    assert [r.percentage for r in rows] == [Decimal("50.00"), Decimal("30.00")]


def test_generate_allocation_requires_categories_and_live_income() -> None:
    session = make_session()
    family = Family(name="Household")
    session.add(family)
    session.commit()
    incomes = IncomeService(session, family.id)
    budget = BudgetService(session, family.id)
    income = incomes.create(
        IncomeEventIn(name="Salary", amount=Decimal("900.00"), scheduled_date=date(2026, 1, 1))
    )

    with pytest.raises(ValueError):
        budget.generate_allocation(income.id)

    budget.create_category(BudgetCategoryIn(name="Housing", target_percentage=Decimal("50")))
    incomes.cancel(income.id)
    with pytest.raises(ValueError):
        budget.generate_allocation(income.id)
