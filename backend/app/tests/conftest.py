"""
Shared fixtures: an in-memory SQLite ledger with one seeded trip.
"""
from decimal import Decimal

import pytest
from sqlalchemy.pool import StaticPool

from app.db.session import build_engine, build_session_factory, init_db
from app.services.balance_aggregator import BalanceAggregator
from app.services.budget_monitor import BudgetMonitor
from app.services.expense_ledger import ExpenseLedger
from app.services.settlement_service import SettlementService
from app.services.trip_directory import SqlTripDirectory
from app.tests.helpers import FakeConverter, RecordingPublisher, seed_trip


@pytest.fixture
def engine():
    engine = build_engine("sqlite://", echo=False, poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = build_session_factory(engine)
    seed_trip(factory)
    return factory


@pytest.fixture
def directory(session_factory):
    return SqlTripDirectory(session_factory)


@pytest.fixture
def converter():
    return FakeConverter({
        ("EUR", "USD"): Decimal("1.10"),
        ("KRW", "USD"): Decimal("0.00075"),
    })


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def budgets(session_factory, directory, converter):
    return BudgetMonitor(session_factory, directory, converter)


@pytest.fixture
def ledger(session_factory, directory, converter, budgets, publisher):
    return ExpenseLedger(session_factory, directory, converter, budgets, publisher)


@pytest.fixture
def aggregator(session_factory, directory):
    return BalanceAggregator(session_factory, directory)


@pytest.fixture
def settlements(session_factory, directory, converter, aggregator, publisher):
    return SettlementService(session_factory, directory, converter, aggregator, publisher)
