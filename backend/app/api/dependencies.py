"""
FastAPI dependencies: current user, trip access and service wiring.

Services are built per request from the session factory and collaborators
below; tests replace any of them through app.dependency_overrides.
"""
from functools import lru_cache

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import sessionmaker

from app.core.security import decode_access_token
from app.db.session import SessionLocal
from app.services.balance_aggregator import BalanceAggregator
from app.services.budget_monitor import BudgetMonitor
from app.services.events import EventPublisher, LoggingEventPublisher
from app.services.expense_ledger import ExpenseLedger
from app.services.fx_service import CurrencyConverter, ExchangeRateApiConverter
from app.services.settlement_service import SettlementService
from app.services.trip_directory import SqlTripDirectory, TripDirectory

bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)
) -> int:
    """Resolve the user id from the bearer token's `sub` claim."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise credentials_exception
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        raise credentials_exception


def get_session_factory() -> sessionmaker:
    return SessionLocal


def get_trip_directory(
    session_factory: sessionmaker = Depends(get_session_factory)
) -> TripDirectory:
    return SqlTripDirectory(session_factory)


@lru_cache()
def _exchange_rate_converter() -> ExchangeRateApiConverter:
    # One instance per process so the rate cache is shared
    return ExchangeRateApiConverter()


def get_converter() -> CurrencyConverter:
    return _exchange_rate_converter()


def get_publisher() -> EventPublisher:
    return LoggingEventPublisher()


def get_budget_monitor(
    session_factory: sessionmaker = Depends(get_session_factory),
    directory: TripDirectory = Depends(get_trip_directory),
    converter: CurrencyConverter = Depends(get_converter),
) -> BudgetMonitor:
    return BudgetMonitor(session_factory, directory, converter)


def get_expense_ledger(
    session_factory: sessionmaker = Depends(get_session_factory),
    directory: TripDirectory = Depends(get_trip_directory),
    converter: CurrencyConverter = Depends(get_converter),
    budgets: BudgetMonitor = Depends(get_budget_monitor),
    publisher: EventPublisher = Depends(get_publisher),
) -> ExpenseLedger:
    return ExpenseLedger(session_factory, directory, converter, budgets, publisher)


def get_balance_aggregator(
    session_factory: sessionmaker = Depends(get_session_factory),
    directory: TripDirectory = Depends(get_trip_directory),
) -> BalanceAggregator:
    return BalanceAggregator(session_factory, directory)


def get_settlement_service(
    session_factory: sessionmaker = Depends(get_session_factory),
    directory: TripDirectory = Depends(get_trip_directory),
    converter: CurrencyConverter = Depends(get_converter),
    balances: BalanceAggregator = Depends(get_balance_aggregator),
    publisher: EventPublisher = Depends(get_publisher),
) -> SettlementService:
    return SettlementService(session_factory, directory, converter, balances, publisher)


def check_trip_access(trip_id: int, user_id: int, directory: TripDirectory) -> None:
    """Raise 403 unless the user is a member of the trip."""
    if not directory.is_trip_member(trip_id, user_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied to this trip"
        )
