"""
Per-member net balances derived from the ledger.

    net = paid - owed + settlements sent - settlements received

Positive means the member should receive money, negative means they owe.
Only active expenses and non-cancelled splits count; only completed
settlements count. Balances are computed on every read.
"""
from decimal import Decimal
from typing import Dict, Iterable, List

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from app.core.money import to_decimal
from app.models.expense import Expense, ExpenseSplit, ExpenseStatus, SplitStatus
from app.models.settlement import Settlement, SettlementStatus
from app.schemas.settlement import UserBalance
from app.services.trip_directory import TripDirectory


def compute_balances(db: Session, trip_id: int, members: Iterable[int] = ()) -> List[UserBalance]:
    """
    Balances for `members` plus anyone else who still appears in the ledger,
    ordered by user id.
    """
    paid = _totals(db.query(Expense.payer_id, func.sum(Expense.base_amount)).filter(
        Expense.trip_id == trip_id,
        Expense.status == ExpenseStatus.ACTIVE
    ).group_by(Expense.payer_id))

    owed = _totals(db.query(ExpenseSplit.user_id, func.sum(ExpenseSplit.base_amount)).join(
        Expense, ExpenseSplit.expense_id == Expense.id
    ).filter(
        Expense.trip_id == trip_id,
        Expense.status == ExpenseStatus.ACTIVE,
        ExpenseSplit.status != SplitStatus.CANCELLED
    ).group_by(ExpenseSplit.user_id))

    completed = db.query(Settlement).filter(
        Settlement.trip_id == trip_id,
        Settlement.status == SettlementStatus.COMPLETED
    )
    sent = _totals(completed.with_entities(
        Settlement.from_user_id, func.sum(Settlement.base_amount)
    ).group_by(Settlement.from_user_id))
    received = _totals(completed.with_entities(
        Settlement.to_user_id, func.sum(Settlement.base_amount)
    ).group_by(Settlement.to_user_id))

    user_ids = set(members) | set(paid) | set(owed) | set(sent) | set(received)
    balances = []
    for user_id in sorted(user_ids):
        balance = UserBalance(
            user_id=user_id,
            total_paid=paid.get(user_id, Decimal(0)),
            total_owed=owed.get(user_id, Decimal(0)),
            settlements_sent=sent.get(user_id, Decimal(0)),
            settlements_received=received.get(user_id, Decimal(0)),
        )
        balance.net_balance = (
            balance.total_paid - balance.total_owed
            + balance.settlements_sent - balance.settlements_received
        )
        balances.append(balance)
    return balances


def _totals(query) -> Dict[int, Decimal]:
    return {user_id: to_decimal(total or 0) for user_id, total in query.all()}


class BalanceAggregator:
    """Read-only view of member balances for a trip."""

    def __init__(self, session_factory: sessionmaker, directory: TripDirectory):
        self.session_factory = session_factory
        self.directory = directory

    def compute_balances(self, trip_id: int) -> List[UserBalance]:
        members = self.directory.list_trip_members(trip_id)
        with self.session_factory() as db:
            return compute_balances(db, trip_id, members)

    def net_balances(self, trip_id: int) -> Dict[int, Decimal]:
        return {b.user_id: b.net_balance for b in self.compute_balances(trip_id)}
