"""Models package - Import all models for SQLAlchemy registration."""
from app.models.trip import Trip, TripParticipant
from app.models.expense import (
    Expense, ExpenseSplit, ExpenseStatus, VerificationStatus, SplitPolicy, SplitStatus
)
from app.models.budget import Budget, BudgetAlert, BudgetState, TRIP_WIDE
from app.models.settlement import Settlement, SettlementStatus

__all__ = [
    "Trip",
    "TripParticipant",
    "Expense",
    "ExpenseSplit",
    "ExpenseStatus",
    "VerificationStatus",
    "SplitPolicy",
    "SplitStatus",
    "Budget",
    "BudgetAlert",
    "BudgetState",
    "TRIP_WIDE",
    "Settlement",
    "SettlementStatus",
]
