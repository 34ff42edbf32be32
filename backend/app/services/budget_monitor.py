"""
Budget monitoring: spending ceilings per trip and per category.

Spend is posted with a single UPDATE ... SET spent_amount = spent_amount + :delta
so concurrent writers never lose an increment. Threshold crossings are
recorded as BudgetAlert rows in the same transaction.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.core.errors import (
    AlertNotFound, BudgetNotFound, ConversionFailed, InvalidBudget, InvalidThresholds,
    LedgerWriteFailed
)
from app.core.money import normalize_currency, to_decimal
from app.models.budget import TRIP_WIDE, Budget, BudgetAlert, BudgetState
from app.models.expense import Expense, ExpenseStatus
from app.services.fx_service import CurrencyConverter
from app.services.trip_directory import TripDirectory

logger = logging.getLogger(__name__)

_STATE_RANK = {BudgetState.OK: 0, BudgetState.WARNING: 1, BudgetState.CRITICAL: 2}


def category_key(category: Optional[str]) -> str:
    """Uniqueness key for a budget scope; '' is the trip-wide budget."""
    return (category or "").strip()


def evaluate_spend(spent, total, warning, critical) -> BudgetState:
    """Compare spent/total against the critical threshold first, then warning."""
    total = to_decimal(total)
    if total <= 0:
        return BudgetState.OK
    ratio = to_decimal(spent) / total
    if ratio >= to_decimal(critical):
        return BudgetState.CRITICAL
    if ratio >= to_decimal(warning):
        return BudgetState.WARNING
    return BudgetState.OK


class BudgetMonitor:
    """Trip-wide and per-category budgets with threshold alerts."""

    def __init__(
        self,
        session_factory: sessionmaker,
        directory: TripDirectory,
        converter: CurrencyConverter,
    ):
        self.session_factory = session_factory
        self.directory = directory
        self.converter = converter

    def evaluate(self, budget: Budget) -> BudgetState:
        return evaluate_spend(
            budget.spent_amount, budget.base_total,
            budget.warning_threshold, budget.critical_threshold
        )

    def apply_spend(
        self,
        db: Session,
        trip_id: int,
        category: Optional[str],
        base_delta: Decimal,
        include_trip_wide: bool = True,
    ) -> List[BudgetAlert]:
        """
        Add `base_delta` to the trip-wide budget and the budget of `category`.

        Runs inside the caller's transaction. Scopes without a budget are
        skipped. Returns the alerts recorded for budgets whose state rose.
        """
        base_delta = to_decimal(base_delta)
        if base_delta == 0:
            return []

        keys = {category_key(category)} - {TRIP_WIDE}
        if include_trip_wide:
            keys.add(TRIP_WIDE)
        if not keys:
            return []
        result = db.execute(
            update(Budget)
            .where(Budget.trip_id == trip_id, Budget.category_key.in_(keys))
            .values(spent_amount=Budget.spent_amount + base_delta)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return []

        budgets = db.query(Budget).filter(
            Budget.trip_id == trip_id,
            Budget.category_key.in_(keys)
        ).populate_existing().all()

        alerts = []
        for budget in budgets:
            new_state = self.evaluate(budget)
            old_state = evaluate_spend(
                budget.spent_amount - base_delta, budget.base_total,
                budget.warning_threshold, budget.critical_threshold
            )
            if _STATE_RANK[new_state] > _STATE_RANK[old_state]:
                alerts.append(self._record_alert(db, budget, new_state))
        return alerts

    def _record_alert(self, db: Session, budget: Budget, state: BudgetState) -> BudgetAlert:
        ratio = (to_decimal(budget.spent_amount) / to_decimal(budget.base_total)).quantize(Decimal("0.0001"))
        scope = f"'{budget.category}'" if budget.category else "Trip"
        message = (
            f"{scope} budget reached {ratio:.0%} "
            f"({budget.spent_amount} of {budget.base_total} {budget.base_currency})"
        )
        alert = BudgetAlert(
            budget_id=budget.id,
            trip_id=budget.trip_id,
            level=state,
            spent_amount=budget.spent_amount,
            ratio=ratio,
            message=message
        )
        db.add(alert)
        db.flush()
        logger.warning(f"Budget {budget.id} of trip {budget.trip_id} is {state.value}: {message}")
        return alert

    def set_budget(
        self,
        trip_id: int,
        category: Optional[str],
        total_amount,
        currency: str,
        created_by: int,
        warning_threshold=None,
        critical_threshold=None,
    ) -> Budget:
        """
        Create or update the budget for (trip, category).

        Updating keeps the accumulated spend. A new budget starts with the
        spend of the active expenses already recorded in its scope.
        """
        total_amount = to_decimal(total_amount)
        if total_amount <= 0:
            raise InvalidBudget(f"Budget total must be positive, got {total_amount}")
        currency = normalize_currency(currency)
        warning = to_decimal(settings.BUDGET_WARNING_THRESHOLD if warning_threshold is None else warning_threshold)
        critical = to_decimal(settings.BUDGET_CRITICAL_THRESHOLD if critical_threshold is None else critical_threshold)
        if not (0 <= warning <= 1 and 0 <= critical <= 1):
            raise InvalidThresholds("Thresholds must be between 0 and 1")
        if warning > critical:
            raise InvalidThresholds(
                f"Warning threshold {warning} is above critical threshold {critical}"
            )

        key = category_key(category)
        base_currency = self.directory.get_base_currency(trip_id)

        try:
            with self.session_factory.begin() as db:
                base_total, _ = self.converter.convert(total_amount, currency, base_currency)
                budget = db.query(Budget).filter(
                    Budget.trip_id == trip_id,
                    Budget.category_key == key
                ).with_for_update().first()

                created = budget is None
                if created:
                    budget = Budget(
                        trip_id=trip_id,
                        category=key or None,
                        category_key=key,
                        spent_amount=0,
                        created_by=created_by
                    )
                    db.add(budget)

                budget.total_amount = total_amount
                budget.currency = currency
                budget.base_total = base_total
                budget.base_currency = base_currency
                budget.warning_threshold = warning
                budget.critical_threshold = critical
                db.flush()
                if created:
                    self._init_spend(db, budget)
        except (SQLAlchemyError, ConversionFailed) as e:
            logger.exception(f"Failed to set budget for trip {trip_id}, category {key!r}")
            raise LedgerWriteFailed(f"Failed to set budget: {e}", cause=e) from e

        logger.info(f"Budget {budget.id} set for trip {trip_id}: {budget.base_total} {base_currency}")
        return budget

    def _init_spend(self, db: Session, budget: Budget) -> None:
        """
        Start a freshly inserted budget from the spend already posted in its scope.

        The row is inserted first and filled by one UPDATE whose subquery sums
        the expenses: a concurrently posted expense is counted exactly once,
        either in the sum or by its own increment of the new row.
        """
        posted = select(func.coalesce(func.sum(Expense.base_amount), 0)).where(
            Expense.trip_id == budget.trip_id,
            Expense.status == ExpenseStatus.ACTIVE
        )
        if budget.category_key != TRIP_WIDE:
            posted = posted.where(Expense.category == budget.category_key)
        db.execute(
            update(Budget)
            .where(Budget.id == budget.id)
            .values(spent_amount=posted.scalar_subquery())
            .execution_options(synchronize_session=False)
        )
        db.refresh(budget)

    def list_budgets(self, trip_id: int) -> List[Budget]:
        """Trip-wide budget first, then category budgets by name."""
        with self.session_factory() as db:
            return db.query(Budget).filter(
                Budget.trip_id == trip_id
            ).order_by(Budget.category_key).all()

    def get_budget(self, trip_id: int, category: Optional[str] = None) -> Budget:
        key = category_key(category)
        with self.session_factory() as db:
            budget = db.query(Budget).filter(
                Budget.trip_id == trip_id,
                Budget.category_key == key
            ).first()
        if budget is None:
            scope = f"category '{key}'" if key else "the trip"
            raise BudgetNotFound(f"No budget set for {scope}")
        return budget

    def list_alerts(self, trip_id: int, include_acknowledged: bool = False) -> List[BudgetAlert]:
        with self.session_factory() as db:
            query = db.query(BudgetAlert).filter(BudgetAlert.trip_id == trip_id)
            if not include_acknowledged:
                query = query.filter(BudgetAlert.is_acknowledged.is_(False))
            return query.order_by(BudgetAlert.id.desc()).all()

    def get_alert(self, alert_id: int) -> BudgetAlert:
        with self.session_factory() as db:
            alert = db.query(BudgetAlert).filter(BudgetAlert.id == alert_id).first()
        if alert is None:
            raise AlertNotFound(f"Budget alert {alert_id} not found")
        return alert

    def acknowledge_alert(self, alert_id: int, user_id: int, trip_id: Optional[int] = None) -> BudgetAlert:
        try:
            with self.session_factory.begin() as db:
                query = db.query(BudgetAlert).filter(BudgetAlert.id == alert_id)
                if trip_id is not None:
                    query = query.filter(BudgetAlert.trip_id == trip_id)
                alert = query.first()
                if alert is None:
                    raise AlertNotFound(f"Budget alert {alert_id} not found")
                if not alert.is_acknowledged:
                    alert.is_acknowledged = True
                    alert.acknowledged_by = user_id
                    alert.acknowledged_at = datetime.now(timezone.utc)
                    db.flush()
        except SQLAlchemyError as e:
            logger.exception(f"Failed to acknowledge budget alert {alert_id}")
            raise LedgerWriteFailed(f"Failed to acknowledge alert: {e}", cause=e) from e
        return alert
