"""
Expense ledger: transactional store of expenses and their splits.

Every write runs in a single transaction that covers the expense row, its
split rows and the budget spend. Store or conversion failures roll back the
whole write and surface as LedgerWriteFailed. Events are published only
after the transaction has committed.
"""
import logging
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from app.core.errors import (
    ConversionFailed, ExpenseNotFound, InvalidParticipants, InvalidSplitTransition,
    LedgerWriteFailed, SplitAccessDenied, SplitNotFound
)
from app.core.money import RATE_EXPONENT, Money, normalize_currency, to_decimal
from app.models.budget import BudgetAlert
from app.models.expense import Expense, ExpenseSplit, ExpenseStatus, SplitStatus
from app.schemas.expense import (
    CategoryBreakdownItem, ExpenseCreate, ExpenseFilters, ExpenseSummary, ExpenseUpdate,
    SplitPayment, UserBreakdownItem
)
from app.services.balance_aggregator import compute_balances
from app.services.budget_monitor import BudgetMonitor, category_key
from app.services.events import EventPublisher, EventType, LedgerEvent, publish_all
from app.services.fx_service import CurrencyConverter
from app.services.split_calculator import (
    SplitLine, compute_splits, convert_splits, dump_split, parse_split
)
from app.services.trip_directory import TripDirectory

logger = logging.getLogger(__name__)

# Fields an update may set to null; a null for any other field means "unchanged"
_NULLABLE_FIELDS = {
    "description", "category", "subcategory", "expense_time", "location", "ocr_data", "notes"
}
_PLAIN_FIELDS = (
    "title", "description", "subcategory", "tags", "expense_date", "expense_time",
    "location", "receipt_urls", "ocr_data", "notes", "verification_status"
)
_SPLIT_FIELDS = {"amount", "currency", "payer_id", "participants", "split"}

_SPLIT_TRANSITIONS = {
    SplitStatus.PENDING: {SplitStatus.ACKNOWLEDGED, SplitStatus.PAID},
    SplitStatus.ACKNOWLEDGED: {SplitStatus.PAID},
}

_SORT_ORDERS = {
    "date_desc": (Expense.expense_date.desc(), Expense.expense_time.desc(), Expense.id.desc()),
    "date_asc": (Expense.expense_date.asc(), Expense.expense_time.asc(), Expense.id.asc()),
    "amount_desc": (Expense.base_amount.desc(), Expense.id.desc()),
    "amount_asc": (Expense.base_amount.asc(), Expense.id.asc()),
}


class ExpenseLedger:
    """Records expenses, keeps their splits consistent and posts budget spend."""

    def __init__(
        self,
        session_factory: sessionmaker,
        directory: TripDirectory,
        converter: CurrencyConverter,
        budgets: BudgetMonitor,
        publisher: EventPublisher,
    ):
        self.session_factory = session_factory
        self.directory = directory
        self.converter = converter
        self.budgets = budgets
        self.publisher = publisher

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def post_expense(self, trip_id: int, data: ExpenseCreate, recorded_by: int) -> Expense:
        """
        Record a new expense with its splits and post its spend to the budgets.

        Raises:
            InvalidAmount, InvalidParticipants, SplitMismatchError,
            UnsupportedSplitPolicy, CurrencyMismatch: before anything is written
            LedgerWriteFailed: the transaction was rolled back
        """
        payer_id = recorded_by if data.payer_id is None else data.payer_id
        currency = normalize_currency(data.currency)
        members = set(self.directory.list_trip_members(trip_id))
        _check_members(members, payer_id, data.participants)
        lines = compute_splits(data.amount, currency, data.split, data.participants, payer_id)
        policy, params = dump_split(data.split)
        base_currency = self.directory.get_base_currency(trip_id)
        category = category_key(data.category) or None

        try:
            with self.session_factory.begin() as db:
                base, rate = self._freeze_rate(data.amount, currency, base_currency)
                base_amount = base.amount
                expense = Expense(
                    trip_id=trip_id,
                    recorded_by=recorded_by,
                    payer_id=payer_id,
                    title=data.title,
                    description=data.description,
                    amount=to_decimal(data.amount),
                    currency=currency,
                    base_amount=base_amount,
                    base_currency=base_currency,
                    exchange_rate=rate,
                    category=category,
                    subcategory=data.subcategory,
                    tags=list(data.tags),
                    expense_date=data.expense_date,
                    expense_time=data.expense_time,
                    location=data.location.model_dump() if data.location else None,
                    participants=list(data.participants),
                    split_policy=policy,
                    split_params=params,
                    receipt_urls=list(data.receipt_urls),
                    ocr_data=data.ocr_data,
                    status=ExpenseStatus.ACTIVE,
                    notes=data.notes
                )
                expense.splits = _build_splits(lines, payer_id, currency, rate, base, SplitStatus.PENDING)
                db.add(expense)
                db.flush()

                alerts = self.budgets.apply_spend(db, trip_id, category, base_amount)
                events = [_expense_event(EventType.EXPENSE_CREATED, expense)]
                events.extend(_alert_event(alert) for alert in alerts)
        except (SQLAlchemyError, ConversionFailed) as e:
            logger.exception(f"Failed to record expense for trip {trip_id}")
            raise LedgerWriteFailed(f"Failed to record expense: {e}", cause=e) from e

        logger.info(
            f"Expense {expense.id} recorded for trip {trip_id}: "
            f"{expense.amount} {currency} = {base_amount} {base_currency}"
        )
        publish_all(self.publisher, events)
        return expense

    def update_expense(self, expense_id: int, patch: ExpenseUpdate) -> Expense:
        """
        Apply a partial update.

        Splits are regenerated when the amount, currency, payer, participants
        or split change, or when the expense becomes active again. A currency
        change freezes a new rate; an amount-only change reuses the frozen
        rate. Budget spend follows the change in base amount, category and
        status.
        """
        current = self.get_expense(expense_id)
        members = set(self.directory.list_trip_members(current.trip_id))
        changes = {
            field: value
            for field, value in patch.model_dump(exclude_unset=True).items()
            if value is not None or field in _NULLABLE_FIELDS
        }
        if "split" in changes:
            # Keep the typed union; a dump without defaults drops its `policy` tag
            changes["split"] = patch.split

        try:
            with self.session_factory.begin() as db:
                expense = db.query(Expense).options(selectinload(Expense.splits)).filter(
                    Expense.id == expense_id
                ).with_for_update().first()
                if expense is None:
                    raise ExpenseNotFound(f"Expense {expense_id} not found")
                alerts = self._apply_changes(db, expense, changes, members)
                db.flush()
                events = [_expense_event(EventType.EXPENSE_UPDATED, expense, changed=sorted(changes))]
                events.extend(_alert_event(alert) for alert in alerts)
        except (SQLAlchemyError, ConversionFailed) as e:
            logger.exception(f"Failed to update expense {expense_id}")
            raise LedgerWriteFailed(f"Failed to update expense: {e}", cause=e) from e

        logger.info(f"Expense {expense_id} updated: {', '.join(sorted(changes)) or 'no changes'}")
        publish_all(self.publisher, events)
        return expense

    def _apply_changes(
        self,
        db: Session,
        expense: Expense,
        changes: Dict[str, Any],
        members: Set[int],
    ) -> List[BudgetAlert]:
        old_active = expense.is_active
        old_base = to_decimal(expense.base_amount)
        old_category = expense.category

        status = ExpenseStatus(changes.get("status", expense.status))
        new_active = status == ExpenseStatus.ACTIVE
        amount = to_decimal(changes.get("amount", expense.amount))
        currency = normalize_currency(changes.get("currency", expense.currency))
        payer_id = changes.get("payer_id", expense.payer_id)
        participants = list(changes.get("participants", expense.participants))
        if "split" in changes:
            split = changes["split"]
        else:
            split = parse_split(expense.split_policy, expense.split_params)

        resplit = bool(_SPLIT_FIELDS & set(changes))
        lines: Sequence[SplitLine] = ()
        if resplit or (new_active and not old_active):
            if {"payer_id", "participants"} & set(changes):
                _check_members(members, payer_id, participants)
            lines = compute_splits(amount, currency, split, participants, payer_id)

        # Base amount: new rate on currency change, frozen rate otherwise
        if currency != expense.currency:
            base, rate = self._freeze_rate(amount, currency, expense.base_currency)
            expense.exchange_rate = rate
        elif amount != to_decimal(expense.amount):
            base = Money(amount, currency).convert(to_decimal(expense.exchange_rate), expense.base_currency)
        else:
            base = Money(old_base, expense.base_currency)
        base_amount = base.amount

        for field in _PLAIN_FIELDS:
            if field in changes:
                setattr(expense, field, changes[field])
        if "category" in changes:
            expense.category = category_key(changes["category"]) or None
        policy, params = dump_split(split)
        expense.amount = amount
        expense.currency = currency
        expense.base_amount = base_amount
        expense.payer_id = payer_id
        expense.participants = participants
        expense.split_policy = policy
        expense.split_params = params
        expense.status = status

        if lines:
            expense.splits.clear()
            db.flush()
            expense.splits.extend(_build_splits(
                lines, payer_id, currency, to_decimal(expense.exchange_rate), base,
                SplitStatus.PENDING if new_active else SplitStatus.CANCELLED
            ))
        elif old_active and not new_active:
            for split_row in expense.splits:
                split_row.status = SplitStatus.CANCELLED

        return self._move_spend(
            db, expense.trip_id, old_active, old_category, old_base,
            new_active, expense.category, base_amount
        )

    def _move_spend(
        self,
        db: Session,
        trip_id: int,
        old_active: bool,
        old_category: Optional[str],
        old_base: Decimal,
        new_active: bool,
        new_category: Optional[str],
        new_base: Decimal,
    ) -> List[BudgetAlert]:
        posted_before = old_base if old_active else Decimal(0)
        posted_after = new_base if new_active else Decimal(0)

        if category_key(old_category) == category_key(new_category):
            return self.budgets.apply_spend(db, trip_id, new_category, posted_after - posted_before)

        alerts = self.budgets.apply_spend(db, trip_id, None, posted_after - posted_before)
        alerts += self.budgets.apply_spend(db, trip_id, old_category, -posted_before, include_trip_wide=False)
        alerts += self.budgets.apply_spend(db, trip_id, new_category, posted_after, include_trip_wide=False)
        return alerts

    def delete_expense(self, expense_id: int) -> None:
        """Hard delete; splits go with the expense and active spend is reversed."""
        try:
            with self.session_factory.begin() as db:
                expense = db.query(Expense).options(selectinload(Expense.splits)).filter(
                    Expense.id == expense_id
                ).with_for_update().first()
                if expense is None:
                    raise ExpenseNotFound(f"Expense {expense_id} not found")
                if expense.is_active:
                    self.budgets.apply_spend(db, expense.trip_id, expense.category, -to_decimal(expense.base_amount))
                event = _expense_event(EventType.EXPENSE_DELETED, expense)
                db.delete(expense)
        except SQLAlchemyError as e:
            logger.exception(f"Failed to delete expense {expense_id}")
            raise LedgerWriteFailed(f"Failed to delete expense: {e}", cause=e) from e

        logger.info(f"Expense {expense_id} deleted from trip {event.trip_id}")
        publish_all(self.publisher, [event])

    # ------------------------------------------------------------------
    # Split status
    # ------------------------------------------------------------------

    def acknowledge_split(self, split_id: int, user_id: int) -> ExpenseSplit:
        return self._transition_split(split_id, user_id, SplitStatus.ACKNOWLEDGED)

    def mark_split_paid(self, split_id: int, user_id: int, payment: Optional[SplitPayment] = None) -> ExpenseSplit:
        """
        Mark a split as paid. Informational only: balances move through
        recorded settlements, not split status.
        """
        return self._transition_split(split_id, user_id, SplitStatus.PAID, payment or SplitPayment())

    def _transition_split(
        self,
        split_id: int,
        user_id: int,
        target: SplitStatus,
        payment: Optional[SplitPayment] = None,
    ) -> ExpenseSplit:
        try:
            with self.session_factory.begin() as db:
                split = db.query(ExpenseSplit).filter(
                    ExpenseSplit.id == split_id
                ).with_for_update().first()
                if split is None:
                    raise SplitNotFound(f"Expense split {split_id} not found")
                if user_id not in (split.user_id, split.payer_id):
                    raise SplitAccessDenied("Only the participant or the payer can update this split")
                if target not in _SPLIT_TRANSITIONS.get(split.status, set()):
                    raise InvalidSplitTransition(
                        f"Cannot move split from {split.status.value} to {target.value}"
                    )

                split.status = target
                if target == SplitStatus.PAID:
                    split.paid_at = datetime.now(timezone.utc)
                    split.payment_method = payment.payment_method
                    split.payment_reference = payment.payment_reference
                    split.notes = payment.notes
                db.flush()
                event = LedgerEvent(
                    type=EventType.SPLIT_UPDATED,
                    trip_id=split.expense.trip_id,
                    payload={
                        "split_id": split.id,
                        "expense_id": split.expense_id,
                        "user_id": split.user_id,
                        "status": target.value,
                        "updated_by": user_id,
                    }
                )
        except SQLAlchemyError as e:
            logger.exception(f"Failed to update expense split {split_id}")
            raise LedgerWriteFailed(f"Failed to update split: {e}", cause=e) from e

        logger.info(f"Expense split {split_id} is now {target.value}")
        publish_all(self.publisher, [event])
        return split

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_expense(self, expense_id: int) -> Expense:
        with self.session_factory() as db:
            expense = db.query(Expense).options(selectinload(Expense.splits)).filter(
                Expense.id == expense_id
            ).first()
        if expense is None:
            raise ExpenseNotFound(f"Expense {expense_id} not found")
        return expense

    def get_split(self, split_id: int) -> ExpenseSplit:
        with self.session_factory() as db:
            split = db.query(ExpenseSplit).options(selectinload(ExpenseSplit.expense)).filter(
                ExpenseSplit.id == split_id
            ).first()
        if split is None:
            raise SplitNotFound(f"Expense split {split_id} not found")
        return split

    def list_expenses(self, trip_id: int, filters: Optional[ExpenseFilters] = None) -> Tuple[List[Expense], int]:
        """Expenses of a trip matching `filters`, plus the total match count."""
        filters = filters or ExpenseFilters()
        with self.session_factory() as db:
            query = db.query(Expense).options(selectinload(Expense.splits)).filter(
                Expense.trip_id == trip_id
            )
            if filters.category:
                query = query.filter(Expense.category == category_key(filters.category))
            if filters.date_from:
                query = query.filter(Expense.expense_date >= filters.date_from)
            if filters.date_to:
                query = query.filter(Expense.expense_date <= filters.date_to)
            if filters.payer_id is not None:
                query = query.filter(Expense.payer_id == filters.payer_id)
            if filters.participant_id is not None:
                query = query.filter(Expense.id.in_(
                    select(ExpenseSplit.expense_id).where(ExpenseSplit.user_id == filters.participant_id)
                ))
            if filters.status:
                query = query.filter(Expense.status == filters.status)
            query = query.order_by(*_SORT_ORDERS[filters.sort_by])

            if filters.tags:
                # Tags live in a JSON column; match in Python
                wanted = set(filters.tags)
                expenses = [e for e in query.all() if wanted & set(e.tags or [])]
                total = len(expenses)
                start = filters.offset or 0
                end = start + filters.limit if filters.limit else None
                return expenses[start:end], total

            total = query.count()
            if filters.offset:
                query = query.offset(filters.offset)
            if filters.limit:
                query = query.limit(filters.limit)
            return query.all(), total

    def list_splits(
        self,
        trip_id: int,
        user_id: Optional[int] = None,
        status: Optional[SplitStatus] = None,
    ) -> List[ExpenseSplit]:
        with self.session_factory() as db:
            query = db.query(ExpenseSplit).join(
                Expense, ExpenseSplit.expense_id == Expense.id
            ).filter(Expense.trip_id == trip_id)
            if user_id is not None:
                query = query.filter(ExpenseSplit.user_id == user_id)
            if status is not None:
                query = query.filter(ExpenseSplit.status == status)
            return query.order_by(ExpenseSplit.expense_id, ExpenseSplit.id).all()

    def expense_summary(self, trip_id: int) -> ExpenseSummary:
        """Totals, category breakdown and per-member paid/owed for active expenses."""
        members = self.directory.list_trip_members(trip_id)
        base_currency = self.directory.get_base_currency(trip_id)
        with self.session_factory() as db:
            expenses = db.query(Expense).filter(
                Expense.trip_id == trip_id,
                Expense.status == ExpenseStatus.ACTIVE
            ).all()
            balances = compute_balances(db, trip_id, members)

        by_category: Dict[str, List[Decimal]] = defaultdict(list)
        for expense in expenses:
            by_category[expense.category or "uncategorized"].append(to_decimal(expense.base_amount))
        category_breakdown = sorted(
            (
                CategoryBreakdownItem(category=name, amount=sum(amounts, Decimal(0)), count=len(amounts))
                for name, amounts in by_category.items()
            ),
            key=lambda item: (-item.amount, item.category)
        )

        return ExpenseSummary(
            trip_id=trip_id,
            total_expenses=len(expenses),
            total_amount=sum((to_decimal(e.base_amount) for e in expenses), Decimal(0)),
            currency=base_currency,
            category_breakdown=category_breakdown,
            user_breakdown=[
                UserBreakdownItem(
                    user_id=b.user_id,
                    paid=b.total_paid,
                    owes=b.total_owed,
                    balance=b.total_paid - b.total_owed
                )
                for b in balances
            ]
        )

    # ------------------------------------------------------------------

    def _freeze_rate(self, amount, currency: str, base_currency: str) -> Tuple[Money, Decimal]:
        """
        Look up the rate once and keep it at the precision it is stored with.

        The base amount is derived from the stored rate, so a later amount-only
        update reconverts to the same figure.
        """
        _, rate = self.converter.convert(to_decimal(amount), currency, base_currency)
        rate = to_decimal(rate).quantize(RATE_EXPONENT)
        return Money(to_decimal(amount), currency).convert(rate, base_currency), rate


def _check_members(members: Set[int], payer_id: int, participants: Iterable[int]) -> None:
    if payer_id not in members:
        raise InvalidParticipants(f"Payer {payer_id} is not a member of this trip")
    outsiders = sorted(set(participants) - members)
    if outsiders:
        raise InvalidParticipants(f"Participants are not members of this trip: {outsiders}")


def _build_splits(
    lines: Sequence[SplitLine],
    payer_id: int,
    currency: str,
    rate: Decimal,
    base: Money,
    status: SplitStatus,
) -> List[ExpenseSplit]:
    base_amounts = convert_splits(lines, currency, rate, base)
    return [
        ExpenseSplit(
            user_id=user_id,
            payer_id=payer_id,
            amount=line_amount,
            currency=currency,
            base_amount=line_base,
            base_currency=base.currency,
            status=status
        )
        for (user_id, line_amount), line_base in zip(lines, base_amounts)
    ]


def _expense_event(event_type: EventType, expense: Expense, **extra) -> LedgerEvent:
    payload = {
        "expense_id": expense.id,
        "payer_id": expense.payer_id,
        "amount": str(expense.amount),
        "currency": expense.currency,
        "base_amount": str(expense.base_amount),
        "status": ExpenseStatus(expense.status).value,
    }
    payload.update(extra)
    return LedgerEvent(type=event_type, trip_id=expense.trip_id, payload=payload)


def _alert_event(alert: BudgetAlert) -> LedgerEvent:
    return LedgerEvent(
        type=EventType.BUDGET_ALERT,
        trip_id=alert.trip_id,
        payload={
            "alert_id": alert.id,
            "budget_id": alert.budget_id,
            "level": alert.level.value,
            "ratio": str(alert.ratio),
            "message": alert.message,
        }
    )
