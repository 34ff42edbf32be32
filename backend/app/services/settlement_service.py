"""
Settlement service: minimal transfer plans and recorded payments.
"""
import heapq
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.core.errors import (
    ConversionFailed, InvalidAmount, InvalidParticipants, InvalidSettlement,
    LedgerWriteFailed, SettlementNotFound
)
from app.core.money import RATE_EXPONENT, Money, normalize_currency, to_decimal
from app.models.settlement import Settlement, SettlementStatus
from app.schemas.settlement import SettlementCreate, SettlementPlan, Transfer
from app.services.balance_aggregator import BalanceAggregator
from app.services.events import EventPublisher, EventType, LedgerEvent, publish_all
from app.services.fx_service import CurrencyConverter
from app.services.trip_directory import TripDirectory

logger = logging.getLogger(__name__)


def plan_settlement(balances: Mapping[int, Decimal], tolerance: Optional[Decimal] = None) -> List[Transfer]:
    """
    Minimize the number of transfers needed to settle debts.

    Greedy: the largest debtor pays the largest creditor as much as either
    side allows, repeated until nothing above `tolerance` is left. Equal
    amounts are taken in user id order. Assumes any member can pay any other
    member directly, which bounds the plan to n-1 transfers.
    """
    tolerance = to_decimal(settings.SETTLEMENT_TOLERANCE if tolerance is None else tolerance)

    # Heaps of (-outstanding, user_id) so the largest amount pops first
    creditors = [(-to_decimal(bal), uid) for uid, bal in balances.items() if bal > tolerance]
    debtors = [(to_decimal(bal), uid) for uid, bal in balances.items() if bal < -tolerance]
    if len(creditors) + len(debtors) < 2:
        return []
    heapq.heapify(creditors)
    heapq.heapify(debtors)

    transfers = []
    while creditors and debtors:
        neg_credit, creditor_id = heapq.heappop(creditors)
        neg_debt, debtor_id = heapq.heappop(debtors)
        credit, debt = -neg_credit, -neg_debt

        amount = min(credit, debt)
        transfers.append(Transfer(from_user_id=debtor_id, to_user_id=creditor_id, amount=amount))

        if credit - amount > tolerance:
            heapq.heappush(creditors, (amount - credit, creditor_id))
        if debt - amount > tolerance:
            heapq.heappush(debtors, (amount - debt, debtor_id))

    return transfers


class SettlementService:
    """Records payments between members and suggests how to settle up."""

    def __init__(
        self,
        session_factory: sessionmaker,
        directory: TripDirectory,
        converter: CurrencyConverter,
        balances: BalanceAggregator,
        publisher: EventPublisher,
    ):
        self.session_factory = session_factory
        self.directory = directory
        self.converter = converter
        self.balances = balances
        self.publisher = publisher

    def suggest(self, trip_id: int) -> SettlementPlan:
        """Current balances plus the transfers that would settle them."""
        balances = self.balances.compute_balances(trip_id)
        transfers = plan_settlement({b.user_id: b.net_balance for b in balances})
        return SettlementPlan(
            trip_id=trip_id,
            base_currency=self.directory.get_base_currency(trip_id),
            balances=balances,
            transfers=transfers
        )

    def record_settlement(self, trip_id: int, data: SettlementCreate, recorded_by: int) -> Settlement:
        """
        Record a completed payment from one member to another.

        Raises:
            InvalidSettlement: payer and receiver are the same user
            InvalidAmount: amount <= 0
            InvalidParticipants: either side is not a trip member
            LedgerWriteFailed: the transaction was rolled back
        """
        if data.from_user_id == data.to_user_id:
            raise InvalidSettlement("A settlement needs two different users")
        currency = normalize_currency(data.currency)
        amount = Money.of(data.amount, currency)
        if amount.amount <= 0:
            raise InvalidAmount(f"Settlement amount must be positive, got {data.amount}")
        members = set(self.directory.list_trip_members(trip_id))
        outsiders = sorted({data.from_user_id, data.to_user_id} - members)
        if outsiders:
            raise InvalidParticipants(f"Users are not members of this trip: {outsiders}")
        base_currency = self.directory.get_base_currency(trip_id)

        try:
            with self.session_factory.begin() as db:
                _, rate = self.converter.convert(amount.amount, currency, base_currency)
                rate = to_decimal(rate).quantize(RATE_EXPONENT)
                base = amount.convert(rate, base_currency)
                settlement = Settlement(
                    trip_id=trip_id,
                    from_user_id=data.from_user_id,
                    to_user_id=data.to_user_id,
                    amount=amount.amount,
                    currency=currency,
                    base_amount=base.amount,
                    base_currency=base_currency,
                    exchange_rate=rate,
                    method=data.method,
                    reference=data.reference,
                    notes=data.notes,
                    status=SettlementStatus.COMPLETED,
                    completed_at=datetime.now(timezone.utc),
                    recorded_by=recorded_by
                )
                db.add(settlement)
                db.flush()
                event = _settlement_event(EventType.SETTLEMENT_RECORDED, settlement)
        except (SQLAlchemyError, ConversionFailed) as e:
            logger.exception(f"Failed to record settlement for trip {trip_id}")
            raise LedgerWriteFailed(f"Failed to record settlement: {e}", cause=e) from e

        logger.info(
            f"Settlement {settlement.id} recorded for trip {trip_id}: "
            f"{settlement.from_user_id} -> {settlement.to_user_id} {settlement.base_amount} {base_currency}"
        )
        publish_all(self.publisher, [event])
        return settlement

    def cancel_settlement(self, settlement_id: int, cancelled_by: int) -> Settlement:
        try:
            with self.session_factory.begin() as db:
                settlement = db.query(Settlement).filter(
                    Settlement.id == settlement_id
                ).with_for_update().first()
                if settlement is None:
                    raise SettlementNotFound(f"Settlement {settlement_id} not found")
                if settlement.status == SettlementStatus.CANCELLED:
                    raise InvalidSettlement(f"Settlement {settlement_id} is already cancelled")
                settlement.status = SettlementStatus.CANCELLED
                db.flush()
                event = _settlement_event(EventType.SETTLEMENT_CANCELLED, settlement, cancelled_by=cancelled_by)
        except SQLAlchemyError as e:
            logger.exception(f"Failed to cancel settlement {settlement_id}")
            raise LedgerWriteFailed(f"Failed to cancel settlement: {e}", cause=e) from e

        logger.info(f"Settlement {settlement_id} cancelled by user {cancelled_by}")
        publish_all(self.publisher, [event])
        return settlement

    def get_settlement(self, settlement_id: int) -> Settlement:
        with self.session_factory() as db:
            settlement = db.query(Settlement).filter(Settlement.id == settlement_id).first()
        if settlement is None:
            raise SettlementNotFound(f"Settlement {settlement_id} not found")
        return settlement

    def list_settlements(self, trip_id: int, status: Optional[SettlementStatus] = None) -> List[Settlement]:
        with self.session_factory() as db:
            query = db.query(Settlement).filter(Settlement.trip_id == trip_id)
            if status is not None:
                query = query.filter(Settlement.status == status)
            return query.order_by(Settlement.id.desc()).all()


def _settlement_event(event_type: EventType, settlement: Settlement, **extra) -> LedgerEvent:
    payload = {
        "settlement_id": settlement.id,
        "from_user_id": settlement.from_user_id,
        "to_user_id": settlement.to_user_id,
        "amount": str(settlement.amount),
        "currency": settlement.currency,
        "base_amount": str(settlement.base_amount),
    }
    payload.update(extra)
    return LedgerEvent(type=event_type, trip_id=settlement.trip_id, payload=payload)
