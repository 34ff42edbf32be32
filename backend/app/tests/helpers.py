"""
Test doubles and builders shared by the test modules.

Trip 1 (base currency USD) has members 1 (Alice), 2 (Bob) and 3 (Carol).
"""
from datetime import date
from decimal import Decimal

from app.core.errors import ConversionFailed
from app.core.money import normalize_currency, quantize, to_decimal
from app.models.trip import Trip, TripParticipant
from app.schemas.expense import ExpenseCreate
from app.services.events import EventPublisher
from app.services.fx_service import CurrencyConverter

TRIP_ID = 1
ALICE, BOB, CAROL = 1, 2, 3
OUTSIDER = 99


class FakeConverter(CurrencyConverter):
    """Fixed rates; unknown pairs fail like an unreachable rate service."""

    def __init__(self, rates=None):
        self.rates = dict(rates or {})
        self.fail = False
        self.calls = []

    def convert(self, amount, from_currency, to_currency):
        from_currency = normalize_currency(from_currency)
        to_currency = normalize_currency(to_currency)
        self.calls.append((from_currency, to_currency))
        if self.fail:
            raise ConversionFailed("rate service unavailable")
        if from_currency == to_currency:
            return quantize(amount, to_currency), Decimal(1)
        if (from_currency, to_currency) not in self.rates:
            raise ConversionFailed(f"no rate for {from_currency}->{to_currency}")
        rate = self.rates[(from_currency, to_currency)]
        return quantize(to_decimal(amount) * rate, to_currency), rate


class RecordingPublisher(EventPublisher):
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)

    def types(self):
        return [event.type.value for event in self.events]


class BrokenPublisher(EventPublisher):
    def publish(self, event):
        raise RuntimeError("push gateway down")


def seed_trip(session_factory, trip_id=TRIP_ID, members=(ALICE, BOB, CAROL), base_currency="USD"):
    with session_factory.begin() as db:
        db.add(Trip(
            id=trip_id,
            name="Jeju spring trip",
            base_currency=base_currency,
            participants=[TripParticipant(user_id=user_id) for user_id in members]
        ))


def make_expense(**overrides) -> ExpenseCreate:
    data = {
        "title": "Dinner",
        "amount": Decimal("100.00"),
        "currency": "USD",
        "category": "food",
        "expense_date": date(2024, 5, 1),
        "participants": [ALICE, BOB, CAROL],
    }
    data.update(overrides)
    return ExpenseCreate(**data)
