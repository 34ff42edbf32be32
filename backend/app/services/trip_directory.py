"""
Trip membership lookups.

The ledger only needs three answers from the trip service: is this user a
member, who are the members, and what is the trip's base currency.
"""
from typing import List

from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.models.trip import Trip, TripParticipant


class TripDirectory:
    """Interface to the trip/collaborator service."""

    def is_trip_member(self, trip_id: int, user_id: int) -> bool:
        raise NotImplementedError

    def list_trip_members(self, trip_id: int) -> List[int]:
        raise NotImplementedError

    def get_base_currency(self, trip_id: int) -> str:
        raise NotImplementedError


class SqlTripDirectory(TripDirectory):
    """Directory backed by the local trips / trip_participants tables."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def is_trip_member(self, trip_id: int, user_id: int) -> bool:
        with self.session_factory() as db:
            membership = db.query(TripParticipant).filter(
                TripParticipant.trip_id == trip_id,
                TripParticipant.user_id == user_id
            ).first()
            return membership is not None

    def list_trip_members(self, trip_id: int) -> List[int]:
        with self.session_factory() as db:
            rows = db.query(TripParticipant.user_id).filter(
                TripParticipant.trip_id == trip_id
            ).order_by(TripParticipant.user_id).all()
            return [user_id for (user_id,) in rows]

    def get_base_currency(self, trip_id: int) -> str:
        """Trip's base currency, falling back to FX_BASE_CURRENCY."""
        with self.session_factory() as db:
            trip = db.query(Trip).filter(Trip.id == trip_id).first()
            if trip and trip.base_currency:
                return trip.base_currency.upper()
        return settings.FX_BASE_CURRENCY.upper()

