"""
Trip model: local mirror of trip membership and base currency.
"""
from sqlalchemy import Column, String, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.orm import relationship
from app.db.base import BaseModel


class Trip(BaseModel):
    """Trip whose expenses are tracked by the ledger."""
    __tablename__ = "trips"

    name = Column(String(200), nullable=False)
    base_currency = Column(String(3), nullable=False, default="USD")  # Base currency for this trip

    # Relationships
    participants = relationship("TripParticipant", back_populates="trip", cascade="all, delete-orphan")
    expenses = relationship("Expense", back_populates="trip", cascade="all, delete-orphan")
    budgets = relationship("Budget", back_populates="trip", cascade="all, delete-orphan")
    settlements = relationship("Settlement", back_populates="trip", cascade="all, delete-orphan")


class TripParticipant(BaseModel):
    """Membership of a user in a trip."""
    __tablename__ = "trip_participants"

    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)

    # Relationships
    trip = relationship("Trip", back_populates="participants")

    __table_args__ = (
        UniqueConstraint('trip_id', 'user_id', name='uq_trip_participant'),
    )
