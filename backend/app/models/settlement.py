"""
Settlement model for payments recorded between trip members.
"""
import enum
from sqlalchemy import (
    Column, String, Numeric, ForeignKey, Integer, Text, DateTime,
    Enum as SQLEnum, CheckConstraint
)
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
from app.models.expense import enum_values


class SettlementStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Settlement(BaseModel):
    """A payment from one member to another outside the expense flow."""
    __tablename__ = "settlements"

    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    from_user_id = Column(Integer, nullable=False, index=True)
    to_user_id = Column(Integer, nullable=False, index=True)
    amount = Column(Numeric(15, 3), nullable=False)
    currency = Column(String(3), nullable=False)
    base_amount = Column(Numeric(15, 3), nullable=False)
    base_currency = Column(String(3), nullable=False)
    exchange_rate = Column(Numeric(18, 8), nullable=False, default=1)
    method = Column(String(50), nullable=True)  # cash, bank_transfer, ...
    reference = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(
        SQLEnum(SettlementStatus, native_enum=False, values_callable=enum_values, length=20),
        nullable=False,
        default=SettlementStatus.PENDING,
        index=True
    )
    completed_at = Column(DateTime(timezone=True), nullable=True)
    recorded_by = Column(Integer, nullable=False)

    # Relationships
    trip = relationship("Trip", back_populates="settlements")

    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_settlements_positive_amount"),
        CheckConstraint("from_user_id <> to_user_id", name="chk_settlements_distinct_users"),
    )
