"""
Budget models for trip-wide and per-category spending ceilings.
"""
import enum
from sqlalchemy import (
    Column, String, Numeric, ForeignKey, Integer, Boolean, DateTime, Text,
    Enum as SQLEnum, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
from app.models.expense import enum_values

TRIP_WIDE = ""  # category_key of the trip-wide budget


class BudgetState(str, enum.Enum):
    """Alert state of a budget."""
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"


class Budget(BaseModel):
    """Spending ceiling for a trip (category is None) or one of its categories."""
    __tablename__ = "budgets"

    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    category = Column(String(50), nullable=True)
    # NULLs never collide in a unique index, so uniqueness is keyed on this instead
    category_key = Column(String(50), nullable=False, default=TRIP_WIDE)
    total_amount = Column(Numeric(15, 3), nullable=False)
    currency = Column(String(3), nullable=False)
    base_total = Column(Numeric(15, 3), nullable=False)  # total_amount in trip's base currency
    base_currency = Column(String(3), nullable=False)
    spent_amount = Column(Numeric(15, 3), nullable=False, default=0)  # Base currency
    warning_threshold = Column(Numeric(5, 4), nullable=False)
    critical_threshold = Column(Numeric(5, 4), nullable=False)
    created_by = Column(Integer, nullable=False)

    # Relationships
    trip = relationship("Trip", back_populates="budgets")
    alerts = relationship("BudgetAlert", back_populates="budget", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint('trip_id', 'category_key', name='uq_trip_category_budget'),
        CheckConstraint("total_amount > 0", name="chk_budgets_positive_total"),
    )

    @property
    def is_trip_wide(self) -> bool:
        return self.category_key == TRIP_WIDE


class BudgetAlert(BaseModel):
    """A recorded threshold crossing of a budget."""
    __tablename__ = "budget_alerts"

    budget_id = Column(Integer, ForeignKey("budgets.id", ondelete="CASCADE"), nullable=False, index=True)
    trip_id = Column(Integer, nullable=False, index=True)
    level = Column(SQLEnum(BudgetState, native_enum=False, values_callable=enum_values, length=20), nullable=False)
    spent_amount = Column(Numeric(15, 3), nullable=False)
    ratio = Column(Numeric(8, 4), nullable=False)
    message = Column(Text, nullable=True)
    is_acknowledged = Column(Boolean, default=False, nullable=False)
    acknowledged_by = Column(Integer, nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    budget = relationship("Budget", back_populates="alerts")
