"""
Expense and expense split models.
"""
import enum
from sqlalchemy import (
    Column, String, Numeric, Date, Time, DateTime, ForeignKey, Integer, Text, JSON,
    Enum as SQLEnum, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship
from app.db.base import BaseModel


def enum_values(enum_cls):
    """Persist enum values (not member names)."""
    return [member.value for member in enum_cls]


class ExpenseStatus(str, enum.Enum):
    """Expense lifecycle status."""
    ACTIVE = "active"
    CANCELLED = "cancelled"
    MERGED = "merged"


class VerificationStatus(str, enum.Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    DISPUTED = "disputed"


class SplitPolicy(str, enum.Enum):
    """Rule used to divide an expense among its participants."""
    EQUAL = "equal"
    PERCENTAGE = "percentage"
    CUSTOM = "custom"
    SHARES = "shares"
    NONE = "none"


class SplitStatus(str, enum.Enum):
    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    PAID = "paid"
    CANCELLED = "cancelled"


class Expense(BaseModel):
    """Expense model representing a single shared outlay."""
    __tablename__ = "expenses"

    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False, index=True)
    recorded_by = Column(Integer, nullable=False, index=True)
    payer_id = Column(Integer, nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    amount = Column(Numeric(15, 3), nullable=False)
    currency = Column(String(3), nullable=False)
    base_amount = Column(Numeric(15, 3), nullable=False)  # Frozen at record time
    base_currency = Column(String(3), nullable=False)
    exchange_rate = Column(Numeric(18, 8), nullable=False, default=1)  # 1 currency = rate base_currency

    category = Column(String(50), nullable=True, index=True)
    subcategory = Column(String(100), nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    expense_date = Column(Date, nullable=False, index=True)
    expense_time = Column(Time, nullable=True)
    location = Column(JSON, nullable=True)  # {lat, lng, address, place_id}

    participants = Column(JSON, nullable=False, default=list)  # Ordered user ids
    split_policy = Column(
        SQLEnum(SplitPolicy, native_enum=False, values_callable=enum_values, length=20),
        nullable=False,
        default=SplitPolicy.EQUAL
    )
    split_params = Column(JSON, nullable=False, default=dict)

    receipt_urls = Column(JSON, nullable=False, default=list)
    ocr_data = Column(JSON, nullable=True)  # Opaque; not validated
    status = Column(
        SQLEnum(ExpenseStatus, native_enum=False, values_callable=enum_values, length=20),
        nullable=False,
        default=ExpenseStatus.ACTIVE,
        index=True
    )
    verification_status = Column(
        SQLEnum(VerificationStatus, native_enum=False, values_callable=enum_values, length=20),
        nullable=False,
        default=VerificationStatus.PENDING
    )
    notes = Column(Text, nullable=True)

    # Relationships
    trip = relationship("Trip", back_populates="expenses")
    splits = relationship(
        "ExpenseSplit",
        back_populates="expense",
        cascade="all, delete-orphan",
        order_by="ExpenseSplit.id"
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="chk_expenses_positive_amount"),
        CheckConstraint("exchange_rate > 0", name="chk_expenses_positive_rate"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == ExpenseStatus.ACTIVE


class ExpenseSplit(BaseModel):
    """One participant's share of one expense."""
    __tablename__ = "expense_splits"

    expense_id = Column(Integer, ForeignKey("expenses.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    payer_id = Column(Integer, nullable=False, index=True)  # Copied from expense
    amount = Column(Numeric(15, 3), nullable=False)
    currency = Column(String(3), nullable=False)
    base_amount = Column(Numeric(15, 3), nullable=False)
    base_currency = Column(String(3), nullable=False)
    status = Column(
        SQLEnum(SplitStatus, native_enum=False, values_callable=enum_values, length=20),
        nullable=False,
        default=SplitStatus.PENDING,
        index=True
    )
    payment_method = Column(String(50), nullable=True)
    payment_reference = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    expense = relationship("Expense", back_populates="splits")

    # One split per participant per expense
    __table_args__ = (
        UniqueConstraint('expense_id', 'user_id', name='uq_expense_split_user'),
    )
