"""
Pydantic schemas for Settlement, balances and settlement plans.
"""
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime
from decimal import Decimal
from app.models.settlement import SettlementStatus
from app.schemas.expense import ExpenseSplitResponse


class SettlementCreate(BaseModel):
    """Schema for recording a manual payment."""
    from_user_id: int
    to_user_id: int
    amount: Decimal
    currency: str = Field(..., min_length=3, max_length=3)
    method: Optional[str] = Field(None, max_length=50)
    reference: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None


class SettlementResponse(BaseModel):
    """Schema for settlement response."""
    id: int
    trip_id: int
    from_user_id: int
    to_user_id: int
    amount: Decimal
    currency: str
    base_amount: Decimal
    base_currency: str
    exchange_rate: Decimal
    method: Optional[str] = None
    reference: Optional[str] = None
    notes: Optional[str] = None
    status: SettlementStatus
    completed_at: Optional[datetime] = None
    recorded_by: int
    created_at: datetime

    class Config:
        from_attributes = True


class UserBalance(BaseModel):
    """Net ledger position of one member, in the trip's base currency."""
    user_id: int
    total_paid: Decimal = Decimal(0)
    total_owed: Decimal = Decimal(0)
    settlements_sent: Decimal = Decimal(0)
    settlements_received: Decimal = Decimal(0)
    net_balance: Decimal = Decimal(0)  # positive = should receive, negative = should pay


class Transfer(BaseModel):
    """Schema for a single transfer in a settlement plan."""
    from_user_id: int
    to_user_id: int
    amount: Decimal  # Trip's base currency


class SettlementPlan(BaseModel):
    trip_id: int
    base_currency: str
    balances: List[UserBalance]
    transfers: List[Transfer]


class TripSplits(BaseModel):
    """Splits of a trip together with where each member stands."""
    splits: List[ExpenseSplitResponse]
    balances: List[UserBalance]
    transfers: List[Transfer]  # Suggested settlement
