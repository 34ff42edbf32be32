"""
Pydantic schemas for Budget entity.
"""
from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from app.models.budget import BudgetState


class BudgetSet(BaseModel):
    """Schema for creating or updating a budget (upsert by category)."""
    category: Optional[str] = Field(None, max_length=50)  # None = trip-wide budget
    total_amount: Decimal
    currency: str = Field(..., min_length=3, max_length=3)
    warning_threshold: Optional[Decimal] = None  # Fraction of total, e.g. 0.8
    critical_threshold: Optional[Decimal] = None


class BudgetResponse(BaseModel):
    """Schema for budget response."""
    id: int
    trip_id: int
    category: Optional[str] = None
    total_amount: Decimal
    currency: str
    base_total: Decimal
    base_currency: str
    spent_amount: Decimal  # Trip's base currency
    warning_threshold: Decimal
    critical_threshold: Decimal
    created_by: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class BudgetStatusItem(BudgetResponse):
    """Budget plus its evaluated alert state."""
    state: BudgetState
    remaining: Decimal
    fill_ratio: float  # Percentage of budget used


class BudgetOverview(BaseModel):
    total_budget: Optional[BudgetStatusItem] = None
    category_budgets: List[BudgetStatusItem] = []


class BudgetAlertResponse(BaseModel):
    """Schema for budget alert response."""
    id: int
    budget_id: int
    trip_id: int
    level: BudgetState
    spent_amount: Decimal
    ratio: Decimal
    message: Optional[str] = None
    is_acknowledged: bool
    acknowledged_by: Optional[int] = None
    acknowledged_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True
