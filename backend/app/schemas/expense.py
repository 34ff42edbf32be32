"""
Pydantic schemas for Expense and ExpenseSplit entities.
"""
from pydantic import BaseModel, Field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from app.models.expense import ExpenseStatus, VerificationStatus, SplitPolicy, SplitStatus


# ---------------------------------------------------------------------------
# Split parameters: one shape per policy, discriminated on `policy`
# ---------------------------------------------------------------------------

class EqualSplit(BaseModel):
    """Divide evenly among all participants."""
    policy: Literal["equal"] = "equal"


class PercentageSplit(BaseModel):
    """Percent (0-100) of the amount per participant."""
    policy: Literal["percentage"] = "percentage"
    percentages: Dict[int, Decimal]


class CustomSplit(BaseModel):
    """Absolute amount per participant, in the expense currency."""
    policy: Literal["custom"] = "custom"
    amounts: Dict[int, Decimal]


class SharesSplit(BaseModel):
    """Integer share weights per participant."""
    policy: Literal["shares"] = "shares"
    shares: Dict[int, int]


class NoSplit(BaseModel):
    """The payer carries the whole amount."""
    policy: Literal["none"] = "none"


SplitSpec = Annotated[
    Union[EqualSplit, PercentageSplit, CustomSplit, SharesSplit, NoSplit],
    Field(discriminator="policy"),
]


class Location(BaseModel):
    lat: float
    lng: float
    address: str
    place_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Expense requests
# ---------------------------------------------------------------------------

class ExpenseCreate(BaseModel):
    """Schema for expense creation."""
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    amount: Decimal
    currency: str = Field(..., min_length=3, max_length=3)
    category: Optional[str] = Field(None, max_length=50)
    subcategory: Optional[str] = Field(None, max_length=100)
    tags: List[str] = []
    expense_date: date
    expense_time: Optional[dt_time] = None
    location: Optional[Location] = None
    participants: List[int]  # User IDs who share this expense, in split order
    split: SplitSpec = EqualSplit()
    payer_id: Optional[int] = None  # Defaults to the recording user
    receipt_urls: List[str] = []
    ocr_data: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None


class ExpenseUpdate(BaseModel):
    """Schema for expense update. Omitted fields are left unchanged."""
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    category: Optional[str] = Field(None, max_length=50)
    subcategory: Optional[str] = Field(None, max_length=100)
    tags: Optional[List[str]] = None
    expense_date: Optional[date] = None
    expense_time: Optional[dt_time] = None
    location: Optional[Location] = None
    participants: Optional[List[int]] = None
    split: Optional[SplitSpec] = None
    payer_id: Optional[int] = None
    receipt_urls: Optional[List[str]] = None
    ocr_data: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    status: Optional[ExpenseStatus] = None
    verification_status: Optional[VerificationStatus] = None


class ExpenseFilters(BaseModel):
    """Query filters for listing expenses."""
    category: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    payer_id: Optional[int] = None
    participant_id: Optional[int] = None
    status: Optional[ExpenseStatus] = None
    tags: Optional[List[str]] = None
    limit: Optional[int] = Field(None, ge=1, le=500)
    offset: Optional[int] = Field(None, ge=0)
    sort_by: Literal["date_desc", "date_asc", "amount_desc", "amount_asc"] = "date_desc"


class SplitPayment(BaseModel):
    """Payment details attached when a split is marked paid."""
    payment_method: Optional[str] = Field(None, max_length=50)
    payment_reference: Optional[str] = Field(None, max_length=255)
    notes: Optional[str] = None


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class ExpenseSplitResponse(BaseModel):
    """Schema for expense split response."""
    id: int
    expense_id: int
    user_id: int
    payer_id: int
    amount: Decimal
    currency: str
    base_amount: Decimal
    base_currency: str
    status: SplitStatus
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    notes: Optional[str] = None
    paid_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ExpenseResponse(BaseModel):
    """Schema for expense response."""
    id: int
    trip_id: int
    recorded_by: int
    payer_id: int
    title: str
    description: Optional[str] = None
    amount: Decimal
    currency: str
    base_amount: Decimal  # Amount in trip's base currency
    base_currency: str
    exchange_rate: Decimal
    category: Optional[str] = None
    subcategory: Optional[str] = None
    tags: List[str] = []
    expense_date: date
    expense_time: Optional[dt_time] = None
    location: Optional[Dict[str, Any]] = None
    participants: List[int]
    split_policy: SplitPolicy
    split_params: Dict[str, Any] = {}
    receipt_urls: List[str] = []
    status: ExpenseStatus
    verification_status: VerificationStatus
    notes: Optional[str] = None
    splits: List[ExpenseSplitResponse] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ExpenseListResponse(BaseModel):
    expenses: List[ExpenseResponse]
    total_count: int
    has_more: bool


class CategoryBreakdownItem(BaseModel):
    """Spending in one category."""
    category: str
    amount: Decimal  # Trip's base currency
    count: int


class UserBreakdownItem(BaseModel):
    user_id: int
    paid: Decimal
    owes: Decimal
    balance: Decimal


class ExpenseSummary(BaseModel):
    """Schema for expense summary of a trip."""
    trip_id: int
    total_expenses: int
    total_amount: Decimal
    currency: str  # Trip's base currency
    category_breakdown: List[CategoryBreakdownItem] = []
    user_breakdown: List[UserBreakdownItem] = []
