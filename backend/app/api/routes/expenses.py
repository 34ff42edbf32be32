"""
Expense management routes.
"""
from datetime import date
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from app.api.dependencies import (
    check_trip_access, get_current_user_id, get_expense_ledger, get_settlement_service,
    get_trip_directory
)
from app.models.expense import Expense, ExpenseStatus, SplitStatus
from app.schemas.expense import (
    ExpenseCreate, ExpenseFilters, ExpenseListResponse, ExpenseResponse, ExpenseSplitResponse,
    ExpenseSummary, ExpenseUpdate, SplitPayment
)
from app.schemas.settlement import TripSplits
from app.services.expense_ledger import ExpenseLedger
from app.services.settlement_service import SettlementService
from app.services.trip_directory import TripDirectory

router = APIRouter(tags=["expenses"])


def check_expense_owner(expense: Expense, user_id: int) -> None:
    """Only the recorder or the payer may change an expense."""
    if user_id not in (expense.recorded_by, expense.payer_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the recorder or the payer can modify this expense"
        )


@router.get("/trips/{trip_id}/expenses", response_model=ExpenseListResponse)
async def list_expenses(
    trip_id: int,
    category: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    payer_id: Optional[int] = None,
    participant_id: Optional[int] = None,
    expense_status: Optional[ExpenseStatus] = Query(None, alias="status"),
    tags: Optional[List[str]] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    sort_by: Literal["date_desc", "date_asc", "amount_desc", "amount_asc"] = "date_desc",
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    ledger: ExpenseLedger = Depends(get_expense_ledger)
):
    """List expenses of a trip with filters, sorting and pagination."""
    check_trip_access(trip_id, current_user_id, directory)

    filters = ExpenseFilters(
        category=category,
        date_from=date_from,
        date_to=date_to,
        payer_id=payer_id,
        participant_id=participant_id,
        status=expense_status,
        tags=tags,
        limit=limit,
        offset=offset,
        sort_by=sort_by
    )
    expenses, total = ledger.list_expenses(trip_id, filters)
    return ExpenseListResponse(
        expenses=[ExpenseResponse.model_validate(e) for e in expenses],
        total_count=total,
        has_more=offset + len(expenses) < total
    )


@router.post("/trips/{trip_id}/expenses", response_model=ExpenseResponse, status_code=status.HTTP_201_CREATED)
async def create_expense(
    trip_id: int,
    expense_data: ExpenseCreate,
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    ledger: ExpenseLedger = Depends(get_expense_ledger)
):
    """Record a new expense and split it among its participants."""
    check_trip_access(trip_id, current_user_id, directory)
    return ledger.post_expense(trip_id, expense_data, recorded_by=current_user_id)


@router.get("/trips/{trip_id}/expenses/summary", response_model=ExpenseSummary)
async def get_expense_summary(
    trip_id: int,
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    ledger: ExpenseLedger = Depends(get_expense_ledger)
):
    """Totals, category breakdown and per-member paid/owed for a trip."""
    check_trip_access(trip_id, current_user_id, directory)
    return ledger.expense_summary(trip_id)


@router.get("/expenses/{expense_id}", response_model=ExpenseResponse)
async def get_expense(
    expense_id: int,
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    ledger: ExpenseLedger = Depends(get_expense_ledger)
):
    expense = ledger.get_expense(expense_id)
    check_trip_access(expense.trip_id, current_user_id, directory)
    return expense


@router.put("/expenses/{expense_id}", response_model=ExpenseResponse)
async def update_expense(
    expense_id: int,
    expense_data: ExpenseUpdate,
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    ledger: ExpenseLedger = Depends(get_expense_ledger)
):
    """Update an expense; splits and budgets follow the change."""
    expense = ledger.get_expense(expense_id)
    check_trip_access(expense.trip_id, current_user_id, directory)
    check_expense_owner(expense, current_user_id)
    return ledger.update_expense(expense_id, expense_data)


@router.delete("/expenses/{expense_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_expense(
    expense_id: int,
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    ledger: ExpenseLedger = Depends(get_expense_ledger)
):
    expense = ledger.get_expense(expense_id)
    check_trip_access(expense.trip_id, current_user_id, directory)
    check_expense_owner(expense, current_user_id)
    ledger.delete_expense(expense_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/trips/{trip_id}/splits", response_model=TripSplits)
async def get_trip_splits(
    trip_id: int,
    user_id: Optional[int] = None,
    split_status: Optional[SplitStatus] = Query(None, alias="status"),
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    ledger: ExpenseLedger = Depends(get_expense_ledger),
    settlements: SettlementService = Depends(get_settlement_service)
):
    """Splits of a trip with current balances and suggested transfers."""
    check_trip_access(trip_id, current_user_id, directory)

    splits = ledger.list_splits(trip_id, user_id=user_id, status=split_status)
    plan = settlements.suggest(trip_id)
    return TripSplits(
        splits=[ExpenseSplitResponse.model_validate(s) for s in splits],
        balances=plan.balances,
        transfers=plan.transfers
    )


@router.post("/expense-splits/{split_id}/acknowledge", response_model=ExpenseSplitResponse)
async def acknowledge_split(
    split_id: int,
    current_user_id: int = Depends(get_current_user_id),
    ledger: ExpenseLedger = Depends(get_expense_ledger)
):
    """Acknowledge a share (participant or payer only)."""
    return ledger.acknowledge_split(split_id, current_user_id)


@router.post("/expense-splits/{split_id}/mark-paid", response_model=ExpenseSplitResponse)
async def mark_split_paid(
    split_id: int,
    payment: Optional[SplitPayment] = None,
    current_user_id: int = Depends(get_current_user_id),
    ledger: ExpenseLedger = Depends(get_expense_ledger)
):
    """Mark a share as paid, with optional payment details."""
    return ledger.mark_split_paid(split_id, current_user_id, payment)
