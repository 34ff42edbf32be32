"""
Budget management routes.
"""
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends

from app.api.dependencies import (
    check_trip_access, get_budget_monitor, get_current_user_id, get_trip_directory
)
from app.models.budget import Budget
from app.schemas.budget import (
    BudgetAlertResponse, BudgetOverview, BudgetResponse, BudgetSet, BudgetStatusItem
)
from app.services.budget_monitor import BudgetMonitor
from app.services.trip_directory import TripDirectory

router = APIRouter(tags=["budget"])


def _status_item(budget: Budget, monitor: BudgetMonitor) -> BudgetStatusItem:
    base_total = Decimal(budget.base_total)
    spent = Decimal(budget.spent_amount)
    return BudgetStatusItem(
        **BudgetResponse.model_validate(budget).model_dump(),
        state=monitor.evaluate(budget),
        remaining=base_total - spent,
        fill_ratio=float(spent / base_total * 100) if base_total > 0 else 0.0
    )


@router.get("/trips/{trip_id}/budget", response_model=BudgetOverview)
async def get_budget_overview(
    trip_id: int,
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    monitor: BudgetMonitor = Depends(get_budget_monitor)
):
    """Trip-wide and category budgets with their current state."""
    check_trip_access(trip_id, current_user_id, directory)

    overview = BudgetOverview()
    for budget in monitor.list_budgets(trip_id):
        item = _status_item(budget, monitor)
        if budget.is_trip_wide:
            overview.total_budget = item
        else:
            overview.category_budgets.append(item)
    return overview


@router.put("/trips/{trip_id}/budget", response_model=BudgetResponse)
async def set_budget(
    trip_id: int,
    budget_data: BudgetSet,
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    monitor: BudgetMonitor = Depends(get_budget_monitor)
):
    """Set or edit the trip-wide budget, or a category budget."""
    check_trip_access(trip_id, current_user_id, directory)
    return monitor.set_budget(
        trip_id,
        budget_data.category,
        budget_data.total_amount,
        budget_data.currency,
        created_by=current_user_id,
        warning_threshold=budget_data.warning_threshold,
        critical_threshold=budget_data.critical_threshold
    )


@router.get("/trips/{trip_id}/budget/alerts", response_model=List[BudgetAlertResponse])
async def list_budget_alerts(
    trip_id: int,
    include_acknowledged: bool = False,
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    monitor: BudgetMonitor = Depends(get_budget_monitor)
):
    check_trip_access(trip_id, current_user_id, directory)
    return monitor.list_alerts(trip_id, include_acknowledged=include_acknowledged)


@router.post("/budget-alerts/{alert_id}/acknowledge", response_model=BudgetAlertResponse)
async def acknowledge_budget_alert(
    alert_id: int,
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    monitor: BudgetMonitor = Depends(get_budget_monitor)
):
    alert = monitor.get_alert(alert_id)
    check_trip_access(alert.trip_id, current_user_id, directory)
    return monitor.acknowledge_alert(alert_id, current_user_id)
