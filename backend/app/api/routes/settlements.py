"""
Balance and settlement routes.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.dependencies import (
    check_trip_access, get_balance_aggregator, get_current_user_id, get_settlement_service,
    get_trip_directory
)
from app.models.settlement import SettlementStatus
from app.schemas.settlement import SettlementCreate, SettlementPlan, SettlementResponse, UserBalance
from app.services.balance_aggregator import BalanceAggregator
from app.services.settlement_service import SettlementService
from app.services.trip_directory import TripDirectory

router = APIRouter(tags=["settlements"])


@router.get("/trips/{trip_id}/balances", response_model=List[UserBalance])
async def get_balances(
    trip_id: int,
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    aggregator: BalanceAggregator = Depends(get_balance_aggregator)
):
    """Net balance of every member (positive = should receive)."""
    check_trip_access(trip_id, current_user_id, directory)
    return aggregator.compute_balances(trip_id)


@router.get("/trips/{trip_id}/settlement/plan", response_model=SettlementPlan)
async def get_settlement_plan(
    trip_id: int,
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    service: SettlementService = Depends(get_settlement_service)
):
    """Minimal list of transfers that settles the trip."""
    check_trip_access(trip_id, current_user_id, directory)
    return service.suggest(trip_id)


@router.get("/trips/{trip_id}/settlements", response_model=List[SettlementResponse])
async def list_settlements(
    trip_id: int,
    settlement_status: Optional[SettlementStatus] = Query(None, alias="status"),
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    service: SettlementService = Depends(get_settlement_service)
):
    check_trip_access(trip_id, current_user_id, directory)
    return service.list_settlements(trip_id, status=settlement_status)


@router.post("/trips/{trip_id}/settlements", response_model=SettlementResponse, status_code=status.HTTP_201_CREATED)
async def record_settlement(
    trip_id: int,
    settlement_data: SettlementCreate,
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    service: SettlementService = Depends(get_settlement_service)
):
    """Record a payment made from one member to another."""
    check_trip_access(trip_id, current_user_id, directory)
    return service.record_settlement(trip_id, settlement_data, recorded_by=current_user_id)


@router.post("/settlements/{settlement_id}/cancel", response_model=SettlementResponse)
async def cancel_settlement(
    settlement_id: int,
    current_user_id: int = Depends(get_current_user_id),
    directory: TripDirectory = Depends(get_trip_directory),
    service: SettlementService = Depends(get_settlement_service)
):
    """Cancel a recorded payment (either party or the recorder)."""
    settlement = service.get_settlement(settlement_id)
    check_trip_access(settlement.trip_id, current_user_id, directory)
    if current_user_id not in (settlement.from_user_id, settlement.to_user_id, settlement.recorded_by):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the parties to a settlement can cancel it"
        )
    return service.cancel_settlement(settlement_id, cancelled_by=current_user_id)
