"""
Snapshot endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .deps import PricingSystem, get_system, get_user_context, http_error
from .schemas import CreateSnapshotRequest
from ..audit import UserContext
from ..exceptions import LoanPricingError


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_snapshot(
    request: CreateSnapshotRequest,
    system: PricingSystem = Depends(get_system),
    context: UserContext = Depends(get_user_context)
):
    """Capture the customer's loans (or the listed ones) as they are now"""
    try:
        if request.loan_ids is None:
            loans = await system.loan_manager.list_loans(customer_id=request.customer_id)
        else:
            loans = [await system.loan_manager.get_loan(loan_id) for loan_id in request.loan_ids]

        snapshot = await system.snapshot_manager.create_snapshot(
            request.customer_id,
            loans,
            context,
            change_count=request.change_count,
            description=request.description
        )
        return snapshot.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.get("")
async def list_snapshots(
    customer_id: str,
    limit: Optional[int] = None,
    offset: int = 0,
    system: PricingSystem = Depends(get_system)
):
    """Snapshot timeline for a customer, newest first, without loan data"""
    try:
        snapshots = await system.snapshot_manager.list_timeline(customer_id, limit, offset)
        total = await system.snapshot_manager.count_snapshots(customer_id)
    except LoanPricingError as e:
        raise http_error(e)
    return {
        "customer_id": customer_id,
        "snapshots": [s.to_dict() for s in snapshots],
        "total_count": total,
    }


@router.get("/{snapshot_id}")
async def get_snapshot(snapshot_id: str, system: PricingSystem = Depends(get_system)):
    """Snapshot with its loans for read-only playback"""
    try:
        detail = await system.snapshot_manager.get_snapshot_detail(snapshot_id)
        return detail.to_dict()
    except LoanPricingError as e:
        raise http_error(e)


@router.post("/prune")
async def prune_snapshots(
    customer_id: str,
    retention_limit: Optional[int] = None,
    system: PricingSystem = Depends(get_system)
):
    """Delete the oldest snapshots beyond the retention limit"""
    try:
        deleted = await system.snapshot_manager.prune_old_snapshots(customer_id, retention_limit)
    except LoanPricingError as e:
        raise http_error(e)
    return {"customer_id": customer_id, "deleted": deleted}
