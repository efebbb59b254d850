from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from allocator.middleware.auth import get_current_user
from allocator.middleware.tenant import get_db_with_tenant
from allocator.middleware.authorization import require_roles, ALLOCATION_WRITERS
from allocator.models.allocation import Allocation
from allocator.schemas.allocation import (
    AllocationCreate,
    AllocationUpdate,
    AllocationStatusUpdate,
    AllocationResponse,
    AllocationMatrixResponse,
    LineItemAllocationsResponse,
    LocationSummaryResponse,
    BulkAllocateRequest,
    BulkAllocateResponse,
    BulkFailure,
    BulkSummary,
    BulkStatusUpdate,
    BulkStatusResponse,
    BulkStatusFailure,
    PurchaseOrderStatusChange,
    StatusHistoryEntry,
    ValidateRequest,
    ValidationResponse,
    ValidationIssue,
)
from allocator.schemas.common import PaginatedResponse, build_page, iso
from allocator.services import (
    allocation_service,
    allocation_status_service,
    bulk_allocation_service,
)
from allocator.services.bulk_allocation_service import (
    AllocationStrategy,
    BulkAllocationInput,
    DestinationInput,
)

logger = structlog.get_logger()
router = APIRouter()


def to_response(a: Allocation) -> AllocationResponse:
    return AllocationResponse(
        id=str(a.id),
        tenant_id=str(a.tenant_id),
        po_item_id=str(a.po_item_id),
        target_location_id=str(a.target_location_id),
        quantity_allocated=a.quantity_allocated,
        quantity_received=a.quantity_received or 0,
        status=a.status,
        notes=a.notes,
        created_by=str(a.created_by),
        created_at=iso(a.created_at),
        updated_at=iso(a.updated_at),
        valid_transitions=allocation_service.valid_transitions(a.status),
    )


@router.get("", response_model=PaginatedResponse[AllocationResponse])
async def list_allocations(
    alloc_status: Optional[str] = Query(None, alias="status"),
    location_id: Optional[str] = Query(None),
    po_id: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    allocations, total = await allocation_service.list_allocations(
        db,
        current_user["tenant_id"],
        status=alloc_status,
        location_id=location_id,
        po_id=po_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return PaginatedResponse(
        data=[to_response(a) for a in allocations],
        pagination=build_page(limit, offset, total),
    )


@router.post("", response_model=AllocationResponse, status_code=status.HTTP_201_CREATED)
async def create_allocation(
    body: AllocationCreate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    allocation = await allocation_service.create_allocation(
        db,
        body.po_item_id,
        body.target_location_id,
        body.quantity_allocated,
        body.notes,
        current_user["tenant_id"],
        current_user["user_id"],
    )
    return to_response(allocation)


@router.post("/validate", response_model=ValidationResponse)
async def validate_allocations(
    body: ValidateRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    result = await allocation_service.validate_allocation_constraints(
        db,
        body.po_item_id,
        [(a.target_location_id, a.quantity_allocated) for a in body.allocations],
        current_user["tenant_id"],
        exclude_id=body.exclude_allocation_id,
    )
    return ValidationResponse(
        valid=result.valid,
        errors=[ValidationIssue(**e) for e in result.errors],
        warnings=result.warnings,
        ordered_quantity=result.ordered_quantity,
        allocated_quantity=result.allocated_quantity,
        proposed_quantity=result.proposed_quantity,
    )


@router.post("/bulk", response_model=BulkAllocateResponse)
async def bulk_allocate(
    body: BulkAllocateRequest,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    strategy = AllocationStrategy(
        type=body.strategy.type,
        location_percentages=body.strategy.location_percentages,
        template_id=body.strategy.template_id,
        custom_rules=(
            [r.model_dump() for r in body.strategy.custom_rules]
            if body.strategy.custom_rules
            else None
        ),
    )
    inputs = [
        BulkAllocationInput(
            line_item_id=i.po_item_id,
            destinations=[DestinationInput(d.location_id, d.quantity) for d in i.destinations],
        )
        for i in body.allocations
    ]
    result = await bulk_allocation_service.bulk_allocate(
        db,
        body.po_id,
        strategy,
        inputs,
        body.validate_only,
        current_user["tenant_id"],
        current_user["user_id"],
    )
    return BulkAllocateResponse(
        success=result.success,
        created_allocations=[to_response(a) for a in result.created_allocations],
        failed_allocations=[BulkFailure(**f) for f in result.failed_allocations],
        summary=BulkSummary(**result.summary),
    )


@router.post("/bulk-status", response_model=BulkStatusResponse)
async def bulk_update_status(
    body: BulkStatusUpdate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    result = await allocation_status_service.bulk_update_allocation_status(
        db,
        body.allocation_ids,
        body.status,
        current_user["tenant_id"],
        current_user["user_id"],
        notes=body.notes,
    )
    return BulkStatusResponse(
        success=result.success,
        updated=[to_response(a) for a in result.updated],
        failed=[BulkStatusFailure(**f) for f in result.failed],
    )


@router.get("/purchase-orders/{po_id}/matrix", response_model=AllocationMatrixResponse)
async def get_allocation_matrix(
    po_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    matrix = await allocation_service.get_allocations_for_purchase_order(
        db, po_id, current_user["tenant_id"]
    )
    return AllocationMatrixResponse(
        po_id=matrix.po_id,
        po_number=matrix.po_number,
        po_status=matrix.po_status,
        line_items=[
            LineItemAllocationsResponse(
                po_item_id=li.po_item_id,
                product_id=li.product_id,
                product_name=li.product_name,
                quantity_ordered=li.quantity_ordered,
                unit_price_cents=li.unit_price_cents,
                allocations=[to_response(a) for a in li.allocations],
                total_allocated=li.total_allocated,
                unallocated_quantity=li.unallocated_quantity,
            )
            for li in matrix.line_items
        ],
        total_allocated=matrix.total_allocated,
        location_summary=[
            LocationSummaryResponse(**vars(s)) for s in matrix.location_summary
        ],
    )


@router.post("/purchase-orders/{po_id}/status", response_model=BulkStatusResponse)
async def propagate_purchase_order_status(
    po_id: str,
    body: PurchaseOrderStatusChange,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    """Hook for the purchase order service after it changes an order's status."""
    result = await allocation_status_service.propagate_purchase_order_status(
        db, po_id, body.status, current_user["tenant_id"], current_user["user_id"]
    )
    return BulkStatusResponse(
        success=result.success,
        updated=[to_response(a) for a in result.updated],
        failed=[BulkStatusFailure(**f) for f in result.failed],
    )


@router.get("/line-items/{po_item_id}/unallocated")
async def get_unallocated_quantity(
    po_item_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    remaining = await allocation_service.get_unallocated_quantity(
        db, po_item_id, current_user["tenant_id"]
    )
    return {"po_item_id": po_item_id, "unallocated_quantity": remaining}


@router.get("/{allocation_id}", response_model=AllocationResponse)
async def get_allocation(
    allocation_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    allocation = await allocation_service.get_allocation(
        db, allocation_id, current_user["tenant_id"]
    )
    if not allocation:
        raise HTTPException(
            status_code=404,
            detail={"error": {"code": "NOT_FOUND", "message": "Allocation not found"}},
        )
    return to_response(allocation)


@router.patch("/{allocation_id}", response_model=AllocationResponse)
async def update_allocation(
    allocation_id: str,
    body: AllocationUpdate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    provided = body.model_dump(exclude_unset=True)
    changes = {}
    if "quantity_allocated" in provided:
        changes["quantity"] = provided["quantity_allocated"]
    if "quantity_received" in provided:
        changes["received_quantity"] = provided["quantity_received"]
    if "notes" in provided:
        changes["notes"] = provided["notes"]

    allocation = await allocation_service.update_allocation(
        db, allocation_id, changes, current_user["tenant_id"], current_user["user_id"]
    )
    return to_response(allocation)


@router.delete("/{allocation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_allocation(
    allocation_id: str,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    await allocation_service.delete_allocation(
        db, allocation_id, current_user["tenant_id"], current_user["user_id"]
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{allocation_id}/status", response_model=AllocationResponse)
async def update_allocation_status(
    allocation_id: str,
    body: AllocationStatusUpdate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    allocation = await allocation_service.update_allocation_status(
        db,
        allocation_id,
        body.status,
        current_user["tenant_id"],
        current_user["user_id"],
        notes=body.notes,
    )
    return to_response(allocation)


@router.get("/{allocation_id}/status-history", response_model=list[StatusHistoryEntry])
async def get_status_history(
    allocation_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    history = await allocation_status_service.get_status_history(
        db, allocation_id, current_user["tenant_id"]
    )
    return [
        StatusHistoryEntry(**{**h, "performed_at": iso(h["performed_at"])})
        for h in history
    ]
