from typing import Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from allocator.middleware.auth import get_current_user
from allocator.middleware.tenant import get_db_with_tenant
from allocator.middleware.authorization import require_roles, ALLOCATION_WRITERS
from allocator.models.transfer import Transfer, TransferAllocation
from allocator.routes.allocations import to_response as allocation_to_response
from allocator.schemas.common import iso
from allocator.schemas.transfer import (
    LocationResponse,
    PartialTransferRequest,
    PartialTransferResponse,
    ProductResponse,
    SyncResultResponse,
    TraceabilityResponse,
    TransferCreationResponse,
    TransferFromAllocationCreate,
    TransferLinkCreate,
    TransferLinkResponse,
    TransferResponse,
)
from allocator.services import allocation_transfer_service as bridge
from allocator.services.allocation_transfer_service import TransferLinkView

router = APIRouter()


def _transfer(t: Optional[Transfer]) -> Optional[TransferResponse]:
    if t is None:
        return None
    return TransferResponse(
        id=str(t.id),
        product_id=str(t.product_id),
        source_location_id=str(t.source_location_id),
        destination_location_id=str(t.destination_location_id),
        quantity_requested=t.quantity_requested,
        quantity_shipped=t.quantity_shipped or 0,
        quantity_received=t.quantity_received or 0,
        priority=t.priority,
        status=t.status,
        notes=t.notes,
        reason_code=t.reason_code,
        created_at=iso(t.created_at),
    )


def _link(link) -> TransferLinkResponse:
    if isinstance(link, TransferLinkView):
        return TransferLinkResponse(
            id=link.id,
            transfer_id=link.transfer_id,
            allocation_id=link.allocation_id,
            created_at=iso(link.created_at),
            transfer=_transfer(link.transfer),
            allocation=allocation_to_response(link.allocation) if link.allocation else None,
        )
    return TransferLinkResponse(
        id=str(link.id),
        transfer_id=str(link.transfer_id),
        allocation_id=str(link.allocation_id),
        created_at=iso(link.created_at),
    )


@router.post("", response_model=TransferCreationResponse, status_code=status.HTTP_201_CREATED)
async def create_transfer_from_allocation(
    body: TransferFromAllocationCreate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    created = await bridge.create_transfer_from_allocation(
        db,
        body.allocation_id,
        body.destination_location_id,
        current_user["tenant_id"],
        current_user["user_id"],
        priority=body.priority,
        notes=body.notes,
        reason_code=body.reason_code,
    )
    return TransferCreationResponse(
        transfer=_transfer(created.movement), link=_link(created.link)
    )


@router.post("/links", response_model=TransferLinkResponse, status_code=status.HTTP_201_CREATED)
async def link_transfer(
    body: TransferLinkCreate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    link: TransferAllocation = await bridge.link_transfer_to_allocation(
        db,
        body.transfer_id,
        body.allocation_id,
        current_user["tenant_id"],
        current_user["user_id"],
    )
    return _link(link)


@router.get("/transfers/{transfer_id}/links", response_model=list[TransferLinkResponse])
async def get_transfer_links(
    transfer_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    links = await bridge.get_transfer_allocation_links(
        db, transfer_id, current_user["tenant_id"]
    )
    return [_link(link) for link in links]


@router.get("/allocations/{allocation_id}/links", response_model=list[TransferLinkResponse])
async def get_allocation_links(
    allocation_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    links = await bridge.get_allocation_transfer_links(
        db, allocation_id, current_user["tenant_id"]
    )
    return [_link(link) for link in links]


@router.post("/allocations/{allocation_id}/sync", response_model=list[SyncResultResponse])
async def sync_status(
    allocation_id: str,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    results = await bridge.sync_allocation_transfer_status(
        db, allocation_id, current_user["tenant_id"]
    )
    return [
        SyncResultResponse(**{**vars(r), "synced_at": iso(r.synced_at)})
        for r in results
    ]


@router.post("/allocations/{allocation_id}/partial", response_model=PartialTransferResponse)
async def split_partial_transfer(
    allocation_id: str,
    body: PartialTransferRequest,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    result = await bridge.handle_partial_transfer_scenario(
        db,
        allocation_id,
        body.partial_quantity,
        current_user["tenant_id"],
        current_user["user_id"],
    )
    return PartialTransferResponse(
        original_transfer=_transfer(result.original_transfer),
        partial_transfer=_transfer(result.partial_transfer),
        links=[_link(link) for link in result.links],
    )


@router.get("/allocations/{allocation_id}/traceability", response_model=TraceabilityResponse)
async def get_traceability(
    allocation_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    chain = await bridge.get_traceability_chain(
        db, allocation_id, current_user["tenant_id"]
    )
    product = chain["product"]
    return TraceabilityResponse(
        allocation=allocation_to_response(chain["allocation"]),
        po_number=chain["line_item"].po_number,
        transfers=[_transfer(t) for t in chain["transfers"]],
        locations=[
            LocationResponse(id=str(loc.id), name=loc.name, type=loc.type, address=loc.address)
            for loc in chain["locations"]
        ],
        product=(
            ProductResponse(id=str(product.id), name=product.name, sku=product.sku, unit=product.unit)
            if product
            else None
        ),
    )
