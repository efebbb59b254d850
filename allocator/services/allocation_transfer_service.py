"""
Allocation to movement bridge.

Spawns and links movement requests for shipped allocations, pulls movement
status back onto the allocation and rebuilds the provenance chain. The only
allocation field this module changes is status, and only through
allocation_service.update_allocation_status.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from allocator.config import settings
from allocator.errors import AllocationError, ErrorCode, not_found
from allocator.models.allocation import Allocation, AllocationStatus
from allocator.models.transfer import Transfer, TransferAllocation
from allocator.services import allocation_service, directory
from allocator.services.directory import MovementRequest

logger = structlog.get_logger()

PARTIAL_REASON_CODE = "PARTIAL_TRANSFER"


@dataclass
class TransferLinkView:
    id: str
    transfer_id: str
    allocation_id: str
    created_at: datetime
    transfer: Optional[Transfer] = None
    allocation: Optional[Allocation] = None


@dataclass
class TransferCreation:
    movement: Transfer
    link: TransferAllocation


@dataclass
class SyncResult:
    allocation_id: str
    transfer_id: str
    transfer_status: Optional[str]
    allocation_status: str
    allocation_status_updated: bool = False
    synced_at: datetime = field(default_factory=datetime.utcnow)
    error: Optional[str] = None


@dataclass
class PartialTransferResult:
    original_transfer: Transfer
    partial_transfer: Transfer
    links: list


async def _require_allocation(
    session: AsyncSession, allocation_id: str, tenant_id: str
) -> Allocation:
    if not allocation_id:
        raise AllocationError(ErrorCode.INVALID_INPUT, "Allocation id is required")
    allocation = await allocation_service.get_allocation(session, allocation_id, tenant_id)
    if not allocation:
        raise not_found("Allocation")
    return allocation


async def _require_actor(session: AsyncSession, actor_id: str, tenant_id: str) -> None:
    if not await directory.user_exists(session, actor_id, tenant_id):
        raise not_found("User")


async def _insert_link(
    session: AsyncSession, transfer_id, allocation_id, tenant_id: str
) -> TransferAllocation:
    link = TransferAllocation(
        tenant_id=tenant_id,
        transfer_id=transfer_id,
        allocation_id=allocation_id,
        created_at=datetime.utcnow(),
    )
    try:
        async with session.begin_nested():
            session.add(link)
            await session.flush()
    except IntegrityError as exc:
        raise AllocationError(
            ErrorCode.DUPLICATE_LINK,
            "Movement is already linked to this allocation",
        ) from exc

    logger.info(
        "transfer_allocation_linked",
        link_id=str(link.id),
        transfer_id=str(transfer_id),
        allocation_id=str(allocation_id),
    )
    return link


async def create_transfer_from_allocation(
    session: AsyncSession,
    allocation_id: str,
    destination_location_id: str,
    tenant_id: str,
    actor_id: str,
    priority: str = "NORMAL",
    notes: Optional[str] = None,
    reason_code: Optional[str] = None,
) -> TransferCreation:
    """
    Request a movement out of a SHIPPED allocation's location.

    The allocation's destination is the movement source. Quantity is the
    received quantity when one is recorded, else the allocated quantity.
    """
    allocation = await _require_allocation(session, allocation_id, tenant_id)
    if allocation.status != AllocationStatus.SHIPPED.value:
        raise AllocationError(
            ErrorCode.INVALID_STATE,
            f"Movements can only be created from SHIPPED allocations (status is {allocation.status})",
        )
    if not destination_location_id:
        raise AllocationError(
            ErrorCode.INVALID_INPUT, "Movement destination location is required"
        )
    if not await directory.location_exists(session, destination_location_id, tenant_id):
        raise not_found("Location")
    await _require_actor(session, actor_id, tenant_id)

    line = await directory.get_line_item(session, str(allocation.po_item_id), tenant_id)
    if not line:
        raise not_found("Line item")

    quantity = allocation.quantity_received or allocation.quantity_allocated
    movement = await directory.create_movement_request(
        session,
        tenant_id,
        actor_id,
        MovementRequest(
            product_id=line.product_id,
            source_location_id=str(allocation.target_location_id),
            destination_location_id=str(destination_location_id),
            quantity=quantity,
            priority=priority or "NORMAL",
            notes=notes,
            reason_code=reason_code,
        ),
    )
    link = await _insert_link(session, movement.id, allocation.id, tenant_id)

    logger.info(
        "transfer_created_from_allocation",
        allocation_id=str(allocation.id),
        transfer_id=str(movement.id),
        quantity=quantity,
    )
    return TransferCreation(movement=movement, link=link)


async def link_transfer_to_allocation(
    session: AsyncSession,
    movement_id: str,
    allocation_id: str,
    tenant_id: str,
    actor_id: str,
) -> TransferAllocation:
    """
    Attach an existing movement to an allocation.

    A pair can be linked once (DUPLICATE_LINK). A movement already linked
    to a different allocation is refused with ALREADY_LINKED.
    """
    if not movement_id or not allocation_id:
        raise AllocationError(
            ErrorCode.INVALID_INPUT, "Movement id and allocation id are required"
        )
    movement = await directory.get_movement(session, movement_id, tenant_id)
    if not movement:
        raise not_found("Movement")
    allocation = await _require_allocation(session, allocation_id, tenant_id)
    await _require_actor(session, actor_id, tenant_id)

    result = await session.execute(
        select(TransferAllocation.allocation_id).where(
            TransferAllocation.tenant_id == tenant_id,
            TransferAllocation.transfer_id == movement.id,
        )
    )
    linked_to = {str(i) for i in result.scalars().all()}
    if str(allocation.id) in linked_to:
        raise AllocationError(
            ErrorCode.DUPLICATE_LINK, "Movement is already linked to this allocation"
        )
    if linked_to:
        raise AllocationError(
            ErrorCode.ALREADY_LINKED,
            "Movement is already linked to another allocation",
            details={"allocation_ids": sorted(linked_to)},
        )

    return await _insert_link(session, movement.id, allocation.id, tenant_id)


async def _links(session: AsyncSession, tenant_id: str, *criteria) -> list[TransferLinkView]:
    result = await session.execute(
        select(TransferAllocation, Transfer, Allocation)
        .outerjoin(
            Transfer,
            (Transfer.id == TransferAllocation.transfer_id)
            & (Transfer.tenant_id == tenant_id),
        )
        .outerjoin(
            Allocation,
            (Allocation.id == TransferAllocation.allocation_id)
            & (Allocation.tenant_id == tenant_id),
        )
        .where(TransferAllocation.tenant_id == tenant_id, *criteria)
        .order_by(TransferAllocation.created_at.desc(), TransferAllocation.id.desc())
    )
    return [
        TransferLinkView(
            id=str(link.id),
            transfer_id=str(link.transfer_id),
            allocation_id=str(link.allocation_id),
            created_at=link.created_at,
            transfer=transfer,
            allocation=allocation,
        )
        for link, transfer, allocation in result.all()
    ]


async def get_transfer_allocation_links(
    session: AsyncSession, movement_id: str, tenant_id: str
) -> list[TransferLinkView]:
    if not movement_id:
        raise AllocationError(ErrorCode.INVALID_INPUT, "Movement id is required")
    return await _links(session, tenant_id, TransferAllocation.transfer_id == movement_id)


async def get_allocation_transfer_links(
    session: AsyncSession, allocation_id: str, tenant_id: str
) -> list[TransferLinkView]:
    if not allocation_id:
        raise AllocationError(ErrorCode.INVALID_INPUT, "Allocation id is required")
    return await _links(
        session, tenant_id, TransferAllocation.allocation_id == allocation_id
    )


async def sync_allocation_transfer_status(
    session: AsyncSession, allocation_id: str, tenant_id: str
) -> list[SyncResult]:
    """
    Pull linked movement status onto the allocation as a system change.

    Any RECEIVED movement moves the allocation to RECEIVED; running the sync
    again changes nothing. Otherwise a CANCELLED movement cancels the
    allocation, but only when CANCEL_ALLOCATION_ON_MOVEMENT_CANCEL is set. A refused transition is
    recorded on that link's result.
    """
    allocation = await _require_allocation(session, allocation_id, tenant_id)
    links = await get_allocation_transfer_links(session, allocation_id, tenant_id)

    movements = [link for link in links if link.transfer is not None]
    statuses = {link.transfer.status for link in movements}

    # Any received movement wins over cancelled ones, whatever the link order.
    target, driving_status = None, None
    if "RECEIVED" in statuses:
        target, driving_status = AllocationStatus.RECEIVED.value, "RECEIVED"
    elif (
        "CANCELLED" in statuses
        and settings.CANCEL_ALLOCATION_ON_MOVEMENT_CANCEL
        and allocation_service.valid_transitions(allocation.status)
    ):
        target, driving_status = AllocationStatus.CANCELLED.value, "CANCELLED"

    results = []
    for link in movements:
        movement_status = link.transfer.status
        outcome = SyncResult(
            allocation_id=str(allocation.id),
            transfer_id=link.transfer_id,
            transfer_status=movement_status,
            allocation_status=allocation.status,
        )
        if movement_status == driving_status and allocation.status != target:
            try:
                allocation = await allocation_service.update_allocation_status(
                    session,
                    str(allocation.id),
                    target,
                    tenant_id,
                    None,
                    notes=f"Synced from movement {link.transfer_id} ({movement_status})",
                )
            except AllocationError as exc:
                outcome.error = exc.message
                logger.warning(
                    "allocation_transfer_sync_refused",
                    allocation_id=str(allocation.id),
                    transfer_id=link.transfer_id,
                    code=exc.code.value,
                )
            else:
                outcome.allocation_status_updated = True
                outcome.allocation_status = allocation.status
        results.append(outcome)

    logger.info(
        "allocation_transfer_status_synced",
        allocation_id=str(allocation_id),
        links=len(results),
        updated=sum(1 for r in results if r.allocation_status_updated),
    )
    return results


async def handle_partial_transfer_scenario(
    session: AsyncSession,
    allocation_id: str,
    partial_quantity: int,
    tenant_id: str,
    actor_id: str,
) -> PartialTransferResult:
    """
    Split the remainder of the latest linked movement into a new movement.

    partial_quantity is what arrived; the new movement carries
    quantity_requested - partial_quantity and is linked to the same allocation.
    """
    if (
        not isinstance(partial_quantity, int)
        or isinstance(partial_quantity, bool)
        or partial_quantity <= 0
    ):
        raise AllocationError(
            ErrorCode.INVALID_INPUT, "Partial quantity must be a positive integer"
        )
    allocation = await _require_allocation(session, allocation_id, tenant_id)
    await _require_actor(session, actor_id, tenant_id)

    links = await get_allocation_transfer_links(session, allocation_id, tenant_id)
    if not links:
        raise AllocationError(
            ErrorCode.INVALID_STATE, "No movements are linked to this allocation"
        )
    original_link = links[0]
    original = original_link.transfer
    if original is None:
        raise not_found("Movement")
    if partial_quantity >= original.quantity_requested:
        raise AllocationError(
            ErrorCode.INVALID_INPUT,
            f"Partial quantity must be less than the movement quantity ({original.quantity_requested})",
        )

    remainder = original.quantity_requested - partial_quantity
    partial = await directory.create_movement_request(
        session,
        tenant_id,
        actor_id,
        MovementRequest(
            product_id=str(original.product_id),
            source_location_id=str(original.source_location_id),
            destination_location_id=str(original.destination_location_id),
            quantity=remainder,
            priority=original.priority,
            notes=f"Partial transfer created from original transfer {original.id}",
            reason_code=PARTIAL_REASON_CODE,
        ),
    )
    partial_link = await _insert_link(session, partial.id, allocation.id, tenant_id)

    logger.info(
        "partial_transfer_created",
        allocation_id=str(allocation.id),
        original_transfer_id=str(original.id),
        partial_transfer_id=str(partial.id),
        remainder=remainder,
    )
    return PartialTransferResult(
        original_transfer=original,
        partial_transfer=partial,
        links=[original_link, partial_link],
    )


async def get_traceability_chain(
    session: AsyncSession, allocation_id: str, tenant_id: str
) -> dict:
    """Allocation, its movements, every location touched and the product."""
    allocation = await _require_allocation(session, allocation_id, tenant_id)
    links = await get_allocation_transfer_links(session, allocation_id, tenant_id)
    transfers = [link.transfer for link in links if link.transfer is not None]

    location_ids = [str(allocation.target_location_id)]
    for t in transfers:
        location_ids += [str(t.source_location_id), str(t.destination_location_id)]
    locations = await directory.get_locations(session, location_ids, tenant_id)

    line = await directory.get_line_item(session, str(allocation.po_item_id), tenant_id)
    if not line:
        raise not_found("Line item")
    product = await directory.get_product(session, line.product_id, tenant_id)

    return {
        "allocation": allocation,
        "line_item": line,
        "transfers": transfers,
        "locations": locations,
        "product": product,
    }
