"""Status changes across many allocations, and status history."""

from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from allocator.errors import AllocationError, ErrorCode, not_found
from allocator.models.allocation import (
    Allocation,
    AllocationAuditLog,
    AllocationStatus,
    AuditAction,
)
from allocator.models.purchase_order import PoLineItem
from allocator.services import allocation_service, directory

logger = structlog.get_logger()


@dataclass
class BulkStatusResult:
    success: bool
    updated: list[Allocation] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)


async def bulk_update_allocation_status(
    session: AsyncSession,
    allocation_ids: list[str],
    new_status: str,
    tenant_id: str,
    actor_id: Optional[str],
    notes: Optional[str] = None,
) -> BulkStatusResult:
    """Each change is its own savepoint; a refused change does not undo the others."""
    if not allocation_ids:
        raise AllocationError(ErrorCode.INVALID_INPUT, "No allocations supplied")

    result = BulkStatusResult(success=True)
    for allocation_id in dict.fromkeys(str(i) for i in allocation_ids):
        try:
            allocation = await allocation_service.update_allocation_status(
                session, allocation_id, new_status, tenant_id, actor_id, notes
            )
        except AllocationError as exc:
            result.failed.append({
                "allocation_id": allocation_id,
                "code": exc.code.value,
                "error": exc.message,
            })
        else:
            result.updated.append(allocation)

    result.success = not result.failed
    logger.info(
        "bulk_allocation_status_updated",
        new_status=new_status,
        updated=len(result.updated),
        failed=len(result.failed),
    )
    return result


async def propagate_purchase_order_status(
    session: AsyncSession,
    po_id: str,
    po_status: str,
    tenant_id: str,
    actor_id: Optional[str],
) -> BulkStatusResult:
    """
    Follow a purchase order status change onto its allocations.

    CANCELLED cancels every allocation still PENDING or SHIPPED. RECEIVED
    ships every PENDING allocation. Any other status changes nothing.
    """
    if po_status == "CANCELLED":
        from_statuses = [AllocationStatus.PENDING.value, AllocationStatus.SHIPPED.value]
        target = AllocationStatus.CANCELLED.value
    elif po_status == "RECEIVED":
        from_statuses = [AllocationStatus.PENDING.value]
        target = AllocationStatus.SHIPPED.value
    else:
        return BulkStatusResult(success=True)

    po = await directory.get_purchase_order(session, po_id, tenant_id)
    if not po:
        raise not_found("Purchase order")

    rows = await session.execute(
        select(Allocation.id)
        .join(PoLineItem, PoLineItem.id == Allocation.po_item_id)
        .where(
            Allocation.tenant_id == tenant_id,
            PoLineItem.po_id == po_id,
            Allocation.status.in_(from_statuses),
        )
        .order_by(Allocation.created_at)
    )
    ids = [str(i) for i in rows.scalars().all()]
    if not ids:
        return BulkStatusResult(success=True)

    logger.info(
        "purchase_order_status_propagating",
        po_id=str(po_id),
        po_status=po_status,
        allocations=len(ids),
    )
    return await bulk_update_allocation_status(
        session,
        ids,
        target,
        tenant_id,
        actor_id,
        notes=f"Purchase order {po.po_number} {po_status.lower()}",
    )


async def get_status_history(
    session: AsyncSession, allocation_id: str, tenant_id: str
) -> list[dict]:
    """STATUS_CHANGED entries, oldest first. Works for deleted allocations too."""
    result = await session.execute(
        select(AllocationAuditLog)
        .where(
            AllocationAuditLog.tenant_id == tenant_id,
            AllocationAuditLog.allocation_id == allocation_id,
            AllocationAuditLog.action == AuditAction.STATUS_CHANGED.value,
        )
        .order_by(AllocationAuditLog.performed_at, AllocationAuditLog.id)
    )
    return [
        {
            "from_status": (entry.old_values or {}).get("status"),
            "to_status": (entry.new_values or {}).get("status"),
            "performed_by": str(entry.performed_by) if entry.performed_by else None,
            "performed_at": entry.performed_at,
            "notes": entry.notes,
        }
        for entry in result.scalars().all()
    ]
