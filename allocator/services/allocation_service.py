"""
Allocation ledger: reservations of purchase-order line items for locations.

Every mutation runs in a savepoint on the caller's session and writes its
audit entry inside the same savepoint. Creates and quantity changes lock the
parent po_line_items row (SELECT FOR UPDATE) before re-reading the existing
allocations, so concurrent writers on one line item are serialized.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from functools import wraps
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)
import structlog

from allocator.config import settings
from allocator.errors import AllocationError, ErrorCode, not_found
from allocator.models.allocation import Allocation, AllocationStatus, AuditAction
from allocator.models.purchase_order import PoLineItem
from allocator.services import directory
from allocator.services.allocation_audit_service import log_allocation_audit

logger = structlog.get_logger()
_std_logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[str, list[str]] = {
    AllocationStatus.PENDING.value: [
        AllocationStatus.SHIPPED.value,
        AllocationStatus.CANCELLED.value,
    ],
    AllocationStatus.SHIPPED.value: [
        AllocationStatus.RECEIVED.value,
        AllocationStatus.CANCELLED.value,
    ],
    AllocationStatus.RECEIVED.value: [],
    AllocationStatus.CANCELLED.value: [],
}

_RECEIVABLE = (AllocationStatus.PENDING.value, AllocationStatus.SHIPPED.value)

# SQLSTATE serialization_failure / deadlock_detected
_CONFLICT_SQLSTATES = {"40001", "40P01"}


@dataclass
class ValidationResult:
    valid: bool
    errors: list[dict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    ordered_quantity: int = 0
    allocated_quantity: int = 0
    proposed_quantity: int = 0

    @property
    def messages(self) -> list[str]:
        return [e["message"] for e in self.errors]


@dataclass
class LineItemAllocations:
    po_item_id: str
    product_id: str
    product_name: Optional[str]
    quantity_ordered: int
    unit_price_cents: int
    allocations: list
    total_allocated: int
    unallocated_quantity: int


@dataclass
class LocationSummary:
    location_id: str
    location_name: Optional[str]
    allocation_count: int = 0
    total_allocated_items: int = 0
    total_allocated_value_cents: int = 0


@dataclass
class AllocationMatrix:
    po_id: str
    po_number: str
    po_status: str
    line_items: list[LineItemAllocations]
    total_allocated: int
    location_summary: list[LocationSummary]


def valid_transitions(status: str) -> list[str]:
    return list(VALID_TRANSITIONS.get(str(status), []))


def allowed_operations(status: str) -> dict[str, bool]:
    """Which ledger operations an allocation in this status accepts."""
    status = str(status)
    return {
        "can_update_quantity": status == AllocationStatus.PENDING.value,
        "can_update_notes": status == AllocationStatus.PENDING.value,
        "can_update_received": status in _RECEIVABLE,
        "can_delete": status == AllocationStatus.PENDING.value,
        "can_change_status": bool(VALID_TRANSITIONS.get(status)),
    }


def _is_write_conflict(exc: BaseException) -> bool:
    if not isinstance(exc, DBAPIError) or isinstance(exc, IntegrityError):
        return False
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return sqlstate in _CONFLICT_SQLSTATES


def _serialized_write(operation: str):
    """Bounded retry on serialization failures; exhaustion is WRITE_CONFLICT."""

    def decorator(fn):
        retrying = retry(
            retry=retry_if_exception(_is_write_conflict),
            stop=stop_after_attempt(settings.ALLOCATION_WRITE_RETRY_ATTEMPTS),
            wait=wait_exponential(multiplier=0.05, min=0.05, max=1),
            before_sleep=before_sleep_log(_std_logger, logging.WARNING),
            reraise=True,
        )(fn)

        @wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await retrying(*args, **kwargs)
            except DBAPIError as exc:
                if not _is_write_conflict(exc):
                    raise
                logger.warning(
                    "allocation_write_conflict_exhausted",
                    operation=operation,
                    attempts=settings.ALLOCATION_WRITE_RETRY_ATTEMPTS,
                )
                raise AllocationError(
                    ErrorCode.WRITE_CONFLICT,
                    f"Concurrent update conflict during allocation {operation}",
                ) from exc

        return wrapper

    return decorator


def _is_positive_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def check_constraints(
    line: directory.LineItemInfo,
    existing: list[Allocation],
    proposed: list[tuple[str, int]],
    exclude_id: Optional[str] = None,
) -> ValidationResult:
    """Invariant checks against already-loaded state. No I/O."""
    errors: list[dict] = []
    warnings: list[str] = []

    if line.po_status != "APPROVED":
        errors.append({
            "code": ErrorCode.INVALID_STATE.value,
            "message": f"Purchase order {line.po_number} is {line.po_status}, not APPROVED",
        })

    others = [
        a for a in existing if exclude_id is None or str(a.id) != str(exclude_id)
    ]
    taken = {str(a.target_location_id) for a in others}
    existing_total = sum(a.quantity_allocated for a in others)

    seen: set[str] = set()
    proposed_total = 0
    for destination_id, quantity in proposed:
        dest = str(destination_id) if destination_id else ""
        if not dest:
            errors.append({
                "code": ErrorCode.INVALID_INPUT.value,
                "message": "Destination location is required",
            })
            continue
        if not _is_positive_int(quantity):
            errors.append({
                "code": ErrorCode.INVALID_INPUT.value,
                "message": f"Allocation quantity for location {dest} must be a positive integer",
                "destination_id": dest,
            })
        else:
            proposed_total += quantity
        if dest in seen:
            errors.append({
                "code": ErrorCode.DUPLICATE_DESTINATION.value,
                "message": f"Duplicate allocation for location {dest} in request",
                "destination_id": dest,
            })
        elif dest in taken:
            errors.append({
                "code": ErrorCode.DUPLICATE_DESTINATION.value,
                "message": f"Location {dest} already has an allocation for this line item",
                "destination_id": dest,
            })
        seen.add(dest)

    total = existing_total + proposed_total
    if total > line.ordered_quantity:
        errors.append({
            "code": ErrorCode.OVER_ALLOCATION.value,
            "message": (
                f"Over-allocation: total allocation ({total}) exceeds ordered "
                f"quantity ({line.ordered_quantity}) by {total - line.ordered_quantity}"
            ),
        })
    elif proposed_total and total == line.ordered_quantity:
        warnings.append("Line item will be fully allocated")

    return ValidationResult(
        valid=not errors,
        errors=errors,
        warnings=warnings,
        ordered_quantity=line.ordered_quantity,
        allocated_quantity=existing_total,
        proposed_quantity=proposed_total,
    )


def _raise_first(result: ValidationResult) -> None:
    if result.valid:
        return
    first = result.errors[0]
    raise AllocationError(
        ErrorCode(first["code"]),
        first["message"],
        details={
            "errors": result.errors,
            "ordered_quantity": result.ordered_quantity,
            "allocated_quantity": result.allocated_quantity,
        },
    )


async def list_line_item_allocations(
    session: AsyncSession, line_item_id: str, tenant_id: str
) -> list[Allocation]:
    result = await session.execute(
        select(Allocation).where(
            Allocation.po_item_id == line_item_id,
            Allocation.tenant_id == tenant_id,
        )
    )
    return list(result.scalars().all())


async def _load_allocation(
    session: AsyncSession,
    allocation_id: str,
    tenant_id: str,
    for_update: bool = False,
) -> Allocation:
    stmt = select(Allocation).where(
        Allocation.id == allocation_id,
        Allocation.tenant_id == tenant_id,
    )
    if for_update:
        stmt = stmt.with_for_update()
    allocation = (await session.execute(stmt)).scalar_one_or_none()
    if not allocation:
        raise not_found("Allocation")
    return allocation


async def get_allocation(
    session: AsyncSession, allocation_id: str, tenant_id: str
) -> Optional[Allocation]:
    result = await session.execute(
        select(Allocation).where(
            Allocation.id == allocation_id,
            Allocation.tenant_id == tenant_id,
        )
    )
    return result.scalar_one_or_none()


async def validate_allocation_constraints(
    session: AsyncSession,
    line_item_id: str,
    proposed: list[tuple[str, int]],
    tenant_id: str,
    exclude_id: Optional[str] = None,
) -> ValidationResult:
    """Dry check of proposed (destination, quantity) pairs. Writes nothing."""
    if not line_item_id:
        raise AllocationError(ErrorCode.INVALID_INPUT, "Line item is required")
    line = await directory.get_line_item(session, line_item_id, tenant_id)
    if not line:
        raise not_found("Line item")
    existing = await list_line_item_allocations(session, line_item_id, tenant_id)
    return check_constraints(line, existing, proposed, exclude_id)


@_serialized_write("create")
async def create_allocation(
    session: AsyncSession,
    line_item_id: str,
    destination_id: str,
    quantity: int,
    notes: Optional[str],
    tenant_id: str,
    actor_id: str,
) -> Allocation:
    if not line_item_id or not destination_id:
        raise AllocationError(
            ErrorCode.INVALID_INPUT, "Line item and destination location are required"
        )
    if not _is_positive_int(quantity):
        raise AllocationError(
            ErrorCode.INVALID_INPUT, "Allocation quantity must be a positive integer"
        )
    if not await directory.location_exists(session, destination_id, tenant_id):
        raise not_found("Location")
    if not await directory.user_exists(session, actor_id, tenant_id):
        raise not_found("User")

    try:
        async with session.begin_nested():
            line = await directory.get_line_item(
                session, line_item_id, tenant_id, for_update=True
            )
            if not line:
                raise not_found("Line item")
            if line.po_status != "APPROVED":
                raise AllocationError(
                    ErrorCode.INVALID_STATE,
                    f"Purchase order {line.po_number} is {line.po_status}, not APPROVED",
                )

            existing = await list_line_item_allocations(session, line_item_id, tenant_id)
            _raise_first(
                check_constraints(line, existing, [(destination_id, quantity)])
            )

            now = datetime.utcnow()
            allocation = Allocation(
                id=uuid.uuid4(),
                tenant_id=tenant_id,
                po_item_id=line_item_id,
                target_location_id=destination_id,
                quantity_allocated=quantity,
                quantity_received=0,
                status=AllocationStatus.PENDING.value,
                notes=notes,
                created_by=actor_id,
                created_at=now,
                updated_at=now,
            )
            session.add(allocation)
            await session.flush()

            await log_allocation_audit(
                session,
                tenant_id=tenant_id,
                allocation_id=allocation.id,
                action=AuditAction.CREATED.value,
                old_values=None,
                new_values=allocation.snapshot(),
                performed_by=actor_id,
                notes=notes,
            )
    except IntegrityError as exc:
        logger.warning(
            "allocation_duplicate_destination",
            line_item_id=str(line_item_id),
            destination_id=str(destination_id),
        )
        raise AllocationError(
            ErrorCode.DUPLICATE_DESTINATION,
            f"Location {destination_id} already has an allocation for this line item",
        ) from exc

    logger.info(
        "allocation_created",
        allocation_id=str(allocation.id),
        line_item_id=str(line_item_id),
        destination_id=str(destination_id),
        quantity=quantity,
        actor_id=str(actor_id),
    )
    return allocation


@_serialized_write("update")
async def update_allocation(
    session: AsyncSession,
    allocation_id: str,
    changes: dict,
    tenant_id: str,
    actor_id: str,
) -> Allocation:
    """
    Apply any of quantity / received_quantity / notes.

    Quantity and notes need PENDING; received quantity needs PENDING or
    SHIPPED and must stay within the allocated quantity.
    """
    changes = {k: v for k, v in (changes or {}).items() if k in (
        "quantity", "received_quantity", "notes"
    )}
    if not changes:
        raise AllocationError(ErrorCode.INVALID_INPUT, "No changes supplied")

    async with session.begin_nested():
        allocation = await _load_allocation(
            session, allocation_id, tenant_id, for_update=True
        )
        status = allocation.status

        if ("quantity" in changes or "notes" in changes) and status != AllocationStatus.PENDING.value:
            raise AllocationError(
                ErrorCode.INVALID_STATE,
                f"Quantity and notes can only change while PENDING (status is {status})",
            )
        if "received_quantity" in changes and status not in _RECEIVABLE:
            raise AllocationError(
                ErrorCode.INVALID_STATE,
                f"Received quantity cannot change in status {status}",
            )

        new_quantity = allocation.quantity_allocated
        if "quantity" in changes:
            new_quantity = changes["quantity"]
            if not _is_positive_int(new_quantity):
                raise AllocationError(
                    ErrorCode.INVALID_INPUT,
                    "Allocation quantity must be a positive integer",
                )
            line = await directory.get_line_item(
                session, str(allocation.po_item_id), tenant_id, for_update=True
            )
            if not line:
                raise not_found("Line item")
            existing = await list_line_item_allocations(
                session, str(allocation.po_item_id), tenant_id
            )
            others = sum(
                a.quantity_allocated for a in existing if str(a.id) != str(allocation.id)
            )
            if others + new_quantity > line.ordered_quantity:
                raise AllocationError(
                    ErrorCode.OVER_ALLOCATION,
                    f"Over-allocation: total allocation ({others + new_quantity}) exceeds "
                    f"ordered quantity ({line.ordered_quantity})",
                    details={
                        "ordered_quantity": line.ordered_quantity,
                        "allocated_quantity": others,
                        "requested_quantity": new_quantity,
                    },
                )

        new_received = changes.get("received_quantity", allocation.quantity_received or 0)
        if (
            not isinstance(new_received, int)
            or isinstance(new_received, bool)
            or new_received < 0
            or new_received > new_quantity
        ):
            raise AllocationError(
                ErrorCode.INVALID_INPUT,
                f"Received quantity must be between 0 and {new_quantity}",
            )

        before = allocation.snapshot()
        allocation.quantity_allocated = new_quantity
        allocation.quantity_received = new_received
        if "notes" in changes:
            allocation.notes = changes["notes"]
        allocation.updated_at = datetime.utcnow()
        await session.flush()

        await log_allocation_audit(
            session,
            tenant_id=tenant_id,
            allocation_id=allocation.id,
            action=AuditAction.UPDATED.value,
            old_values=before,
            new_values=allocation.snapshot(),
            performed_by=actor_id,
        )

    logger.info(
        "allocation_updated",
        allocation_id=str(allocation.id),
        fields=sorted(changes),
        actor_id=str(actor_id),
    )
    return allocation


@_serialized_write("delete")
async def delete_allocation(
    session: AsyncSession,
    allocation_id: str,
    tenant_id: str,
    actor_id: str,
) -> None:
    async with session.begin_nested():
        allocation = await _load_allocation(
            session, allocation_id, tenant_id, for_update=True
        )
        if allocation.status != AllocationStatus.PENDING.value:
            raise AllocationError(
                ErrorCode.INVALID_STATE,
                f"Only PENDING allocations can be deleted (status is {allocation.status})",
            )

        before = allocation.snapshot()
        await session.delete(allocation)
        await session.flush()

        await log_allocation_audit(
            session,
            tenant_id=tenant_id,
            allocation_id=allocation_id,
            action=AuditAction.DELETED.value,
            old_values=before,
            new_values=None,
            performed_by=actor_id,
        )

    logger.info(
        "allocation_deleted", allocation_id=str(allocation_id), actor_id=str(actor_id)
    )


@_serialized_write("status change")
async def update_allocation_status(
    session: AsyncSession,
    allocation_id: str,
    new_status: str,
    tenant_id: str,
    actor_id: Optional[str],
    notes: Optional[str] = None,
) -> Allocation:
    """Move along PENDING -> SHIPPED -> RECEIVED, or to CANCELLED. actor_id None is a system change."""
    try:
        new_status = AllocationStatus(new_status).value
    except ValueError:
        raise AllocationError(
            ErrorCode.INVALID_INPUT, f"Unknown allocation status {new_status}"
        )

    async with session.begin_nested():
        allocation = await _load_allocation(
            session, allocation_id, tenant_id, for_update=True
        )
        old_status = allocation.status
        if new_status not in VALID_TRANSITIONS.get(old_status, []):
            raise AllocationError(
                ErrorCode.INVALID_TRANSITION,
                f"Cannot transition allocation from {old_status} to {new_status}",
                details={"allowed": valid_transitions(old_status)},
            )

        allocation.status = new_status
        allocation.updated_at = datetime.utcnow()
        await session.flush()

        await log_allocation_audit(
            session,
            tenant_id=tenant_id,
            allocation_id=allocation.id,
            action=AuditAction.STATUS_CHANGED.value,
            old_values={"status": old_status},
            new_values={"status": new_status},
            performed_by=actor_id,
            notes=notes,
        )

    logger.info(
        "allocation_status_changed",
        allocation_id=str(allocation.id),
        from_status=old_status,
        to_status=new_status,
        actor_id=str(actor_id) if actor_id else "system",
    )
    return allocation


async def get_allocations_for_purchase_order(
    session: AsyncSession, po_id: str, tenant_id: str
) -> AllocationMatrix:
    po = await directory.get_purchase_order(session, po_id, tenant_id)
    if not po:
        raise not_found("Purchase order")

    items = await directory.list_line_items(session, po_id, tenant_id)
    allocations: list[Allocation] = []
    if items:
        result = await session.execute(
            select(Allocation)
            .where(
                Allocation.tenant_id == tenant_id,
                Allocation.po_item_id.in_([i.id for i in items]),
            )
            .order_by(Allocation.created_at)
        )
        allocations = list(result.scalars().all())

    names = await directory.get_location_names(
        session, [a.target_location_id for a in allocations], tenant_id
    )

    by_item: dict[str, list[Allocation]] = {}
    for alloc in allocations:
        by_item.setdefault(str(alloc.po_item_id), []).append(alloc)

    line_items = []
    summary: dict[str, LocationSummary] = {}
    for item in items:
        item_allocs = by_item.get(item.id, [])
        total = sum(a.quantity_allocated for a in item_allocs)
        line_items.append(LineItemAllocations(
            po_item_id=item.id,
            product_id=item.product_id,
            product_name=item.product_name,
            quantity_ordered=item.ordered_quantity,
            unit_price_cents=item.unit_price_cents,
            allocations=item_allocs,
            total_allocated=total,
            unallocated_quantity=item.ordered_quantity - total,
        ))
        for alloc in item_allocs:
            loc_id = str(alloc.target_location_id)
            loc = summary.setdefault(
                loc_id, LocationSummary(location_id=loc_id, location_name=names.get(loc_id))
            )
            loc.allocation_count += 1
            loc.total_allocated_items += alloc.quantity_allocated
            loc.total_allocated_value_cents += alloc.quantity_allocated * item.unit_price_cents

    return AllocationMatrix(
        po_id=str(po.id),
        po_number=po.po_number,
        po_status=po.status,
        line_items=line_items,
        total_allocated=sum(li.total_allocated for li in line_items),
        location_summary=list(summary.values()),
    )


async def list_allocations(
    session: AsyncSession,
    tenant_id: str,
    *,
    status: Optional[str] = None,
    location_id: Optional[str] = None,
    po_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Allocation], int]:
    """Filtered page of allocations plus the unpaged total."""
    base = select(Allocation).where(Allocation.tenant_id == tenant_id)
    if status:
        base = base.where(Allocation.status == AllocationStatus(status).value)
    if location_id:
        base = base.where(Allocation.target_location_id == location_id)
    if po_id:
        base = base.join(PoLineItem, PoLineItem.id == Allocation.po_item_id).where(
            PoLineItem.po_id == po_id
        )
    if date_from:
        base = base.where(Allocation.created_at >= date_from)
    if date_to:
        base = base.where(Allocation.created_at <= date_to)

    total = (
        await session.execute(select(func.count()).select_from(base.subquery()))
    ).scalar() or 0
    result = await session.execute(
        base.order_by(Allocation.created_at.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars().all()), int(total)


async def get_unallocated_quantity(
    session: AsyncSession, line_item_id: str, tenant_id: str
) -> int:
    line = await directory.get_line_item(session, line_item_id, tenant_id)
    if not line:
        raise not_found("Line item")
    existing = await list_line_item_allocations(session, line_item_id, tenant_id)
    return line.ordered_quantity - sum(a.quantity_allocated for a in existing)
