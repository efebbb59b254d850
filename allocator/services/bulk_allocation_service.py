"""
Bulk allocation across line items and locations, plus allocation templates.

Inputs are processed one after another so later inputs see the rows created
by earlier ones. A failing input or destination is reported in the result and
never stops the rest of the run.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from allocator.errors import AllocationError, ErrorCode, not_found
from allocator.models.allocation import Allocation, AllocationTemplate
from allocator.services import allocation_service, directory, distribution

logger = structlog.get_logger()


@dataclass
class DestinationInput:
    location_id: str
    quantity: Optional[int] = None


@dataclass
class BulkAllocationInput:
    line_item_id: str
    destinations: list[DestinationInput] = field(default_factory=list)


@dataclass
class AllocationStrategy:
    type: str
    location_percentages: Optional[dict] = None
    template_id: Optional[str] = None
    custom_rules: Optional[list[dict]] = None


@dataclass
class BulkResult:
    success: bool
    created_allocations: list[Allocation]
    failed_allocations: list[dict]
    summary: dict


@dataclass
class _Planned:
    """Stand-in for a row a dry run would have created."""

    target_location_id: str
    quantity_allocated: int
    id: Optional[str] = None


def _failure(item: BulkAllocationInput, pairs, errors: list[dict]) -> dict:
    destinations = (
        [{"location_id": loc, "quantity": qty} for loc, qty in pairs]
        if pairs
        else [{"location_id": d.location_id, "quantity": d.quantity} for d in item.destinations]
    )
    return {
        "line_item_id": str(item.line_item_id),
        "destinations": destinations,
        "errors": [e["message"] for e in errors],
        "error_codes": [e["code"] for e in errors],
    }


def resolve_quantities(
    strategy: AllocationStrategy,
    item: BulkAllocationInput,
    ordered: int,
    template: Optional[AllocationTemplate] = None,
) -> list[tuple[str, int]]:
    """(location, quantity) pairs for one input. Explicit quantities win."""
    if item.destinations and all(d.quantity is not None for d in item.destinations):
        return [(str(d.location_id), d.quantity) for d in item.destinations]

    listed = [str(d.location_id) for d in item.destinations]
    if strategy.type == distribution.EQUAL_DISTRIBUTION:
        return distribution.equal_split(ordered, listed)
    if strategy.type == distribution.PERCENTAGE_SPLIT:
        return distribution.restrict(
            distribution.percentage_split(ordered, strategy.location_percentages or {}),
            listed,
        )
    if strategy.type == distribution.CUSTOM:
        return distribution.restrict(
            distribution.custom_rules(ordered, strategy.custom_rules or []), listed
        )
    if strategy.type == distribution.TEMPLATE_BASED:
        if template is None:
            raise AllocationError(
                ErrorCode.INVALID_INPUT, "Template strategy needs a template_id"
            )
        return distribution.restrict(
            distribution.resolve_template(template.template_data, ordered), listed
        )
    raise AllocationError(
        ErrorCode.INVALID_INPUT, f"Unknown allocation strategy {strategy.type}"
    )


async def _plan_input(
    session: AsyncSession,
    po_id: str,
    strategy: AllocationStrategy,
    item: BulkAllocationInput,
    template: Optional[AllocationTemplate],
    tenant_id: str,
    planned: dict[str, list[_Planned]],
):
    """Resolve and validate one input. Returns (pairs, errors)."""
    if not item.line_item_id:
        return [], [{"code": ErrorCode.INVALID_INPUT.value, "message": "Line item is required"}]

    line = await directory.get_line_item(session, item.line_item_id, tenant_id)
    if not line:
        return [], [{"code": ErrorCode.NOT_FOUND.value, "message": "Line item not found"}]
    if line.po_id != str(po_id):
        return [], [{
            "code": ErrorCode.INVALID_INPUT.value,
            "message": f"Line item {item.line_item_id} is not on purchase order {po_id}",
        }]

    try:
        pairs = resolve_quantities(strategy, item, line.ordered_quantity, template)
    except AllocationError as exc:
        return [], [{"code": exc.code.value, "message": exc.message}]
    if not pairs:
        return [], [{
            "code": ErrorCode.INVALID_INPUT.value,
            "message": "Strategy resolved to no allocations for this line item",
        }]

    errors = []
    for loc, _ in pairs:
        if not await directory.location_exists(session, loc, tenant_id):
            errors.append({"code": ErrorCode.NOT_FOUND.value, "message": f"Location {loc} not found"})

    existing = await allocation_service.list_line_item_allocations(
        session, item.line_item_id, tenant_id
    )
    result = allocation_service.check_constraints(
        line, existing + planned.get(str(item.line_item_id), []), pairs
    )
    return pairs, errors + result.errors


async def _execute_input(
    session: AsyncSession,
    item: BulkAllocationInput,
    pairs: list[tuple[str, int]],
    note: str,
    tenant_id: str,
    actor_id: str,
):
    created, failed = [], []
    for location_id, quantity in pairs:
        try:
            allocation = await allocation_service.create_allocation(
                session,
                item.line_item_id,
                location_id,
                quantity,
                note,
                tenant_id,
                actor_id,
            )
        except AllocationError as exc:
            logger.warning(
                "bulk_allocation_destination_failed",
                line_item_id=str(item.line_item_id),
                location_id=str(location_id),
                code=exc.code.value,
            )
            failed.append(_failure(
                item, [(location_id, quantity)],
                [{"code": exc.code.value, "message": exc.message}],
            ))
        except SQLAlchemyError as exc:
            # the destination savepoint is already rolled back
            logger.error(
                "bulk_allocation_destination_failed",
                line_item_id=str(item.line_item_id),
                location_id=str(location_id),
                code=ErrorCode.WRITE_CONFLICT.value,
                error=str(exc),
            )
            failed.append(_failure(
                item, [(location_id, quantity)],
                [{"code": ErrorCode.WRITE_CONFLICT.value,
                  "message": f"Store rejected the write: {exc.__class__.__name__}"}],
            ))
        else:
            created.append(allocation)
    return created, failed


async def bulk_allocate(
    session: AsyncSession,
    po_id: str,
    strategy: AllocationStrategy,
    inputs: list[BulkAllocationInput],
    validate_only: bool,
    tenant_id: str,
    actor_id: str,
) -> BulkResult:
    if not po_id or not inputs:
        raise AllocationError(
            ErrorCode.INVALID_INPUT, "Purchase order and allocation inputs are required"
        )
    if strategy.type not in distribution.STRATEGY_TYPES:
        raise AllocationError(
            ErrorCode.INVALID_INPUT, f"Unknown allocation strategy {strategy.type}"
        )
    if not await directory.user_exists(session, actor_id, tenant_id):
        raise not_found("User")

    po = await directory.get_purchase_order(session, po_id, tenant_id)
    if not po:
        raise not_found("Purchase order")
    if po.status != "APPROVED":
        raise AllocationError(
            ErrorCode.INVALID_STATE,
            f"Purchase order {po.po_number} is {po.status}, not APPROVED",
        )

    template = None
    if strategy.type == distribution.TEMPLATE_BASED and strategy.template_id:
        template = await get_allocation_template(session, strategy.template_id, tenant_id)
        if not template:
            raise not_found("Allocation template")

    note = f"Bulk allocation via {strategy.type} strategy"
    planned: dict[str, list[_Planned]] = {}
    created: list[Allocation] = []
    failed: list[dict] = []

    for item in inputs:
        pairs, errors = await _plan_input(
            session, po_id, strategy, item, template, tenant_id, planned
        )
        if errors:
            failed = failed + [_failure(item, pairs, errors)]
            continue
        if validate_only:
            planned.setdefault(str(item.line_item_id), []).extend(
                _Planned(target_location_id=loc, quantity_allocated=qty) for loc, qty in pairs
            )
            continue
        made, lost = await _execute_input(session, item, pairs, note, tenant_id, actor_id)
        created, failed = created + made, failed + lost

    summary = {
        "total_processed": len(inputs),
        "success_count": (
            len(inputs) - len({f["line_item_id"] for f in failed})
            if validate_only
            else len(created)
        ),
        "failure_count": len(failed),
    }
    logger.info(
        "bulk_allocation_completed",
        po_id=str(po_id),
        strategy=strategy.type,
        validate_only=validate_only,
        created=len(created),
        failed=len(failed),
    )
    return BulkResult(
        success=not failed,
        created_allocations=created,
        failed_allocations=failed,
        summary=summary,
    )


async def apply_allocation_template(
    session: AsyncSession,
    po_id: str,
    template_id: str,
    tenant_id: str,
    actor_id: str,
) -> BulkResult:
    template = await get_allocation_template(session, template_id, tenant_id)
    if not template:
        raise not_found("Allocation template")

    items = await directory.list_line_items(session, po_id, tenant_id)
    if not items:
        raise AllocationError(
            ErrorCode.INVALID_INPUT, "Purchase order has no line items to allocate"
        )

    inputs = []
    for item in items:
        pairs = distribution.resolve_template(template.template_data, item.ordered_quantity)
        if pairs:
            inputs.append(BulkAllocationInput(
                line_item_id=item.id,
                destinations=[DestinationInput(loc, qty) for loc, qty in pairs],
            ))
    if not inputs:
        raise AllocationError(
            ErrorCode.INVALID_INPUT, "Template resolves to no allocations for this order"
        )

    return await bulk_allocate(
        session,
        po_id,
        AllocationStrategy(type=distribution.TEMPLATE_BASED, template_id=str(template_id)),
        inputs,
        False,
        tenant_id,
        actor_id,
    )


async def create_allocation_template(
    session: AsyncSession,
    tenant_id: str,
    name: str,
    template_data: dict,
    actor_id: str,
    description: Optional[str] = None,
) -> AllocationTemplate:
    name = (name or "").strip()
    if not name:
        raise AllocationError(ErrorCode.INVALID_INPUT, "Template name is required")
    distribution.validate_template_data(template_data)

    for location_id in distribution.template_locations(template_data):
        if not await directory.location_exists(session, location_id, tenant_id):
            raise not_found(f"Location {location_id}")

    existing = await session.execute(
        select(AllocationTemplate.id).where(
            AllocationTemplate.tenant_id == tenant_id,
            AllocationTemplate.name == name,
        )
    )
    if existing.scalar_one_or_none():
        raise AllocationError(
            ErrorCode.INVALID_INPUT, f"Allocation template '{name}' already exists"
        )

    now = datetime.utcnow()
    template = AllocationTemplate(
        tenant_id=tenant_id,
        name=name,
        description=description,
        template_data=template_data,
        created_by=actor_id,
        created_at=now,
        updated_at=now,
    )
    try:
        async with session.begin_nested():
            session.add(template)
            await session.flush()
    except IntegrityError as exc:
        raise AllocationError(
            ErrorCode.INVALID_INPUT, f"Allocation template '{name}' already exists"
        ) from exc

    logger.info("allocation_template_created", template_id=str(template.id), name=name)
    return template


async def list_allocation_templates(
    session: AsyncSession, tenant_id: str
) -> list[AllocationTemplate]:
    result = await session.execute(
        select(AllocationTemplate)
        .where(AllocationTemplate.tenant_id == tenant_id)
        .order_by(AllocationTemplate.name)
    )
    return list(result.scalars().all())


async def get_allocation_template(
    session: AsyncSession, template_id: str, tenant_id: str
) -> Optional[AllocationTemplate]:
    result = await session.execute(
        select(AllocationTemplate).where(
            AllocationTemplate.id == template_id,
            AllocationTemplate.tenant_id == tenant_id,
        )
    )
    return result.scalar_one_or_none()
