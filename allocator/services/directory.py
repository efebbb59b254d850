"""
Lookups against the collaborator tables the allocation core reads from:
purchase orders, locations, users and movement requests.

Database failures surface as UPSTREAM_UNAVAILABLE so callers never see a
raw driver error from a collaborator lookup.
"""

from dataclasses import dataclass
from functools import wraps
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from allocator.errors import AllocationError, ErrorCode
from allocator.models.location import Location
from allocator.models.product import Product
from allocator.models.purchase_order import PurchaseOrder, PoLineItem
from allocator.models.transfer import Transfer, TRANSFER_PRIORITIES
from allocator.models.user import User

logger = structlog.get_logger()


@dataclass
class LineItemInfo:
    id: str
    po_id: str
    po_number: str
    po_status: str
    product_id: str
    product_name: Optional[str]
    ordered_quantity: int
    unit_price_cents: int


@dataclass
class MovementRequest:
    product_id: str
    source_location_id: str
    destination_location_id: str
    quantity: int
    priority: str = "NORMAL"
    notes: Optional[str] = None
    reason_code: Optional[str] = None


def _upstream(lookup: str):
    def decorator(fn):
        @wraps(fn)
        async def wrapper(*args, **kwargs):
            try:
                return await fn(*args, **kwargs)
            except SQLAlchemyError as exc:
                logger.error("collaborator_lookup_failed", lookup=lookup, error=str(exc))
                raise AllocationError(
                    ErrorCode.UPSTREAM_UNAVAILABLE,
                    f"{lookup} lookup failed",
                ) from exc

        return wrapper

    return decorator


@_upstream("line_item")
async def get_line_item(
    session: AsyncSession,
    line_item_id: str,
    tenant_id: str,
    *,
    for_update: bool = False,
) -> Optional[LineItemInfo]:
    """
    Line item joined with its order and product.

    for_update=True locks the po_line_items row only; concurrent writers
    against the same line item queue behind it until the transaction ends.
    """
    stmt = (
        select(PoLineItem, PurchaseOrder, Product.name)
        .join(PurchaseOrder, PurchaseOrder.id == PoLineItem.po_id)
        .outerjoin(Product, Product.id == PoLineItem.product_id)
        .where(
            PoLineItem.id == line_item_id,
            PurchaseOrder.tenant_id == tenant_id,
        )
    )
    if for_update:
        stmt = stmt.with_for_update(of=PoLineItem)

    row = (await session.execute(stmt)).first()
    if not row:
        return None

    item, po, product_name = row
    return LineItemInfo(
        id=str(item.id),
        po_id=str(po.id),
        po_number=po.po_number,
        po_status=po.status,
        product_id=str(item.product_id),
        product_name=product_name,
        ordered_quantity=item.quantity,
        unit_price_cents=item.unit_price_cents,
    )


@_upstream("purchase_order")
async def get_purchase_order(
    session: AsyncSession, po_id: str, tenant_id: str
) -> Optional[PurchaseOrder]:
    result = await session.execute(
        select(PurchaseOrder).where(
            PurchaseOrder.id == po_id,
            PurchaseOrder.tenant_id == tenant_id,
        )
    )
    return result.scalar_one_or_none()


@_upstream("line_item")
async def list_line_items(
    session: AsyncSession, po_id: str, tenant_id: str
) -> list[LineItemInfo]:
    """All line items of an order, by line number."""
    result = await session.execute(
        select(PoLineItem, PurchaseOrder, Product.name)
        .join(PurchaseOrder, PurchaseOrder.id == PoLineItem.po_id)
        .outerjoin(Product, Product.id == PoLineItem.product_id)
        .where(
            PoLineItem.po_id == po_id,
            PurchaseOrder.tenant_id == tenant_id,
        )
        .order_by(PoLineItem.line_number)
    )
    return [
        LineItemInfo(
            id=str(item.id),
            po_id=str(po.id),
            po_number=po.po_number,
            po_status=po.status,
            product_id=str(item.product_id),
            product_name=product_name,
            ordered_quantity=item.quantity,
            unit_price_cents=item.unit_price_cents,
        )
        for item, po, product_name in result.all()
    ]


@_upstream("location")
async def location_exists(
    session: AsyncSession, location_id: str, tenant_id: str
) -> bool:
    result = await session.execute(
        select(Location.id).where(
            Location.id == location_id,
            Location.tenant_id == tenant_id,
        )
    )
    return result.scalar_one_or_none() is not None


@_upstream("location")
async def get_location_names(
    session: AsyncSession, location_ids, tenant_id: str
) -> dict[str, str]:
    ids = list({str(i) for i in location_ids if i})
    if not ids:
        return {}
    result = await session.execute(
        select(Location.id, Location.name).where(
            Location.id.in_(ids),
            Location.tenant_id == tenant_id,
        )
    )
    return {str(loc_id): name for loc_id, name in result.all()}


@_upstream("location")
async def get_locations(
    session: AsyncSession, location_ids, tenant_id: str
) -> list[Location]:
    ids = list(dict.fromkeys(str(i) for i in location_ids if i))
    if not ids:
        return []
    result = await session.execute(
        select(Location).where(
            Location.id.in_(ids),
            Location.tenant_id == tenant_id,
        )
    )
    by_id = {str(loc.id): loc for loc in result.scalars().all()}
    return [by_id[i] for i in ids if i in by_id]


@_upstream("product")
async def get_product(
    session: AsyncSession, product_id: str, tenant_id: str
) -> Optional[Product]:
    result = await session.execute(
        select(Product).where(
            Product.id == product_id,
            Product.tenant_id == tenant_id,
        )
    )
    return result.scalar_one_or_none()


@_upstream("user")
async def user_exists(session: AsyncSession, user_id: str, tenant_id: str) -> bool:
    result = await session.execute(
        select(User.id).where(
            User.id == user_id,
            User.tenant_id == tenant_id,
            User.is_active == True,  # noqa: E712
        )
    )
    return result.scalar_one_or_none() is not None


@_upstream("user")
async def get_users(session: AsyncSession, user_ids, tenant_id: str) -> dict[str, User]:
    ids = list({str(i) for i in user_ids if i})
    if not ids:
        return {}
    result = await session.execute(
        select(User).where(User.id.in_(ids), User.tenant_id == tenant_id)
    )
    return {str(u.id): u for u in result.scalars().all()}


@_upstream("movement")
async def create_movement_request(
    session: AsyncSession,
    tenant_id: str,
    requested_by: Optional[str],
    request: MovementRequest,
) -> Transfer:
    """Hand a movement request to the transfer service. Execution is theirs."""
    if request.quantity <= 0:
        raise AllocationError(
            ErrorCode.INVALID_INPUT, "Movement quantity must be positive"
        )
    if request.priority not in TRANSFER_PRIORITIES:
        raise AllocationError(
            ErrorCode.INVALID_INPUT, f"Invalid movement priority {request.priority}"
        )
    if str(request.source_location_id) == str(request.destination_location_id):
        raise AllocationError(
            ErrorCode.INVALID_INPUT,
            "Movement source and destination must differ",
        )

    transfer = Transfer(
        tenant_id=tenant_id,
        product_id=request.product_id,
        source_location_id=request.source_location_id,
        destination_location_id=request.destination_location_id,
        quantity_requested=request.quantity,
        priority=request.priority,
        status="REQUESTED",
        notes=request.notes,
        reason_code=request.reason_code,
        requested_by=requested_by,
    )
    session.add(transfer)
    await session.flush()

    logger.info(
        "movement_requested",
        transfer_id=str(transfer.id),
        quantity=request.quantity,
        priority=request.priority,
    )
    return transfer


@_upstream("movement")
async def get_movement(
    session: AsyncSession, movement_id: str, tenant_id: str
) -> Optional[Transfer]:
    result = await session.execute(
        select(Transfer).where(
            Transfer.id == movement_id,
            Transfer.tenant_id == tenant_id,
        )
    )
    return result.scalar_one_or_none()


@_upstream("movement")
async def get_movements(
    session: AsyncSession, movement_ids, tenant_id: str
) -> dict[str, Transfer]:
    ids = list({str(i) for i in movement_ids if i})
    if not ids:
        return {}
    result = await session.execute(
        select(Transfer).where(Transfer.id.in_(ids), Transfer.tenant_id == tenant_id)
    )
    return {str(t.id): t for t in result.scalars().all()}
