"""
Allocation audit trail: append-only log, trails, summaries, compliance
report and export.

log_allocation_audit() uses session.flush(), so the entry commits or rolls
back together with the mutation it describes.
"""

import csv
import io
import json
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
import structlog

from allocator.config import settings
from allocator.errors import AllocationError, ErrorCode
from allocator.models.allocation import (
    Allocation,
    AllocationAuditLog,
    AllocationStatus,
    AuditAction,
)
from allocator.models.location import Location
from allocator.models.product import Product
from allocator.models.purchase_order import PurchaseOrder, PoLineItem
from allocator.services import directory

logger = structlog.get_logger()

CSV_COLUMNS = [
    "audit_id",
    "allocation_id",
    "action",
    "performed_by",
    "performer_email",
    "performer_role",
    "performed_at",
    "destination_name",
    "product_name",
    "po_number",
    "old_values",
    "new_values",
    "notes",
]


@dataclass
class AuditFilters:
    action: Optional[str] = None
    performed_by: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    allocation_id: Optional[str] = None
    location_id: Optional[str] = None
    po_id: Optional[str] = None
    limit: Optional[int] = None
    offset: int = 0


def _to_uuid(value, field_name: str, required: bool = False) -> Optional[uuid.UUID]:
    if value is None:
        if required:
            raise AllocationError(ErrorCode.INVALID_INPUT, f"{field_name} is required")
        return None
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        raise AllocationError(
            ErrorCode.INVALID_INPUT, f"{field_name} must be a valid UUID"
        )


def to_json_safe(value: Any) -> Any:
    """Render UUIDs, datetimes, enums and decimals so the value fits JSONB."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_safe(v) for v in value]
    return str(value)


async def log_allocation_audit(
    session: AsyncSession,
    tenant_id: str,
    allocation_id: str,
    action: str,
    old_values: Optional[dict] = None,
    new_values: Optional[dict] = None,
    performed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> AllocationAuditLog:
    """
    Append one audit entry.

    Raises AUDIT_WRITE_FAILED if the insert fails; the caller's mutation must
    not be committed without its entry.
    """
    action = AuditAction(action).value
    entry = AllocationAuditLog(
        tenant_id=_to_uuid(tenant_id, "tenant_id", required=True),
        allocation_id=_to_uuid(allocation_id, "allocation_id", required=True),
        action=action,
        old_values=to_json_safe(old_values),
        new_values=to_json_safe(new_values),
        performed_by=_to_uuid(performed_by, "performed_by"),
        performed_at=datetime.utcnow(),
        notes=notes,
    )
    try:
        session.add(entry)
        await session.flush()
    except SQLAlchemyError as exc:
        logger.error(
            "allocation_audit_write_failed",
            allocation_id=str(allocation_id),
            action=action,
            error=str(exc),
        )
        raise AllocationError(
            ErrorCode.AUDIT_WRITE_FAILED,
            "Failed to record allocation audit entry",
            details={"allocation_id": str(allocation_id), "action": action},
        ) from exc

    logger.info(
        "allocation_audit_logged",
        allocation_id=str(allocation_id),
        action=action,
        performed_by=str(performed_by) if performed_by else None,
    )
    return entry


def _apply_filters(stmt, tenant_id: str, filters: AuditFilters):
    stmt = stmt.where(AllocationAuditLog.tenant_id == tenant_id)
    if filters.allocation_id:
        stmt = stmt.where(AllocationAuditLog.allocation_id == filters.allocation_id)
    if filters.action:
        stmt = stmt.where(AllocationAuditLog.action == AuditAction(filters.action).value)
    if filters.performed_by:
        stmt = stmt.where(AllocationAuditLog.performed_by == filters.performed_by)
    if filters.date_from:
        stmt = stmt.where(AllocationAuditLog.performed_at >= filters.date_from)
    if filters.date_to:
        stmt = stmt.where(AllocationAuditLog.performed_at <= filters.date_to)
    if filters.location_id:
        stmt = stmt.where(
            AllocationAuditLog.allocation_id.in_(
                select(Allocation.id).where(
                    Allocation.tenant_id == tenant_id,
                    Allocation.target_location_id == filters.location_id,
                )
            )
        )
    if filters.po_id:
        stmt = stmt.where(
            AllocationAuditLog.allocation_id.in_(
                select(Allocation.id)
                .join(PoLineItem, PoLineItem.id == Allocation.po_item_id)
                .where(
                    Allocation.tenant_id == tenant_id,
                    PoLineItem.po_id == filters.po_id,
                )
            )
        )
    return stmt


async def _allocation_context(
    session: AsyncSession, allocation_ids, tenant_id: str
) -> dict[str, dict]:
    """Current destination / product / PO number of each live allocation."""
    ids = list({str(i) for i in allocation_ids})
    if not ids:
        return {}
    result = await session.execute(
        select(
            Allocation.id,
            Location.name,
            Product.name,
            PurchaseOrder.po_number,
        )
        .join(PoLineItem, PoLineItem.id == Allocation.po_item_id)
        .join(PurchaseOrder, PurchaseOrder.id == PoLineItem.po_id)
        .outerjoin(Location, Location.id == Allocation.target_location_id)
        .outerjoin(Product, Product.id == PoLineItem.product_id)
        .where(Allocation.tenant_id == tenant_id, Allocation.id.in_(ids))
    )
    return {
        str(alloc_id): {
            "destination_name": location_name,
            "product_name": product_name,
            "po_number": po_number,
        }
        for alloc_id, location_name, product_name, po_number in result.all()
    }


def _entry_to_dict(entry: AllocationAuditLog, users: dict, context: dict) -> dict:
    performer = None
    if entry.performed_by:
        user = users.get(str(entry.performed_by))
        performer = {
            "id": str(entry.performed_by),
            "email": user.email if user else None,
            "role": user.role if user else None,
        }
    return {
        "id": str(entry.id),
        "allocation_id": str(entry.allocation_id),
        "action": entry.action,
        "old_values": entry.old_values,
        "new_values": entry.new_values,
        "performed_by": str(entry.performed_by) if entry.performed_by else None,
        "performed_at": entry.performed_at,
        "notes": entry.notes,
        "performer": performer,
        "allocation": context.get(str(entry.allocation_id)),
    }


async def _enrich(
    session: AsyncSession, entries: list[AllocationAuditLog], tenant_id: str
) -> list[dict]:
    users = await directory.get_users(
        session, [e.performed_by for e in entries], tenant_id
    )
    context = await _allocation_context(
        session, [e.allocation_id for e in entries], tenant_id
    )
    return [_entry_to_dict(e, users, context) for e in entries]


async def get_tenant_audit_trail(
    session: AsyncSession,
    tenant_id: str,
    filters: Optional[AuditFilters] = None,
) -> list[dict]:
    """Newest-first audit entries across the tenant. limit=None means unbounded."""
    filters = filters or AuditFilters(limit=settings.AUDIT_DEFAULT_PAGE_SIZE)
    stmt = _apply_filters(select(AllocationAuditLog), tenant_id, filters)
    stmt = stmt.order_by(
        AllocationAuditLog.performed_at.desc(), AllocationAuditLog.id.desc()
    )
    if filters.offset:
        stmt = stmt.offset(filters.offset)
    if filters.limit is not None:
        stmt = stmt.limit(filters.limit)

    entries = list((await session.execute(stmt)).scalars().all())
    return await _enrich(session, entries, tenant_id)


async def get_audit_trail(
    session: AsyncSession,
    allocation_id: str,
    tenant_id: str,
    filters: Optional[AuditFilters] = None,
) -> list[dict]:
    filters = filters or AuditFilters()
    if filters.limit is None:
        filters = replace(filters, limit=settings.AUDIT_DEFAULT_PAGE_SIZE)
    return await get_tenant_audit_trail(
        session, tenant_id, replace(filters, allocation_id=str(allocation_id))
    )


def evaluate_integrity(
    entries,
    live_allocation_ids: set[str],
    deleted_allocation_ids: set[str],
    allocations,
    history: dict[str, list],
) -> dict:
    """
    Cross-check the log against current allocation state.

    entries: audit entries in the report range (id, allocation_id, action).
    allocations: live allocations created in the range (id, status).
    history: every audit entry of those allocations, oldest first.

    An entry is orphaned when its allocation is gone, it is not itself the
    DELETED entry, and no DELETED entry exists for that allocation. Findings
    are reported only.
    """
    orphaned = [
        str(e.id)
        for e in entries
        if str(e.allocation_id) not in live_allocation_ids
        and e.action != AuditAction.DELETED.value
        and str(e.allocation_id) not in deleted_allocation_ids
    ]

    missing = []
    created_logged = 0
    for alloc in allocations:
        alloc_id = str(alloc.id)
        log = history.get(alloc_id, [])
        if any(e.action == AuditAction.CREATED.value for e in log):
            created_logged += 1
        else:
            missing.append({
                "allocation_id": alloc_id,
                "expected_action": AuditAction.CREATED.value,
                "reason": "allocation has no CREATED entry",
            })

        status_changes = [e for e in log if e.action == AuditAction.STATUS_CHANGED.value]
        if not status_changes:
            if alloc.status != AllocationStatus.PENDING.value:
                missing.append({
                    "allocation_id": alloc_id,
                    "expected_action": AuditAction.STATUS_CHANGED.value,
                    "reason": f"status is {alloc.status} but no STATUS_CHANGED entry exists",
                })
            continue

        logged_status = (status_changes[-1].new_values or {}).get("status")
        if logged_status != alloc.status:
            missing.append({
                "allocation_id": alloc_id,
                "expected_action": AuditAction.STATUS_CHANGED.value,
                "reason": (
                    f"status is {alloc.status} but latest STATUS_CHANGED "
                    f"entry records {logged_status}"
                ),
            })

    issues = []
    if orphaned:
        issues.append(f"Found {len(orphaned)} orphaned audit log entries")
    if missing:
        issues.append(f"Found {len(missing)} missing audit log entries")
    if created_logged != len(allocations):
        issues.append(
            f"{len(allocations)} allocations created in range but only "
            f"{created_logged} have a CREATED entry"
        )

    return {
        "orphaned_audit_logs": orphaned,
        "missing_audit_logs": missing,
        "data_consistency_issues": issues,
    }


async def check_audit_integrity(
    session: AsyncSession,
    tenant_id: str,
    date_from: datetime,
    date_to: datetime,
) -> dict:
    entries = list((await session.execute(
        select(AllocationAuditLog).where(
            AllocationAuditLog.tenant_id == tenant_id,
            AllocationAuditLog.performed_at >= date_from,
            AllocationAuditLog.performed_at <= date_to,
        )
    )).scalars().all())
    referenced = list({str(e.allocation_id) for e in entries})

    live_ids: set[str] = set()
    deleted_ids: set[str] = set()
    if referenced:
        live_ids = {
            str(i) for i in (await session.execute(
                select(Allocation.id).where(
                    Allocation.tenant_id == tenant_id,
                    Allocation.id.in_(referenced),
                )
            )).scalars().all()
        }
        deleted_ids = {
            str(i) for i in (await session.execute(
                select(AllocationAuditLog.allocation_id).where(
                    AllocationAuditLog.tenant_id == tenant_id,
                    AllocationAuditLog.action == AuditAction.DELETED.value,
                    AllocationAuditLog.allocation_id.in_(referenced),
                )
            )).scalars().all()
        }

    allocations = list((await session.execute(
        select(Allocation).where(
            Allocation.tenant_id == tenant_id,
            Allocation.created_at >= date_from,
            Allocation.created_at <= date_to,
        )
    )).scalars().all())

    history: dict[str, list] = {}
    if allocations:
        rows = (await session.execute(
            select(AllocationAuditLog)
            .where(
                AllocationAuditLog.tenant_id == tenant_id,
                AllocationAuditLog.allocation_id.in_([a.id for a in allocations]),
            )
            .order_by(AllocationAuditLog.performed_at, AllocationAuditLog.id)
        )).scalars().all()
        for row in rows:
            history.setdefault(str(row.allocation_id), []).append(row)

    return evaluate_integrity(entries, live_ids, deleted_ids, allocations, history)


async def generate_compliance_report(
    session: AsyncSession,
    tenant_id: str,
    date_from: datetime,
    date_to: datetime,
    requested_by: Optional[str],
) -> dict:
    if date_from > date_to:
        raise AllocationError(
            ErrorCode.INVALID_INPUT, "date_from must not be after date_to"
        )

    trail = await get_tenant_audit_trail(
        session,
        tenant_id,
        AuditFilters(date_from=date_from, date_to=date_to, limit=None),
    )

    by_action = {a.value: 0 for a in AuditAction}
    by_user: dict[Optional[str], dict] = {}
    for entry in trail:
        by_action[entry["action"]] = by_action.get(entry["action"], 0) + 1
        user_key = entry["performed_by"]
        bucket = by_user.setdefault(user_key, {
            "user_id": user_key,
            "email": (entry["performer"] or {}).get("email"),
            "count": 0,
        })
        bucket["count"] += 1

    total_allocations = (await session.execute(
        select(func.count(Allocation.id)).where(
            Allocation.tenant_id == tenant_id,
            Allocation.created_at >= date_from,
            Allocation.created_at <= date_to,
        )
    )).scalar() or 0

    integrity = await check_audit_integrity(session, tenant_id, date_from, date_to)

    logger.info(
        "compliance_report_generated",
        tenant_id=str(tenant_id),
        requested_by=str(requested_by) if requested_by else None,
        entries=len(trail),
        orphaned=len(integrity["orphaned_audit_logs"]),
        missing=len(integrity["missing_audit_logs"]),
    )

    return {
        "tenant_id": str(tenant_id),
        "generated_at": datetime.utcnow(),
        "generated_by": str(requested_by) if requested_by else None,
        "date_range": {"from": date_from, "to": date_to},
        "summary": {
            "total_allocations": int(total_allocations),
            "total_audit_events": len(trail),
            "allocations_created": by_action[AuditAction.CREATED.value],
            "allocations_modified": by_action[AuditAction.UPDATED.value],
            "allocations_deleted": by_action[AuditAction.DELETED.value],
            "status_changes": by_action[AuditAction.STATUS_CHANGED.value],
            "by_action": by_action,
            "by_user": sorted(by_user.values(), key=lambda u: u["count"], reverse=True),
        },
        "audit_trail": trail,
        "integrity_checks": integrity,
    }


async def get_audit_summary(
    session: AsyncSession,
    tenant_id: str,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> dict:
    def scoped(stmt):
        stmt = stmt.where(AllocationAuditLog.tenant_id == tenant_id)
        if date_from:
            stmt = stmt.where(AllocationAuditLog.performed_at >= date_from)
        if date_to:
            stmt = stmt.where(AllocationAuditLog.performed_at <= date_to)
        return stmt

    action_rows = (await session.execute(
        scoped(
            select(AllocationAuditLog.action, func.count(AllocationAuditLog.id))
        ).group_by(AllocationAuditLog.action)
    )).all()
    by_action = {a.value: 0 for a in AuditAction}
    for action, count in action_rows:
        by_action[action] = int(count)
    total = sum(by_action.values())

    user_rows = (await session.execute(
        scoped(
            select(AllocationAuditLog.performed_by, func.count(AllocationAuditLog.id))
        )
        .group_by(AllocationAuditLog.performed_by)
        .order_by(func.count(AllocationAuditLog.id).desc())
        .limit(settings.AUDIT_SUMMARY_TOP_USERS)
    )).all()
    users = await directory.get_users(
        session, [user_id for user_id, _ in user_rows], tenant_id
    )
    top_users = []
    for user_id, count in user_rows:
        user = users.get(str(user_id)) if user_id else None
        top_users.append({
            "user_id": str(user_id) if user_id else None,
            "email": user.email if user else None,
            "count": int(count),
            "percentage": round(int(count) / total * 100, 2) if total else 0.0,
        })

    recent = await get_tenant_audit_trail(
        session,
        tenant_id,
        AuditFilters(
            date_from=date_from,
            date_to=date_to,
            limit=settings.AUDIT_RECENT_ACTIVITY_LIMIT,
        ),
    )

    return {
        "total_events": total,
        "by_action": by_action,
        "top_users": top_users,
        "recent_activity": recent,
    }


def render_audit_csv(entries: list[dict]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_COLUMNS)
    for e in entries:
        performer = e.get("performer") or {}
        context = e.get("allocation") or {}
        performed_at = e.get("performed_at")
        writer.writerow([
            e["id"],
            e["allocation_id"],
            e["action"],
            e.get("performed_by") or "",
            performer.get("email") or "",
            performer.get("role") or "",
            performed_at.isoformat() if isinstance(performed_at, datetime) else performed_at or "",
            context.get("destination_name") or "",
            context.get("product_name") or "",
            context.get("po_number") or "",
            json.dumps(e["old_values"]) if e.get("old_values") is not None else "",
            json.dumps(e["new_values"]) if e.get("new_values") is not None else "",
            e.get("notes") or "",
        ])
    return output.getvalue()


async def export_audit_data(
    session: AsyncSession,
    tenant_id: str,
    filters: Optional[AuditFilters] = None,
    fmt: str = "json",
) -> str:
    """Filtered tenant trail as a JSON array or CSV document."""
    fmt = (fmt or "json").lower()
    if fmt not in ("json", "csv"):
        raise AllocationError(
            ErrorCode.INVALID_INPUT, f"Unsupported export format {fmt}"
        )

    filters = filters or AuditFilters()
    cap = settings.AUDIT_EXPORT_MAX_ROWS
    limit = cap if filters.limit is None else min(filters.limit, cap)
    entries = await get_tenant_audit_trail(
        session, tenant_id, replace(filters, limit=limit)
    )

    logger.info(
        "allocation_audit_exported",
        tenant_id=str(tenant_id),
        format=fmt,
        rows=len(entries),
    )
    if fmt == "csv":
        return render_audit_csv(entries)
    return json.dumps(entries, default=to_json_safe)
