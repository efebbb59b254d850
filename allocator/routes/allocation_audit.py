from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from allocator.config import settings
from allocator.middleware.auth import get_current_user
from allocator.middleware.tenant import get_db_with_tenant
from allocator.middleware.authorization import require_roles, AUDIT_READERS
from allocator.schemas.audit import (
    AuditActionLiteral,
    AuditEntryResponse,
    AuditSummaryResponse,
    ComplianceReportResponse,
)
from allocator.schemas.common import iso
from allocator.services import allocation_audit_service
from allocator.services.allocation_audit_service import AuditFilters

router = APIRouter()


def _entry(e: dict) -> AuditEntryResponse:
    return AuditEntryResponse(**{**e, "performed_at": iso(e["performed_at"])})


@router.get("", response_model=list[AuditEntryResponse])
async def get_tenant_audit_trail(
    allocation_id: Optional[str] = Query(None),
    location_id: Optional[str] = Query(None),
    po_id: Optional[str] = Query(None),
    action: Optional[AuditActionLiteral] = Query(None),
    performed_by: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(settings.AUDIT_DEFAULT_PAGE_SIZE, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*AUDIT_READERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    entries = await allocation_audit_service.get_tenant_audit_trail(
        db,
        current_user["tenant_id"],
        AuditFilters(
            action=action,
            performed_by=performed_by,
            date_from=date_from,
            date_to=date_to,
            allocation_id=allocation_id,
            location_id=location_id,
            po_id=po_id,
            limit=limit,
            offset=offset,
        ),
    )
    return [_entry(e) for e in entries]


@router.get("/summary", response_model=AuditSummaryResponse)
async def get_audit_summary(
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*AUDIT_READERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    summary = await allocation_audit_service.get_audit_summary(
        db, current_user["tenant_id"], date_from, date_to
    )
    return AuditSummaryResponse(
        total_events=summary["total_events"],
        by_action=summary["by_action"],
        top_users=summary["top_users"],
        recent_activity=[_entry(e) for e in summary["recent_activity"]],
    )


@router.get("/compliance-report", response_model=ComplianceReportResponse)
async def get_compliance_report(
    date_from: datetime = Query(...),
    date_to: datetime = Query(...),
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*AUDIT_READERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    report = await allocation_audit_service.generate_compliance_report(
        db, current_user["tenant_id"], date_from, date_to, current_user["user_id"]
    )
    return ComplianceReportResponse(
        tenant_id=report["tenant_id"],
        generated_at=iso(report["generated_at"]),
        generated_by=report["generated_by"],
        date_from=iso(report["date_range"]["from"]),
        date_to=iso(report["date_range"]["to"]),
        summary=report["summary"],
        audit_trail=[_entry(e) for e in report["audit_trail"]],
        integrity_checks=report["integrity_checks"],
    )


@router.get("/export")
async def export_audit(
    fmt: str = Query("csv", alias="format", pattern="^(csv|json)$"),
    allocation_id: Optional[str] = Query(None),
    location_id: Optional[str] = Query(None),
    po_id: Optional[str] = Query(None),
    action: Optional[AuditActionLiteral] = Query(None),
    performed_by: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*AUDIT_READERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    """Export the filtered trail. Capped at AUDIT_EXPORT_MAX_ROWS rows."""
    content = await allocation_audit_service.export_audit_data(
        db,
        current_user["tenant_id"],
        AuditFilters(
            action=action,
            performed_by=performed_by,
            date_from=date_from,
            date_to=date_to,
            allocation_id=allocation_id,
            location_id=location_id,
            po_id=po_id,
        ),
        fmt,
    )
    media_type = "text/csv" if fmt == "csv" else "application/json"
    filename = f"allocation_audit_{datetime.utcnow().strftime('%Y%m%d_%H%M%S')}.{fmt}"
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/allocations/{allocation_id}", response_model=list[AuditEntryResponse])
async def get_allocation_audit_trail(
    allocation_id: str,
    action: Optional[AuditActionLiteral] = Query(None),
    performed_by: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    limit: int = Query(settings.AUDIT_DEFAULT_PAGE_SIZE, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    entries = await allocation_audit_service.get_audit_trail(
        db,
        allocation_id,
        current_user["tenant_id"],
        AuditFilters(
            action=action,
            performed_by=performed_by,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        ),
    )
    return [_entry(e) for e in entries]
