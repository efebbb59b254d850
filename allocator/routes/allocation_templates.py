from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from allocator.middleware.auth import get_current_user
from allocator.middleware.tenant import get_db_with_tenant
from allocator.middleware.authorization import require_roles, ALLOCATION_WRITERS
from allocator.models.allocation import AllocationTemplate
from allocator.routes.allocations import to_response as allocation_to_response
from allocator.schemas.allocation import (
    BulkAllocateResponse,
    BulkFailure,
    BulkSummary,
    TemplateApply,
    TemplateCreate,
    TemplateResponse,
)
from allocator.schemas.common import iso
from allocator.services import bulk_allocation_service

router = APIRouter()


def _to_response(t: AllocationTemplate) -> TemplateResponse:
    return TemplateResponse(
        id=str(t.id),
        name=t.name,
        description=t.description,
        template_data=t.template_data,
        created_by=str(t.created_by),
        created_at=iso(t.created_at),
        updated_at=iso(t.updated_at),
    )


@router.get("", response_model=list[TemplateResponse])
async def list_templates(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    templates = await bulk_allocation_service.list_allocation_templates(
        db, current_user["tenant_id"]
    )
    return [_to_response(t) for t in templates]


@router.post("", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    body: TemplateCreate,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    template = await bulk_allocation_service.create_allocation_template(
        db,
        current_user["tenant_id"],
        body.name,
        body.template_data.model_dump(exclude_none=True),
        current_user["user_id"],
        description=body.description,
    )
    return _to_response(template)


@router.get("/{template_id}", response_model=TemplateResponse)
async def get_template(
    template_id: str,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    template = await bulk_allocation_service.get_allocation_template(
        db, template_id, current_user["tenant_id"]
    )
    if not template:
        raise HTTPException(
            status_code=404,
            detail={"error": {"code": "NOT_FOUND", "message": "Allocation template not found"}},
        )
    return _to_response(template)


@router.post("/{template_id}/apply", response_model=BulkAllocateResponse)
async def apply_template(
    template_id: str,
    body: TemplateApply,
    current_user: dict = Depends(get_current_user),
    _auth: None = Depends(require_roles(*ALLOCATION_WRITERS)),
    db: AsyncSession = Depends(get_db_with_tenant),
):
    result = await bulk_allocation_service.apply_allocation_template(
        db, body.po_id, template_id, current_user["tenant_id"], current_user["user_id"]
    )
    return BulkAllocateResponse(
        success=result.success,
        created_allocations=[allocation_to_response(a) for a in result.created_allocations],
        failed_allocations=[BulkFailure(**f) for f in result.failed_allocations],
        summary=BulkSummary(**result.summary),
    )
