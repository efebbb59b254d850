from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field

AllocationStatusLiteral = Literal["PENDING", "SHIPPED", "RECEIVED", "CANCELLED"]
StrategyLiteral = Literal[
    "EQUAL_DISTRIBUTION", "PERCENTAGE_SPLIT", "TEMPLATE_BASED", "CUSTOM"
]


class AllocationCreate(BaseModel):
    po_item_id: str
    target_location_id: str
    quantity_allocated: int = Field(..., gt=0)
    notes: Optional[str] = None


class AllocationUpdate(BaseModel):
    quantity_allocated: Optional[int] = Field(None, gt=0)
    quantity_received: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = None


class AllocationStatusUpdate(BaseModel):
    status: AllocationStatusLiteral
    notes: Optional[str] = None


class BulkStatusUpdate(BaseModel):
    allocation_ids: List[str] = Field(..., min_length=1)
    status: AllocationStatusLiteral
    notes: Optional[str] = None


class AllocationResponse(BaseModel):
    id: str
    tenant_id: str
    po_item_id: str
    target_location_id: str
    quantity_allocated: int
    quantity_received: int
    status: str
    notes: Optional[str] = None
    created_by: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    valid_transitions: List[str] = []

    model_config = {"from_attributes": True}


class ProposedAllocation(BaseModel):
    target_location_id: str
    quantity_allocated: int


class ValidateRequest(BaseModel):
    po_item_id: str
    allocations: List[ProposedAllocation] = Field(..., min_length=1)
    exclude_allocation_id: Optional[str] = None


class ValidationIssue(BaseModel):
    code: str
    message: str
    destination_id: Optional[str] = None


class ValidationResponse(BaseModel):
    valid: bool
    errors: List[ValidationIssue] = []
    warnings: List[str] = []
    ordered_quantity: int
    allocated_quantity: int
    proposed_quantity: int


class LineItemAllocationsResponse(BaseModel):
    po_item_id: str
    product_id: str
    product_name: Optional[str] = None
    quantity_ordered: int
    unit_price_cents: int
    allocations: List[AllocationResponse] = []
    total_allocated: int
    unallocated_quantity: int


class LocationSummaryResponse(BaseModel):
    location_id: str
    location_name: Optional[str] = None
    allocation_count: int
    total_allocated_items: int
    total_allocated_value_cents: int


class AllocationMatrixResponse(BaseModel):
    po_id: str
    po_number: str
    po_status: str
    line_items: List[LineItemAllocationsResponse] = []
    total_allocated: int
    location_summary: List[LocationSummaryResponse] = []


class CustomRule(BaseModel):
    location_id: str
    percentage: Optional[float] = Field(None, ge=0, le=100)
    fixed_quantity: Optional[int] = Field(None, ge=0)


class StrategyRequest(BaseModel):
    type: StrategyLiteral
    location_percentages: Optional[Dict[str, float]] = None
    template_id: Optional[str] = None
    custom_rules: Optional[List[CustomRule]] = None


class BulkDestination(BaseModel):
    location_id: str
    quantity: Optional[int] = None


class BulkInput(BaseModel):
    po_item_id: str
    destinations: List[BulkDestination] = []


class BulkAllocateRequest(BaseModel):
    po_id: str
    strategy: StrategyRequest
    allocations: List[BulkInput] = Field(..., min_length=1)
    validate_only: bool = False


class BulkFailure(BaseModel):
    line_item_id: str
    destinations: List[BulkDestination] = []
    errors: List[str] = []
    error_codes: List[str] = []


class BulkSummary(BaseModel):
    total_processed: int
    success_count: int
    failure_count: int


class BulkAllocateResponse(BaseModel):
    success: bool
    created_allocations: List[AllocationResponse] = []
    failed_allocations: List[BulkFailure] = []
    summary: BulkSummary


class BulkStatusFailure(BaseModel):
    allocation_id: str
    code: str
    error: str


class BulkStatusResponse(BaseModel):
    success: bool
    updated: List[AllocationResponse] = []
    failed: List[BulkStatusFailure] = []


class PurchaseOrderStatusChange(BaseModel):
    status: Literal["DRAFT", "PENDING_APPROVAL", "APPROVED", "RECEIVED", "CANCELLED"]


class StatusHistoryEntry(BaseModel):
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    performed_by: Optional[str] = None
    performed_at: Optional[str] = None
    notes: Optional[str] = None


class TemplateData(BaseModel):
    location_percentages: Optional[Dict[str, float]] = None
    location_fixed_amounts: Optional[Dict[str, int]] = None
    rules: Optional[List[CustomRule]] = None


class TemplateCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    template_data: TemplateData


class TemplateApply(BaseModel):
    po_id: str


class TemplateResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    template_data: dict
    created_by: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
