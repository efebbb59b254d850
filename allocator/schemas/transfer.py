from typing import List, Literal, Optional
from pydantic import BaseModel, Field

from allocator.schemas.allocation import AllocationResponse

PriorityLiteral = Literal["NORMAL", "HIGH", "EMERGENCY"]


class TransferFromAllocationCreate(BaseModel):
    allocation_id: str
    destination_location_id: str
    priority: PriorityLiteral = "NORMAL"
    notes: Optional[str] = None
    reason_code: Optional[str] = Field(None, max_length=50)


class TransferLinkCreate(BaseModel):
    transfer_id: str
    allocation_id: str


class PartialTransferRequest(BaseModel):
    partial_quantity: int = Field(..., gt=0)


class TransferResponse(BaseModel):
    id: str
    product_id: str
    source_location_id: str
    destination_location_id: str
    quantity_requested: int
    quantity_shipped: int
    quantity_received: int
    priority: str
    status: str
    notes: Optional[str] = None
    reason_code: Optional[str] = None
    created_at: Optional[str] = None


class TransferLinkResponse(BaseModel):
    id: str
    transfer_id: str
    allocation_id: str
    created_at: Optional[str] = None
    transfer: Optional[TransferResponse] = None
    allocation: Optional[AllocationResponse] = None


class TransferCreationResponse(BaseModel):
    transfer: TransferResponse
    link: TransferLinkResponse


class SyncResultResponse(BaseModel):
    allocation_id: str
    transfer_id: str
    transfer_status: Optional[str] = None
    allocation_status: str
    allocation_status_updated: bool
    synced_at: str
    error: Optional[str] = None


class PartialTransferResponse(BaseModel):
    original_transfer: TransferResponse
    partial_transfer: TransferResponse
    links: List[TransferLinkResponse] = []


class LocationResponse(BaseModel):
    id: str
    name: str
    type: Optional[str] = None
    address: Optional[str] = None


class ProductResponse(BaseModel):
    id: str
    name: str
    sku: Optional[str] = None
    unit: Optional[str] = None


class TraceabilityResponse(BaseModel):
    allocation: AllocationResponse
    po_number: str
    transfers: List[TransferResponse] = []
    locations: List[LocationResponse] = []
    product: Optional[ProductResponse] = None
