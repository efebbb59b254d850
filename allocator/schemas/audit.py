from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel

AuditActionLiteral = Literal["CREATED", "UPDATED", "DELETED", "STATUS_CHANGED"]


class Performer(BaseModel):
    id: str
    email: Optional[str] = None
    role: Optional[str] = None


class AllocationContext(BaseModel):
    destination_name: Optional[str] = None
    product_name: Optional[str] = None
    po_number: Optional[str] = None


class AuditEntryResponse(BaseModel):
    id: str
    allocation_id: str
    action: str
    old_values: Optional[Dict[str, Any]] = None
    new_values: Optional[Dict[str, Any]] = None
    performed_by: Optional[str] = None
    performed_at: Optional[str] = None
    notes: Optional[str] = None
    performer: Optional[Performer] = None
    allocation: Optional[AllocationContext] = None


class UserActivity(BaseModel):
    user_id: Optional[str] = None
    email: Optional[str] = None
    count: int
    percentage: Optional[float] = None


class AuditSummaryResponse(BaseModel):
    total_events: int
    by_action: Dict[str, int]
    top_users: List[UserActivity] = []
    recent_activity: List[AuditEntryResponse] = []


class MissingAuditEntry(BaseModel):
    allocation_id: str
    expected_action: str
    reason: str


class IntegrityChecks(BaseModel):
    orphaned_audit_logs: List[str] = []
    missing_audit_logs: List[MissingAuditEntry] = []
    data_consistency_issues: List[str] = []


class ComplianceSummary(BaseModel):
    total_allocations: int
    total_audit_events: int
    allocations_created: int
    allocations_modified: int
    allocations_deleted: int
    status_changes: int
    by_action: Dict[str, int]
    by_user: List[UserActivity] = []


class ComplianceReportResponse(BaseModel):
    tenant_id: str
    generated_at: str
    generated_by: Optional[str] = None
    date_from: str
    date_to: str
    summary: ComplianceSummary
    audit_trail: List[AuditEntryResponse] = []
    integrity_checks: IntegrityChecks
