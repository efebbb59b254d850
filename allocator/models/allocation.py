import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Text,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
    desc,
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column

from allocator.database import Base


class AllocationStatus(str, Enum):
    PENDING = "PENDING"
    SHIPPED = "SHIPPED"
    RECEIVED = "RECEIVED"
    CANCELLED = "CANCELLED"


class AuditAction(str, Enum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    DELETED = "DELETED"
    STATUS_CHANGED = "STATUS_CHANGED"


class Allocation(Base):
    __tablename__ = "allocations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False
    )
    po_item_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("po_line_items.id"), nullable=False
    )
    target_location_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("locations.id"), nullable=False
    )
    quantity_allocated: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_received: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(
        String(20), default=AllocationStatus.PENDING.value
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "po_item_id",
            "target_location_id",
            name="uq_allocation_item_location",
        ),
        CheckConstraint(
            "quantity_allocated > 0", name="chk_allocation_qty_positive"
        ),
        CheckConstraint(
            "quantity_received >= 0 AND quantity_received <= quantity_allocated",
            name="chk_allocation_received_bound",
        ),
        CheckConstraint(
            "status IN ('PENDING','SHIPPED','RECEIVED','CANCELLED')",
            name="chk_allocation_status",
        ),
        Index("idx_allocation_tenant_status", "tenant_id", "status"),
        Index("idx_allocation_tenant_location", "tenant_id", "target_location_id"),
        Index("idx_allocation_po_item", "po_item_id"),
    )

    def snapshot(self) -> dict:
        """JSON-safe copy of the row for audit payloads."""
        return {
            "id": str(self.id),
            "tenant_id": str(self.tenant_id),
            "po_item_id": str(self.po_item_id),
            "target_location_id": str(self.target_location_id),
            "quantity_allocated": self.quantity_allocated,
            "quantity_received": self.quantity_received or 0,
            "status": self.status,
            "notes": self.notes,
            "created_by": str(self.created_by) if self.created_by else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class AllocationAuditLog(Base):
    """Append-only. allocation_id has no FK so entries outlive deleted rows."""

    __tablename__ = "allocation_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False
    )
    allocation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False
    )
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    old_values: Mapped[Optional[dict]] = mapped_column(JSONB)
    new_values: Mapped[Optional[dict]] = mapped_column(JSONB)
    performed_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    performed_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint(
            "action IN ('CREATED','UPDATED','DELETED','STATUS_CHANGED')",
            name="chk_allocation_audit_action",
        ),
        Index("idx_alloc_audit_tenant_allocation", "tenant_id", "allocation_id"),
        Index("idx_alloc_audit_action", "action"),
        Index("idx_alloc_audit_performed_by", "performed_by"),
        Index("idx_alloc_audit_performed_at", desc("performed_at")),
    )


class AllocationTemplate(Base):
    __tablename__ = "allocation_templates"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    template_data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    created_by: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_allocation_template_name"),
        Index("idx_allocation_template_tenant", "tenant_id"),
    )
