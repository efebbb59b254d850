import uuid
from datetime import datetime
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
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from allocator.database import Base

TRANSFER_STATUSES = ("REQUESTED", "APPROVED", "SHIPPED", "RECEIVED", "CANCELLED")
TRANSFER_PRIORITIES = ("NORMAL", "HIGH", "EMERGENCY")


class Transfer(Base):
    """Movement request between two locations. Executed by the transfer service."""

    __tablename__ = "transfers"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("products.id"), nullable=False
    )
    source_location_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("locations.id"), nullable=False
    )
    destination_location_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("locations.id"), nullable=False
    )
    quantity_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_shipped: Mapped[int] = mapped_column(Integer, default=0)
    quantity_received: Mapped[int] = mapped_column(Integer, default=0)
    priority: Mapped[str] = mapped_column(String(20), default="NORMAL")
    status: Mapped[str] = mapped_column(String(20), default="REQUESTED")
    notes: Mapped[Optional[str]] = mapped_column(Text)
    reason_code: Mapped[Optional[str]] = mapped_column(String(50))
    requested_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint("quantity_requested > 0", name="chk_transfer_qty"),
        CheckConstraint(
            "source_location_id <> destination_location_id",
            name="chk_transfer_distinct_locations",
        ),
        CheckConstraint(
            "status IN ('REQUESTED','APPROVED','SHIPPED','RECEIVED','CANCELLED')",
            name="chk_transfer_status",
        ),
        CheckConstraint(
            "priority IN ('NORMAL','HIGH','EMERGENCY')", name="chk_transfer_priority"
        ),
        Index("idx_transfers_tenant_status", "tenant_id", "status"),
    )


class TransferAllocation(Base):
    __tablename__ = "transfer_allocations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False
    )
    transfer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("transfers.id"), nullable=False
    )
    allocation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("allocations.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "transfer_id", "allocation_id", name="uq_transfer_allocation"
        ),
        Index("idx_transfer_alloc_allocation", "tenant_id", "allocation_id"),
        Index("idx_transfer_alloc_transfer", "tenant_id", "transfer_id"),
    )
