"""Model registry. Importing this package registers every table on Base.metadata."""

from allocator.database import Base  # noqa: F401

from allocator.models.tenant import Tenant  # noqa: F401
from allocator.models.user import User  # noqa: F401
from allocator.models.location import Location  # noqa: F401
from allocator.models.product import Product  # noqa: F401
from allocator.models.purchase_order import PurchaseOrder, PoLineItem  # noqa: F401
from allocator.models.allocation import (  # noqa: F401
    Allocation,
    AllocationAuditLog,
    AllocationTemplate,
)
from allocator.models.transfer import Transfer, TransferAllocation  # noqa: F401
