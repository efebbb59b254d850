import os
import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker

from allocator.database import Base, build_engine
from allocator.models import (
    Location,
    PoLineItem,
    Product,
    PurchaseOrder,
    Tenant,
    User,
)

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

LOCATION_NAMES = [
    "Harbour Street", "Dockside", "Old Town", "Riverside",
    "Market Hall", "Station Road", "Hilltop", "Central Kitchen",
]


@pytest.fixture
async def engine():
    engine = build_engine(TEST_DATABASE_URL, connect_args={}, pool_size=10, max_overflow=0)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def world(engine):
    """One tenant with a manager, eight locations and an approved order of 100 units."""
    maker = async_sessionmaker(engine, expire_on_commit=False)
    suffix = uuid.uuid4().hex[:8]
    async with maker() as s:
        tenant = Tenant(name="Harbour Group", slug=f"harbour-{suffix}")
        s.add(tenant)
        await s.flush()

        user = User(
            tenant_id=tenant.id,
            email=f"ops-{suffix}@harbour.test",
            first_name="Ops",
            last_name="Manager",
            role="manager",
        )
        locations = [Location(tenant_id=tenant.id, name=name) for name in LOCATION_NAMES]
        product = Product(tenant_id=tenant.id, name="Burrata", sku="BUR-125")
        s.add_all([user, product, *locations])
        await s.flush()

        po = PurchaseOrder(
            tenant_id=tenant.id,
            po_number=f"PO-{suffix}",
            supplier_name="Caseificio Sud",
            status="APPROVED",
            created_by=user.id,
        )
        s.add(po)
        await s.flush()

        line = PoLineItem(
            po_id=po.id,
            product_id=product.id,
            line_number=1,
            quantity=100,
            unit_price_cents=900,
        )
        s.add(line)
        await s.commit()

    return SimpleNamespace(
        maker=maker,
        tenant_id=str(tenant.id),
        user_id=str(user.id),
        location_ids=[str(loc.id) for loc in locations],
        product_id=str(product.id),
        po_id=str(po.id),
        line_id=str(line.id),
    )
