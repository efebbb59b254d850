"""
End-to-end allocation lifecycle against a real database: ledger, audit
trail, compliance report, bulk engine and the movement bridge.

Requires TEST_DATABASE_URL (a disposable Postgres database).
"""

import os
import uuid
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from allocator.models.transfer import Transfer
from allocator.services import (
    allocation_audit_service,
    allocation_service,
    allocation_transfer_service,
    bulk_allocation_service,
)
from allocator.services.bulk_allocation_service import (
    AllocationStrategy,
    BulkAllocationInput,
    DestinationInput,
)

pytestmark = pytest.mark.skipif(
    not os.getenv("TEST_DATABASE_URL"), reason="TEST_DATABASE_URL not set"
)


def _window():
    now = datetime.utcnow()
    return now - timedelta(hours=1), now + timedelta(hours=1)


@pytest.mark.asyncio
async def test_lifecycle_leaves_complete_audit_trail(world):
    t, u = world.tenant_id, world.user_id
    async with world.maker() as s:
        allocation = await allocation_service.create_allocation(
            s, world.line_id, world.location_ids[0], 10, "weekend stock", t, u
        )
        alloc_id = str(allocation.id)
        await allocation_service.update_allocation_status(s, alloc_id, "SHIPPED", t, u)
        await allocation_service.update_allocation(s, alloc_id, {"received_quantity": 10}, t, u)
        await allocation_service.update_allocation_status(s, alloc_id, "RECEIVED", t, u)
        await s.commit()

    async with world.maker() as s:
        trail = await allocation_audit_service.get_audit_trail(s, alloc_id, t)
        history = await allocation_service.get_allocation(s, alloc_id, t)
        start, end = _window()
        report = await allocation_audit_service.generate_compliance_report(s, t, start, end, u)

    assert [e["action"] for e in trail] == ["STATUS_CHANGED", "UPDATED", "STATUS_CHANGED", "CREATED"]
    assert trail[0]["performer"]["email"].endswith("@harbour.test")
    assert trail[0]["allocation"]["destination_name"] == "Harbour Street"
    assert history.status == "RECEIVED"
    assert report["summary"]["total_audit_events"] == 4
    assert report["integrity_checks"]["missing_audit_logs"] == []
    assert report["integrity_checks"]["orphaned_audit_logs"] == []


@pytest.mark.asyncio
async def test_deleted_allocation_is_not_orphaned_but_stray_entry_is(world):
    t, u = world.tenant_id, world.user_id
    stray_allocation = uuid.uuid4()
    async with world.maker() as s:
        allocation = await allocation_service.create_allocation(
            s, world.line_id, world.location_ids[1], 5, None, t, u
        )
        await allocation_service.delete_allocation(s, str(allocation.id), t, u)
        stray = await allocation_audit_service.log_allocation_audit(
            s, t, stray_allocation, "UPDATED",
            old_values={"quantity_allocated": 1}, new_values={"quantity_allocated": 2},
            performed_by=u,
        )
        await s.commit()

    async with world.maker() as s:
        start, end = _window()
        report = await allocation_audit_service.generate_compliance_report(s, t, start, end, u)

    assert report["summary"]["allocations_deleted"] == 1
    assert report["integrity_checks"]["orphaned_audit_logs"] == [str(stray.id)]
    assert report["integrity_checks"]["missing_audit_logs"] == []


@pytest.mark.asyncio
async def test_bulk_equal_split_and_dry_rerun(world):
    t, u = world.tenant_id, world.user_id
    destinations = world.location_ids[:4]
    item = BulkAllocationInput(
        line_item_id=world.line_id,
        destinations=[DestinationInput(loc) for loc in destinations],
    )
    strategy = AllocationStrategy(type="EQUAL_DISTRIBUTION")

    async with world.maker() as s:
        result = await bulk_allocation_service.bulk_allocate(
            s, world.po_id, strategy, [item], False, t, u
        )
        await s.commit()

    assert result.success
    assert [a.quantity_allocated for a in result.created_allocations] == [25, 25, 25, 25]

    async with world.maker() as s:
        rerun = await bulk_allocation_service.bulk_allocate(
            s, world.po_id, strategy, [item], True, t, u
        )
        remaining = await allocation_service.get_unallocated_quantity(s, world.line_id, t)

    assert rerun.created_allocations == []
    assert rerun.failed_allocations[0]["error_codes"].count("DUPLICATE_DESTINATION") == 4
    assert remaining == 0


@pytest.mark.asyncio
async def test_movement_receipt_syncs_back_to_allocation(world):
    t, u = world.tenant_id, world.user_id
    async with world.maker() as s:
        allocation = await allocation_service.create_allocation(
            s, world.line_id, world.location_ids[2], 12, None, t, u
        )
        alloc_id = str(allocation.id)
        await allocation_service.update_allocation_status(s, alloc_id, "SHIPPED", t, u)
        created = await allocation_transfer_service.create_transfer_from_allocation(
            s, alloc_id, world.location_ids[3], t, u
        )
        await s.commit()

    movement_id = created.movement.id
    assert created.movement.quantity_requested == 12

    async with world.maker() as s:
        await s.execute(
            update(Transfer).where(Transfer.id == movement_id).values(status="RECEIVED")
        )
        results = await allocation_transfer_service.sync_allocation_transfer_status(s, alloc_id, t)
        await s.commit()

    assert results[0].allocation_status_updated
    assert results[0].allocation_status == "RECEIVED"

    async with world.maker() as s:
        history = await allocation_service.get_allocation(s, alloc_id, t)
        chain = await allocation_transfer_service.get_traceability_chain(s, alloc_id, t)
        entries = await allocation_audit_service.get_audit_trail(s, alloc_id, t)

    assert history.status == "RECEIVED"
    assert {str(loc.id) for loc in chain["locations"]} == {world.location_ids[2], world.location_ids[3]}
    assert chain["product"].name == "Burrata"
    assert entries[0]["performed_by"] is None
