"""
Unit tests for allocator/services/allocation_service.py

Uses AsyncMock to isolate from the database; collaborator lookups and the
audit writer are patched at module level.
"""

import uuid
from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError

from allocator.config import settings
from allocator.errors import AllocationError, ErrorCode
from allocator.models.allocation import Allocation
from allocator.services import allocation_service, directory
from allocator.services.allocation_service import (
    VALID_TRANSITIONS,
    allowed_operations,
    check_constraints,
    create_allocation,
    delete_allocation,
    get_unallocated_quantity,
    update_allocation,
    update_allocation_status,
    validate_allocation_constraints,
)
from allocator.services.directory import LineItemInfo

LINE_ID = str(uuid.uuid4())
STATUSES = ["PENDING", "SHIPPED", "RECEIVED", "CANCELLED"]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _line(ordered: int = 100, po_status: str = "APPROVED") -> LineItemInfo:
    return LineItemInfo(
        id=LINE_ID,
        po_id=str(uuid.uuid4()),
        po_number="PO-1001",
        po_status=po_status,
        product_id=str(uuid.uuid4()),
        product_name="San Marzano tomatoes",
        ordered_quantity=ordered,
        unit_price_cents=250,
    )


def _allocation(quantity=10, status="PENDING", location_id=None, received=0) -> Allocation:
    now = datetime.utcnow()
    return Allocation(
        id=uuid.uuid4(),
        tenant_id=uuid.uuid4(),
        po_item_id=LINE_ID,
        target_location_id=location_id or str(uuid.uuid4()),
        quantity_allocated=quantity,
        quantity_received=received,
        status=status,
        notes=None,
        created_by=uuid.uuid4(),
        created_at=now,
        updated_at=now,
    )


class _SerializationFailure(Exception):
    sqlstate = "40001"


class _InternalError(Exception):
    sqlstate = "XX000"


@pytest.fixture
def ledger():
    """Patched collaborators around an in-memory list of allocations for LINE_ID."""
    rows: list[Allocation] = []
    line = _line()
    with patch.object(directory, "location_exists", AsyncMock(return_value=True)), \
            patch.object(directory, "user_exists", AsyncMock(return_value=True)), \
            patch.object(directory, "get_line_item", AsyncMock(return_value=line)) as get_line, \
            patch.object(
                allocation_service,
                "list_line_item_allocations",
                AsyncMock(side_effect=lambda *a, **k: list(rows)),
            ), \
            patch.object(allocation_service, "log_allocation_audit", AsyncMock()) as audit:
        yield SimpleNamespace(rows=rows, line=line, get_line=get_line, audit=audit)


# ---------------------------------------------------------------------------
# check_constraints
# ---------------------------------------------------------------------------


def test_check_constraints_accepts_exact_fill_with_warning():
    existing = [_allocation(quantity=60)]
    result = check_constraints(_line(100), existing, [(str(uuid.uuid4()), 40)])
    assert result.valid
    assert result.allocated_quantity == 60
    assert result.proposed_quantity == 40
    assert result.warnings == ["Line item will be fully allocated"]


def test_check_constraints_reports_over_allocation_amount():
    result = check_constraints(_line(100), [_allocation(quantity=60)], [(str(uuid.uuid4()), 50)])
    assert not result.valid
    assert [e["code"] for e in result.errors] == ["OVER_ALLOCATION"]
    assert "by 10" in result.errors[0]["message"]


def test_check_constraints_flags_duplicates_in_request_and_store():
    taken = str(uuid.uuid4())
    fresh = str(uuid.uuid4())
    existing = [_allocation(quantity=5, location_id=taken)]
    result = check_constraints(_line(100), existing, [(taken, 5), (fresh, 5), (fresh, 5)])
    codes = [e["code"] for e in result.errors]
    assert codes == ["DUPLICATE_DESTINATION", "DUPLICATE_DESTINATION"]
    assert {e["destination_id"] for e in result.errors} == {taken, fresh}


def test_check_constraints_rejects_unapproved_order_and_bad_quantity():
    result = check_constraints(_line(100, po_status="DRAFT"), [], [(str(uuid.uuid4()), 0)])
    codes = [e["code"] for e in result.errors]
    assert "INVALID_STATE" in codes
    assert "INVALID_INPUT" in codes


def test_check_constraints_excludes_the_row_being_edited():
    row = _allocation(quantity=60)
    result = check_constraints(_line(100), [row], [(str(uuid.uuid4()), 100)], exclude_id=str(row.id))
    assert result.valid


def test_allowed_operations_by_status():
    assert all(allowed_operations("PENDING").values())
    shipped = allowed_operations("SHIPPED")
    assert shipped["can_update_received"] and shipped["can_change_status"]
    assert not shipped["can_update_quantity"] and not shipped["can_delete"]
    assert not any(allowed_operations("RECEIVED").values())
    assert not any(allowed_operations("CANCELLED").values())


# ---------------------------------------------------------------------------
# create_allocation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_scenario_fill_line_item_then_reject_overflow(mock_session, ledger, tenant_id, actor_id):
    l1, l2 = str(uuid.uuid4()), str(uuid.uuid4())

    first = await create_allocation(mock_session, LINE_ID, l1, 60, None, tenant_id, actor_id)
    assert first.status == "PENDING"
    assert first.quantity_received == 0
    ledger.rows.append(first)

    with pytest.raises(AllocationError) as exc_info:
        await create_allocation(mock_session, LINE_ID, l2, 50, None, tenant_id, actor_id)
    assert exc_info.value.code == ErrorCode.OVER_ALLOCATION

    second = await create_allocation(mock_session, LINE_ID, l2, 40, None, tenant_id, actor_id)
    ledger.rows.append(second)
    assert sum(a.quantity_allocated for a in ledger.rows) == 100


@pytest.mark.asyncio
async def test_create_locks_line_item_and_writes_created_entry(mock_session, ledger, tenant_id, actor_id):
    allocation = await create_allocation(
        mock_session, LINE_ID, str(uuid.uuid4()), 25, "first drop", tenant_id, actor_id
    )

    ledger.get_line.assert_awaited_once_with(mock_session, LINE_ID, tenant_id, for_update=True)
    mock_session.add.assert_called_once_with(allocation)
    ledger.audit.assert_awaited_once()
    kwargs = ledger.audit.await_args.kwargs
    assert kwargs["action"] == "CREATED"
    assert kwargs["allocation_id"] == allocation.id
    assert kwargs["old_values"] is None
    assert kwargs["new_values"]["quantity_allocated"] == 25
    assert kwargs["performed_by"] == actor_id


@pytest.mark.asyncio
async def test_create_rejects_taken_destination(mock_session, ledger, tenant_id, actor_id):
    taken = str(uuid.uuid4())
    ledger.rows.append(_allocation(quantity=10, location_id=taken))

    with pytest.raises(AllocationError) as exc_info:
        await create_allocation(mock_session, LINE_ID, taken, 5, None, tenant_id, actor_id)

    assert exc_info.value.code == ErrorCode.DUPLICATE_DESTINATION
    ledger.audit.assert_not_awaited()


@pytest.mark.asyncio
async def test_create_maps_unique_violation_to_duplicate(mock_session, ledger, tenant_id, actor_id):
    mock_session.flush.side_effect = IntegrityError(
        "INSERT INTO allocations", {}, Exception("uq_allocation_item_location")
    )

    with pytest.raises(AllocationError) as exc_info:
        await create_allocation(mock_session, LINE_ID, str(uuid.uuid4()), 5, None, tenant_id, actor_id)

    assert exc_info.value.code == ErrorCode.DUPLICATE_DESTINATION


@pytest.mark.asyncio
async def test_create_requires_approved_order(mock_session, ledger, tenant_id, actor_id):
    ledger.line.po_status = "PENDING_APPROVAL"

    with pytest.raises(AllocationError) as exc_info:
        await create_allocation(mock_session, LINE_ID, str(uuid.uuid4()), 5, None, tenant_id, actor_id)

    assert exc_info.value.code == ErrorCode.INVALID_STATE
    mock_session.add.assert_not_called()


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity", [0, -3, 2.5, True])
async def test_create_rejects_non_positive_integer_quantity(mock_session, ledger, tenant_id, actor_id, quantity):
    with pytest.raises(AllocationError) as exc_info:
        await create_allocation(mock_session, LINE_ID, str(uuid.uuid4()), quantity, None, tenant_id, actor_id)
    assert exc_info.value.code == ErrorCode.INVALID_INPUT
    ledger.get_line.assert_not_awaited()


@pytest.mark.asyncio
async def test_create_unknown_location_is_not_found(mock_session, ledger, tenant_id, actor_id):
    with patch.object(directory, "location_exists", AsyncMock(return_value=False)):
        with pytest.raises(AllocationError) as exc_info:
            await create_allocation(mock_session, LINE_ID, str(uuid.uuid4()), 5, None, tenant_id, actor_id)
    assert exc_info.value.code == ErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_create_fails_when_audit_write_fails(mock_session, ledger, tenant_id, actor_id):
    ledger.audit.side_effect = AllocationError(
        ErrorCode.AUDIT_WRITE_FAILED, "Failed to record allocation audit entry"
    )

    with pytest.raises(AllocationError) as exc_info:
        await create_allocation(mock_session, LINE_ID, str(uuid.uuid4()), 5, None, tenant_id, actor_id)

    assert exc_info.value.code == ErrorCode.AUDIT_WRITE_FAILED
    assert exc_info.value.http_status == 500


@pytest.mark.asyncio
async def test_create_retries_serialization_failure_then_succeeds(mock_session, ledger, tenant_id, actor_id):
    ledger.get_line.side_effect = [
        DBAPIError("SELECT", {}, _SerializationFailure()),
        ledger.line,
    ]

    allocation = await create_allocation(
        mock_session, LINE_ID, str(uuid.uuid4()), 5, None, tenant_id, actor_id
    )

    assert allocation.quantity_allocated == 5
    assert ledger.get_line.await_count == 2


@pytest.mark.asyncio
async def test_create_exhausted_retries_become_write_conflict(mock_session, ledger, tenant_id, actor_id):
    ledger.get_line.side_effect = DBAPIError("SELECT", {}, _SerializationFailure())

    with pytest.raises(AllocationError) as exc_info:
        await create_allocation(mock_session, LINE_ID, str(uuid.uuid4()), 5, None, tenant_id, actor_id)

    assert exc_info.value.code == ErrorCode.WRITE_CONFLICT
    assert ledger.get_line.await_count == settings.ALLOCATION_WRITE_RETRY_ATTEMPTS


@pytest.mark.asyncio
async def test_create_other_driver_errors_are_not_retried(mock_session, ledger, tenant_id, actor_id):
    ledger.get_line.side_effect = DBAPIError("SELECT", {}, _InternalError())

    with pytest.raises(DBAPIError):
        await create_allocation(mock_session, LINE_ID, str(uuid.uuid4()), 5, None, tenant_id, actor_id)

    assert ledger.get_line.await_count == 1


# ---------------------------------------------------------------------------
# update_allocation / delete_allocation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_quantity_respects_ordered_total(mock_session, ledger, tenant_id, actor_id):
    target = _allocation(quantity=60)
    ledger.rows.extend([target, _allocation(quantity=30)])

    with patch.object(allocation_service, "_load_allocation", AsyncMock(return_value=target)):
        updated = await update_allocation(mock_session, str(target.id), {"quantity": 70}, tenant_id, actor_id)
        assert updated.quantity_allocated == 70

        with pytest.raises(AllocationError) as exc_info:
            await update_allocation(mock_session, str(target.id), {"quantity": 71}, tenant_id, actor_id)

    assert exc_info.value.code == ErrorCode.OVER_ALLOCATION
    assert target.quantity_allocated == 70
    entry = ledger.audit.await_args_list[0].kwargs
    assert entry["action"] == "UPDATED"
    assert entry["old_values"]["quantity_allocated"] == 60
    assert entry["new_values"]["quantity_allocated"] == 70


@pytest.mark.asyncio
async def test_update_received_quantity_bounded_by_allocation(mock_session, ledger, tenant_id, actor_id):
    target = _allocation(quantity=10, status="SHIPPED")

    with patch.object(allocation_service, "_load_allocation", AsyncMock(return_value=target)):
        with pytest.raises(AllocationError) as exc_info:
            await update_allocation(mock_session, str(target.id), {"received_quantity": 11}, tenant_id, actor_id)

    assert exc_info.value.code == ErrorCode.INVALID_INPUT
    assert target.quantity_received == 0
    ledger.audit.assert_not_awaited()


@pytest.mark.asyncio
async def test_update_without_known_fields_is_invalid(mock_session, ledger, tenant_id, actor_id):
    with pytest.raises(AllocationError) as exc_info:
        await update_allocation(mock_session, str(uuid.uuid4()), {"status": "SHIPPED"}, tenant_id, actor_id)
    assert exc_info.value.code == ErrorCode.INVALID_INPUT


@pytest.mark.asyncio
async def test_delete_pending_writes_deleted_entry(mock_session, ledger, tenant_id, actor_id):
    target = _allocation(quantity=10)

    with patch.object(allocation_service, "_load_allocation", AsyncMock(return_value=target)):
        await delete_allocation(mock_session, str(target.id), tenant_id, actor_id)

    mock_session.delete.assert_awaited_once_with(target)
    entry = ledger.audit.await_args.kwargs
    assert entry["action"] == "DELETED"
    assert entry["old_values"]["quantity_allocated"] == 10
    assert entry["new_values"] is None


@pytest.mark.asyncio
async def test_status_lifecycle_locks_quantity_after_shipping(mock_session, ledger, tenant_id, actor_id):
    target = _allocation(quantity=10)
    alloc_id = str(target.id)

    with patch.object(allocation_service, "_load_allocation", AsyncMock(return_value=target)):
        await update_allocation_status(mock_session, alloc_id, "SHIPPED", tenant_id, actor_id)

        with pytest.raises(AllocationError) as exc_info:
            await update_allocation(mock_session, alloc_id, {"quantity": 5}, tenant_id, actor_id)
        assert exc_info.value.code == ErrorCode.INVALID_STATE

        await update_allocation(mock_session, alloc_id, {"received_quantity": 10}, tenant_id, actor_id)
        await update_allocation_status(mock_session, alloc_id, "RECEIVED", tenant_id, actor_id)

        with pytest.raises(AllocationError) as exc_info:
            await delete_allocation(mock_session, alloc_id, tenant_id, actor_id)
        assert exc_info.value.code == ErrorCode.INVALID_STATE

    assert target.status == "RECEIVED"
    assert target.quantity_allocated == 10
    assert target.quantity_received == 10
    actions = [c.kwargs["action"] for c in ledger.audit.await_args_list]
    assert actions == ["STATUS_CHANGED", "UPDATED", "STATUS_CHANGED"]
    mock_session.delete.assert_not_awaited()


# ---------------------------------------------------------------------------
# update_allocation_status
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize("current", STATUSES)
@pytest.mark.parametrize("requested", STATUSES)
async def test_status_transition_grid(mock_session, ledger, tenant_id, actor_id, current, requested):
    target = _allocation(status=current)

    with patch.object(allocation_service, "_load_allocation", AsyncMock(return_value=target)):
        if requested in VALID_TRANSITIONS[current]:
            result = await update_allocation_status(
                mock_session, str(target.id), requested, tenant_id, actor_id
            )
            assert result.status == requested
            entry = ledger.audit.await_args.kwargs
            assert entry["action"] == "STATUS_CHANGED"
            assert entry["old_values"] == {"status": current}
            assert entry["new_values"] == {"status": requested}
        else:
            with pytest.raises(AllocationError) as exc_info:
                await update_allocation_status(
                    mock_session, str(target.id), requested, tenant_id, actor_id
                )
            assert exc_info.value.code == ErrorCode.INVALID_TRANSITION
            assert target.status == current
            ledger.audit.assert_not_awaited()
            mock_session.flush.assert_not_awaited()


@pytest.mark.asyncio
async def test_status_change_by_system_has_no_actor(mock_session, ledger, tenant_id):
    target = _allocation(status="SHIPPED")

    with patch.object(allocation_service, "_load_allocation", AsyncMock(return_value=target)):
        await update_allocation_status(mock_session, str(target.id), "RECEIVED", tenant_id, None)

    assert ledger.audit.await_args.kwargs["performed_by"] is None


@pytest.mark.asyncio
async def test_unknown_status_is_invalid_input(mock_session, ledger, tenant_id, actor_id):
    with pytest.raises(AllocationError) as exc_info:
        await update_allocation_status(mock_session, str(uuid.uuid4()), "LOST", tenant_id, actor_id)
    assert exc_info.value.code == ErrorCode.INVALID_INPUT


# ---------------------------------------------------------------------------
# Read helpers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unallocated_quantity(mock_session, ledger, tenant_id):
    ledger.rows.extend([_allocation(quantity=60), _allocation(quantity=15)])
    assert await get_unallocated_quantity(mock_session, LINE_ID, tenant_id) == 25


@pytest.mark.asyncio
async def test_validate_unknown_line_item_is_not_found(mock_session, ledger, tenant_id):
    ledger.get_line.return_value = None
    with pytest.raises(AllocationError) as exc_info:
        await validate_allocation_constraints(mock_session, LINE_ID, [], tenant_id)
    assert exc_info.value.code == ErrorCode.NOT_FOUND
