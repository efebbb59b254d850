"""
Unit tests for allocator/services/allocation_audit_service.py

evaluate_integrity and render_audit_csv are pure; the query paths are
exercised with a mocked session and a patched trail loader.
"""

import csv
import io
import json
import uuid
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from allocator.config import settings
from allocator.errors import AllocationError, ErrorCode
from allocator.services import allocation_audit_service, directory
from allocator.services.allocation_audit_service import (
    CSV_COLUMNS,
    AuditFilters,
    evaluate_integrity,
    export_audit_data,
    generate_compliance_report,
    get_audit_summary,
    get_audit_trail,
    log_allocation_audit,
    render_audit_csv,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _log(allocation_id, action, new_values=None):
    return SimpleNamespace(
        id=uuid.uuid4(),
        allocation_id=allocation_id,
        action=action,
        new_values=new_values,
    )


def _entry(action="CREATED", performed_by=None, email=None):
    return {
        "id": str(uuid.uuid4()),
        "allocation_id": str(uuid.uuid4()),
        "action": action,
        "old_values": None,
        "new_values": {"status": "PENDING", "quantity_allocated": 12},
        "performed_by": performed_by,
        "performed_at": datetime(2026, 3, 14, 9, 30),
        "notes": "first drop, Friday",
        "performer": {"id": performed_by, "email": email, "role": "manager"} if performed_by else None,
        "allocation": {
            "destination_name": "Harbour Street",
            "product_name": "Burrata",
            "po_number": "PO-3001",
        },
    }


# ---------------------------------------------------------------------------
# evaluate_integrity
# ---------------------------------------------------------------------------


def test_deleted_allocation_entries_are_not_orphaned_but_stray_entry_is():
    deleted = str(uuid.uuid4())
    never_existed = str(uuid.uuid4())
    stray = _log(never_existed, "UPDATED")
    entries = [_log(deleted, "CREATED"), _log(deleted, "DELETED"), stray]

    result = evaluate_integrity(entries, set(), {deleted}, [], {})

    assert result["orphaned_audit_logs"] == [str(stray.id)]
    assert result["missing_audit_logs"] == []
    assert result["data_consistency_issues"] == ["Found 1 orphaned audit log entries"]


def test_allocation_without_created_entry_is_missing():
    alloc = SimpleNamespace(id=uuid.uuid4(), status="PENDING")

    result = evaluate_integrity([], set(), set(), [alloc], {})

    assert result["missing_audit_logs"] == [{
        "allocation_id": str(alloc.id),
        "expected_action": "CREATED",
        "reason": "allocation has no CREATED entry",
    }]
    assert len(result["data_consistency_issues"]) == 2


def test_status_without_matching_status_change_is_missing():
    shipped = SimpleNamespace(id=uuid.uuid4(), status="SHIPPED")
    drifted = SimpleNamespace(id=uuid.uuid4(), status="RECEIVED")
    history = {
        str(shipped.id): [_log(shipped.id, "CREATED")],
        str(drifted.id): [
            _log(drifted.id, "CREATED"),
            _log(drifted.id, "STATUS_CHANGED", {"status": "SHIPPED"}),
        ],
    }

    result = evaluate_integrity([], set(), set(), [shipped, drifted], history)

    missing = {m["allocation_id"]: m for m in result["missing_audit_logs"]}
    assert set(missing) == {str(shipped.id), str(drifted.id)}
    assert all(m["expected_action"] == "STATUS_CHANGED" for m in missing.values())
    assert "records SHIPPED" in missing[str(drifted.id)]["reason"]


def test_consistent_log_reports_nothing():
    alloc = SimpleNamespace(id=uuid.uuid4(), status="SHIPPED")
    created = _log(alloc.id, "CREATED")
    shipped = _log(alloc.id, "STATUS_CHANGED", {"status": "SHIPPED"})

    result = evaluate_integrity(
        [created, shipped], {str(alloc.id)}, set(), [alloc], {str(alloc.id): [created, shipped]}
    )

    assert result == {
        "orphaned_audit_logs": [],
        "missing_audit_logs": [],
        "data_consistency_issues": [],
    }


# ---------------------------------------------------------------------------
# log_allocation_audit
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_log_entry_values_are_json_safe(mock_session, tenant_id, actor_id):
    alloc_id = uuid.uuid4()
    stamp = datetime(2026, 1, 2, 3, 4, 5)

    entry = await log_allocation_audit(
        mock_session,
        tenant_id=tenant_id,
        allocation_id=alloc_id,
        action="UPDATED",
        old_values={"updated_at": stamp, "target_location_id": alloc_id},
        new_values={"quantity_allocated": 4},
        performed_by=actor_id,
        notes="trimmed",
    )

    mock_session.add.assert_called_once_with(entry)
    assert entry.allocation_id == alloc_id
    assert entry.performed_by == uuid.UUID(actor_id)
    assert entry.old_values == {"updated_at": stamp.isoformat(), "target_location_id": str(alloc_id)}
    assert entry.action == "UPDATED"


@pytest.mark.asyncio
async def test_log_failure_raises_audit_write_failed(mock_session, tenant_id):
    mock_session.flush.side_effect = OperationalError("INSERT", {}, Exception("connection reset"))

    with pytest.raises(AllocationError) as exc_info:
        await log_allocation_audit(mock_session, tenant_id, uuid.uuid4(), "CREATED")

    assert exc_info.value.code == ErrorCode.AUDIT_WRITE_FAILED


@pytest.mark.asyncio
async def test_log_rejects_malformed_ids(mock_session):
    with pytest.raises(AllocationError) as exc_info:
        await log_allocation_audit(mock_session, "not-a-uuid", uuid.uuid4(), "CREATED")
    assert exc_info.value.code == ErrorCode.INVALID_INPUT
    mock_session.add.assert_not_called()


# ---------------------------------------------------------------------------
# Trails, summary and report
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_allocation_trail_scopes_filters_to_allocation(mock_session, tenant_id):
    alloc_id = str(uuid.uuid4())
    with patch.object(allocation_audit_service, "get_tenant_audit_trail", AsyncMock(return_value=[])) as trail:
        await get_audit_trail(mock_session, alloc_id, tenant_id, AuditFilters(action="CREATED"))

    filters = trail.await_args.args[2]
    assert filters.allocation_id == alloc_id
    assert filters.action == "CREATED"
    assert filters.limit == settings.AUDIT_DEFAULT_PAGE_SIZE


@pytest.mark.asyncio
async def test_summary_counts_and_top_users(mock_session, tenant_id):
    chef = str(uuid.uuid4())
    by_action = MagicMock()
    by_action.all.return_value = [("CREATED", 3), ("STATUS_CHANGED", 1)]
    by_user = MagicMock()
    by_user.all.return_value = [(uuid.UUID(chef), 3), (None, 1)]
    mock_session.execute.side_effect = [by_action, by_user]

    with patch.object(
        directory, "get_users",
        AsyncMock(return_value={chef: SimpleNamespace(email="chef@harbour.test", role="manager")}),
    ), patch.object(allocation_audit_service, "get_tenant_audit_trail", AsyncMock(return_value=[])):
        summary = await get_audit_summary(mock_session, tenant_id)

    assert summary["total_events"] == 4
    assert summary["by_action"] == {"CREATED": 3, "UPDATED": 0, "DELETED": 0, "STATUS_CHANGED": 1}
    assert summary["top_users"] == [
        {"user_id": chef, "email": "chef@harbour.test", "count": 3, "percentage": 75.0},
        {"user_id": None, "email": None, "count": 1, "percentage": 25.0},
    ]
    assert summary["recent_activity"] == []


@pytest.mark.asyncio
async def test_compliance_report_summarises_trail(mock_session, tenant_id, actor_id):
    chef = str(uuid.uuid4())
    trail = [
        _entry("CREATED", chef, "chef@harbour.test"),
        _entry("CREATED", chef, "chef@harbour.test"),
        _entry("STATUS_CHANGED", None),
        _entry("DELETED", chef, "chef@harbour.test"),
    ]
    count = MagicMock()
    count.scalar.return_value = 2
    mock_session.execute.return_value = count
    integrity = {"orphaned_audit_logs": [], "missing_audit_logs": [], "data_consistency_issues": []}
    start, end = datetime(2026, 3, 1), datetime(2026, 3, 31)

    with patch.object(allocation_audit_service, "get_tenant_audit_trail", AsyncMock(return_value=trail)), \
            patch.object(allocation_audit_service, "check_audit_integrity", AsyncMock(return_value=integrity)):
        report = await generate_compliance_report(mock_session, tenant_id, start, end, actor_id)

    summary = report["summary"]
    assert summary["total_allocations"] == 2
    assert summary["total_audit_events"] == 4
    assert summary["allocations_created"] == 2
    assert summary["allocations_modified"] == 0
    assert summary["allocations_deleted"] == 1
    assert summary["status_changes"] == 1
    assert summary["by_user"][0] == {"user_id": chef, "email": "chef@harbour.test", "count": 3}
    assert report["date_range"] == {"from": start, "to": end}
    assert report["generated_by"] == actor_id
    assert report["integrity_checks"] is integrity


@pytest.mark.asyncio
async def test_compliance_report_rejects_inverted_range(mock_session, tenant_id, actor_id):
    now = datetime.utcnow()
    with pytest.raises(AllocationError) as exc_info:
        await generate_compliance_report(mock_session, tenant_id, now, now - timedelta(days=1), actor_id)
    assert exc_info.value.code == ErrorCode.INVALID_INPUT


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def test_render_csv_header_and_row():
    entry = _entry("CREATED", str(uuid.uuid4()), "chef@harbour.test")

    rows = list(csv.reader(io.StringIO(render_audit_csv([entry]))))

    assert rows[0] == CSV_COLUMNS
    row = dict(zip(CSV_COLUMNS, rows[1]))
    assert row["performer_email"] == "chef@harbour.test"
    assert row["performed_at"] == "2026-03-14T09:30:00"
    assert row["destination_name"] == "Harbour Street"
    assert row["old_values"] == ""
    assert json.loads(row["new_values"]) == {"status": "PENDING", "quantity_allocated": 12}
    assert row["notes"] == "first drop, Friday"


@pytest.mark.asyncio
async def test_export_json_and_row_cap(mock_session, tenant_id):
    with patch.object(
        allocation_audit_service, "get_tenant_audit_trail", AsyncMock(return_value=[_entry()])
    ) as trail:
        content = await export_audit_data(
            mock_session, tenant_id, AuditFilters(limit=settings.AUDIT_EXPORT_MAX_ROWS + 5), "JSON"
        )

    assert trail.await_args.args[2].limit == settings.AUDIT_EXPORT_MAX_ROWS
    exported = json.loads(content)
    assert exported[0]["performed_at"] == "2026-03-14T09:30:00"
    assert exported[0]["allocation"]["po_number"] == "PO-3001"


@pytest.mark.asyncio
async def test_export_csv_defaults_to_cap(mock_session, tenant_id):
    with patch.object(allocation_audit_service, "get_tenant_audit_trail", AsyncMock(return_value=[])) as trail:
        content = await export_audit_data(mock_session, tenant_id, None, "csv")

    assert trail.await_args.args[2].limit == settings.AUDIT_EXPORT_MAX_ROWS
    assert content.splitlines() == [",".join(CSV_COLUMNS)]


@pytest.mark.asyncio
async def test_export_rejects_unknown_format(mock_session, tenant_id):
    with pytest.raises(AllocationError) as exc_info:
        await export_audit_data(mock_session, tenant_id, None, "xml")
    assert exc_info.value.code == ErrorCode.INVALID_INPUT
