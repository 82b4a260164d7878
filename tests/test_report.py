"""
Unit tests for report aggregation and CSV rendering.
"""
import csv
import io
from datetime import datetime, timezone

import pytest

from src.models import ActivityStatus, ReconciliationResult
from src.services.report import (
    SUMMARY_CSV_COLUMNS,
    ReportAggregator,
    render_summary_csv,
)
from tests.conftest import _usage

START = datetime(2026, 9, 1, tzinfo=timezone.utc)
END = datetime(2026, 10, 1, tzinfo=timezone.utc)


def _result(
    principal_id: str,
    name: str,
    assigned: set[str],
    used: set[str],
    status: ActivityStatus = ActivityStatus.ACTIVE,
) -> ReconciliationResult:
    return ReconciliationResult(
        principal_id=principal_id,
        principal_display_name=name,
        principal_type="ServicePrincipal",
        assigned_permissions=assigned,
        used_permissions=used,
        unused_permissions=assigned - used,
        unassigned_used_permissions=used - assigned,
        no_activity_found=status != ActivityStatus.ACTIVE,
        activity_status=status,
    )


@pytest.fixture
def results() -> list[ReconciliationResult]:
    return [
        _result("sp-1", "HR Sync", {"User.Read.All", "Mail.Read.All"}, {"User.Read.All"}),
        _result(
            "sp-2",
            "Dormant App",
            {"Group.Read.All", "User.Read.All", "Mail.Read.All"},
            set(),
            ActivityStatus.NO_ACTIVITY,
        ),
        _result("sp-3", "Clean App", {"User.Read.All"}, {"User.Read.All", "Directory.Read.All"}),
        _result("sp-4", "archive bot", {"Mail.Read.All"}, set(), ActivityStatus.QUERY_FAILED),
    ]


def test_report_orders_by_unused_count_then_name(results):
    report = ReportAggregator().build(results, START, END, datasets_hash="abc")

    assert [s.principal_id for s in report.identities] == ["sp-2", "sp-4", "sp-1", "sp-3"]
    assert [d.summary.principal_id for d in report.details] == [
        s.principal_id for s in report.identities
    ]


def test_report_totals(results):
    report = ReportAggregator().build(results, START, END, datasets_hash="abc")

    assert report.datasets_hash == "abc"
    assert report.window_start == START
    assert report.window_end == END
    assert report.total_principals == 4
    assert report.principals_with_unused == 3
    assert report.principals_without_activity == 2
    assert report.principals_query_failed == 1
    assert report.total_assigned == 7
    assert report.total_unused == 5


def test_summary_lists_are_sorted(results):
    report = ReportAggregator().build(results, START, END)
    dormant = report.identities[0]

    assert dormant.unused_permissions == ["Group.Read.All", "Mail.Read.All", "User.Read.All"]
    assert dormant.assigned_count == 3
    assert dormant.used_count == 0
    assert dormant.no_activity_found is True

    clean = report.get_detail("sp-3").summary
    assert clean.unused_count == 0
    assert clean.unassigned_used_permissions == ["Directory.Read.All"]


def test_finding_ids_are_deterministic(results):
    first = ReportAggregator().build(results, START, END)
    second = ReportAggregator().build(list(reversed(results)), START, END)

    ids_first = {s.principal_id: s.finding_id for s in first.identities}
    ids_second = {s.principal_id: s.finding_id for s in second.identities}
    assert ids_first == ids_second
    assert len(set(ids_first.values())) == 4
    assert all(fid.startswith("FINDING-") for fid in ids_first.values())


def test_detail_counts_calls(reconciler, assignment_hr_sync):
    result = reconciler.reconcile(
        assignment_hr_sync,
        [_usage("GET", "users"), _usage("GET", "users/{id}/events"), _usage("GET", "$batch")],
    )
    report = ReportAggregator().build([result], START, END)
    detail = report.get_detail("sp-1")

    assert detail.mapped_calls == 1
    assert detail.inferred_calls == 1
    assert detail.unmatched_calls == 1
    assert len(detail.calls) == 3
    assert report.get_detail("missing") is None


def test_empty_report():
    report = ReportAggregator().build([], START, END, metadata={"log_source": "mock"})

    assert report.total_principals == 0
    assert report.identities == []
    assert report.metadata == {"log_source": "mock"}


def test_render_summary_csv(results):
    report = ReportAggregator().build(results, START, END)
    rows = list(csv.DictReader(io.StringIO(render_summary_csv(report))))

    assert list(rows[0].keys()) == SUMMARY_CSV_COLUMNS
    assert len(rows) == 4
    assert rows[0]["principal_id"] == "sp-2"
    assert rows[0]["activity_status"] == "no_activity"
    assert rows[0]["unused_permissions"] == "Group.Read.All;Mail.Read.All;User.Read.All"
    assert rows[3]["unused_count"] == "0"
    assert rows[3]["unassigned_used_permissions"] == "Directory.Read.All"


def test_report_timestamp_is_timezone_aware(results):
    report = ReportAggregator().build(results, START, END)
    assert report.generated_at.tzinfo is not None
    assert report.generated_at.utcoffset().total_seconds() == 0
