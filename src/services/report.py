import csv
import io
import logging
import uuid
from datetime import datetime

from src.models import ActivityStatus, ReconciliationResult
from src.schemas import AnalysisReport, IdentityDetail, IdentitySummary

logger = logging.getLogger(__name__)

SUMMARY_CSV_COLUMNS = [
    "finding_id",
    "principal_id",
    "principal_display_name",
    "principal_type",
    "activity_status",
    "assigned_count",
    "used_count",
    "unused_count",
    "unused_permissions",
    "unassigned_used_permissions",
]


class ReportAggregator:
    """
    Shapes reconciliation results into a report.
    Principals holding the most unused permissions come first.
    """

    def build(
        self,
        results: list[ReconciliationResult],
        window_start: datetime,
        window_end: datetime,
        datasets_hash: str = "",
        metadata: dict | None = None,
    ) -> AnalysisReport:
        ordered = sorted(results, key=self._sort_key)

        summaries: list[IdentitySummary] = []
        details: list[IdentityDetail] = []
        for result in ordered:
            summary = self._summarize(result)
            summaries.append(summary)
            details.append(self._detail(summary, result))

        report = AnalysisReport(
            window_start=window_start,
            window_end=window_end,
            datasets_hash=datasets_hash,
            total_principals=len(summaries),
            principals_with_unused=sum(1 for s in summaries if s.unused_count),
            principals_without_activity=sum(
                1 for s in summaries if s.no_activity_found
            ),
            principals_query_failed=sum(
                1
                for s in summaries
                if s.activity_status == ActivityStatus.QUERY_FAILED
            ),
            total_assigned=sum(s.assigned_count for s in summaries),
            total_unused=sum(s.unused_count for s in summaries),
            identities=summaries,
            details=details,
            metadata=metadata or {},
        )
        logger.info(
            f"Report built: {report.principals_with_unused}/{report.total_principals} "
            f"principals hold unused permissions ({report.total_unused} in total)"
        )
        return report

    @staticmethod
    def _sort_key(result: ReconciliationResult):
        return (
            -len(result.unused_permissions),
            result.principal_display_name.lower(),
            result.principal_id,
        )

    def _summarize(self, result: ReconciliationResult) -> IdentitySummary:
        return IdentitySummary(
            finding_id=self._generate_finding_id(result.principal_id),
            principal_id=result.principal_id,
            principal_display_name=result.principal_display_name,
            principal_type=result.principal_type,
            assigned_count=len(result.assigned_permissions),
            used_count=len(result.used_permissions),
            unused_count=len(result.unused_permissions),
            unused_permissions=sorted(result.unused_permissions),
            unassigned_used_permissions=sorted(result.unassigned_used_permissions),
            activity_status=result.activity_status,
            no_activity_found=result.no_activity_found,
        )

    @staticmethod
    def _detail(
        summary: IdentitySummary, result: ReconciliationResult
    ) -> IdentityDetail:
        calls = result.per_call_detail
        return IdentityDetail(
            summary=summary,
            assigned_permissions=sorted(result.assigned_permissions),
            used_permissions=sorted(result.used_permissions),
            mapped_calls=sum(1 for c in calls if c.is_mapped),
            inferred_calls=sum(1 for c in calls if c.is_inferred),
            unmatched_calls=len(result.unmatched_calls),
            calls=list(calls),
        )

    def _generate_finding_id(self, principal_id: str) -> str:
        """
        Generate deterministic, principal-centric finding ID.
        """
        namespace = uuid.UUID("f47ac10b-58cc-4372-a567-0e02b2c3d479")
        finding_uuid = uuid.uuid5(namespace, f"principal:{principal_id}")
        return f"FINDING-{str(finding_uuid)[:12].upper()}"


def render_summary_csv(report: AnalysisReport) -> str:
    """Render the summary table; permission lists are `;`-separated."""
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=SUMMARY_CSV_COLUMNS)
    writer.writeheader()
    for summary in report.identities:
        row = summary.model_dump(include=set(SUMMARY_CSV_COLUMNS), mode="json")
        row["unused_permissions"] = ";".join(summary.unused_permissions)
        row["unassigned_used_permissions"] = ";".join(
            summary.unassigned_used_permissions
        )
        writer.writerow(row)
    return output.getvalue()
