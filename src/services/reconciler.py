import logging

from src.models import (
    ActivityStatus,
    CallDetail,
    ReconciliationResult,
    RoleAssignment,
    UsageRecord,
)
from src.services.inference import PermissionInferencer
from src.services.mapping_table import PermissionMappingTable
from src.services.normalizer import normalize_path

logger = logging.getLogger(__name__)


class UsageReconciler:
    """
    Correlates a principal's observed API calls with its granted permissions.

    Each call is resolved through the static mapping table first and the
    heuristic inferencer second. Calls that resolve to nothing are kept in the
    per-call detail but never abort the reconciliation.
    """

    def __init__(
        self,
        mapping_table: PermissionMappingTable,
        inferencer: PermissionInferencer | None = None,
    ):
        self.mapping_table = mapping_table
        self.inferencer = inferencer or PermissionInferencer()

    def resolve_call(self, method: str, path: str) -> CallDetail:
        normalized = normalize_path(path)
        required = self.mapping_table.lookup(method, normalized)
        is_mapped = bool(required)
        is_inferred = False
        if not required:
            required = self.inferencer.infer(method, normalized)
            is_inferred = bool(required)

        return CallDetail(
            method=method.upper(),
            path=normalized,
            required_permissions=sorted(required),
            is_mapped=is_mapped,
            is_inferred=is_inferred,
        )

    def reconcile(
        self,
        assignment: RoleAssignment,
        usage_records: list[UsageRecord] | None,
        query_failed: bool = False,
    ) -> ReconciliationResult:
        assigned = set(assignment.permissions)
        used: set[str] = set()
        calls: list[CallDetail] = []

        for record in usage_records or []:
            detail = self.resolve_call(record.method, record.normalized_path)
            detail.request_count = record.request_count
            detail.last_access = record.last_access
            calls.append(detail)
            used.update(detail.required_permissions)

        if query_failed:
            status = ActivityStatus.QUERY_FAILED
        elif calls:
            status = ActivityStatus.ACTIVE
        else:
            status = ActivityStatus.NO_ACTIVITY

        unmatched = sum(1 for c in calls if not (c.is_mapped or c.is_inferred))
        if unmatched:
            logger.info(
                f"{unmatched} of {len(calls)} calls by {assignment.principal_id} "
                "could not be mapped to any permission"
            )

        return ReconciliationResult(
            principal_id=assignment.principal_id,
            principal_display_name=assignment.principal_display_name,
            principal_type=assignment.principal_type,
            assigned_permissions=assigned,
            used_permissions=used,
            unused_permissions=assigned - used,
            unassigned_used_permissions=used - assigned,
            per_call_detail=calls,
            no_activity_found=not calls,
            activity_status=status,
        )
