"""
Pydantic schemas for API responses and report records.
These define the "contract" consumed by report renderers.
"""
from datetime import datetime, timezone
from typing import Any
from pydantic import BaseModel, Field

from src.models import ActivityStatus, CallDetail, RemediationAdvice


class IngestResponse(BaseModel):
    """Response from the /ingest endpoint."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    total_grant_rows: int
    valid_grant_rows: int
    corrupt_grant_rows: int
    unresolved_grants: int

    principals_processed: int
    principals_without_permissions: int
    total_permissions: int
    unique_permissions: int


class IdentitySummary(BaseModel):
    """One row of the summary table."""

    finding_id: str
    principal_id: str
    principal_display_name: str
    principal_type: str
    assigned_count: int
    used_count: int
    unused_count: int
    unused_permissions: list[str]
    unassigned_used_permissions: list[str]
    activity_status: ActivityStatus
    no_activity_found: bool


class IdentityDetail(BaseModel):
    """Full per-identity breakdown, including how every call was resolved."""

    summary: IdentitySummary
    assigned_permissions: list[str]
    used_permissions: list[str]
    mapped_calls: int
    inferred_calls: int
    unmatched_calls: int
    calls: list[CallDetail]


class AnalysisReport(BaseModel):
    """Outcome of one analysis run across all principals."""

    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    window_start: datetime
    window_end: datetime
    datasets_hash: str

    total_principals: int
    principals_with_unused: int
    principals_without_activity: int
    principals_query_failed: int
    total_assigned: int
    total_unused: int

    identities: list[IdentitySummary]
    details: list[IdentityDetail]
    metadata: dict[str, Any] = Field(default_factory=dict)

    def get_detail(self, principal_id: str) -> IdentityDetail | None:
        return next(
            (d for d in self.details if d.summary.principal_id == principal_id),
            None,
        )


class FindingResponse(BaseModel):
    """
    A principal-centric finding.
    This combines the principal's summary with remediation advice.
    """

    summary: IdentitySummary
    advice: RemediationAdvice | None = None
