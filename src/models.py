"""
Core domain models for the permission usage auditor.
These models represent the internal business logic and data structures.
"""
from datetime import datetime, timezone
from enum import StrEnum
from logging import getLogger
from pydantic import BaseModel, ConfigDict, Field, field_validator

logger = getLogger(__name__)


class ActivityStatus(StrEnum):
    """How much we know about an identity's API activity."""
    ACTIVE = "active"
    NO_ACTIVITY = "no_activity"
    QUERY_FAILED = "query_failed"


class PermissionMappingEntry(BaseModel):
    """One permission -> endpoint row of the static mapping dataset."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, str_strip_whitespace=True)

    permission_name: str = Field(alias="permissionName", min_length=1)
    endpoint_path: str = Field(alias="endpointPath")
    method: str = Field(min_length=1)

    @field_validator("method")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return v.upper()


class FriendlyNameEntry(BaseModel):
    """Resolves application and/or delegated role ids to a permission name."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, str_strip_whitespace=True)

    permission_name: str = Field(alias="permissionName", min_length=1)
    application_id: str | None = Field(default=None, alias="applicationId")
    delegated_id: str | None = Field(default=None, alias="delegatedId")


class RawGrant(BaseModel):
    """A single grant row as returned by the identity/grant source."""
    model_config = ConfigDict(str_strip_whitespace=True)

    principal_id: str = Field(min_length=1)
    principal_display_name: str = ""
    principal_type: str = ""
    role_identifier: str = Field(min_length=1)
    grant_record_id: str = ""


class RoleAssignment(BaseModel):
    """All permissions granted to a single principal."""
    principal_id: str
    principal_display_name: str
    principal_type: str
    permissions: set[str] = Field(default_factory=set)


class UsageRecord(BaseModel):
    """Activity for one (method, normalized path) pair of a principal."""
    model_config = ConfigDict(str_strip_whitespace=True)

    method: str
    normalized_path: str
    request_count: int = Field(ge=1)
    last_access: datetime
    status_codes: set[str] = Field(default_factory=set)

    @field_validator("method")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return v.upper()

    @field_validator("last_access", mode="before")
    @classmethod
    def parse_datetime(cls, v: str | datetime) -> datetime:
        """Parse ISO datetime string."""
        if isinstance(v, datetime):
            return v
        return datetime.fromisoformat(str(v).replace("Z", "+00:00"))


class CallDetail(BaseModel):
    """How a single observed call was resolved to permissions."""
    method: str
    path: str
    required_permissions: list[str]
    is_mapped: bool
    is_inferred: bool
    request_count: int = 1
    last_access: datetime | None = None


class ReconciliationResult(BaseModel):
    """Assigned vs. used permissions for one principal."""
    principal_id: str
    principal_display_name: str = ""
    principal_type: str = ""
    assigned_permissions: set[str]
    used_permissions: set[str]
    unused_permissions: set[str]
    # Observed usage that the principal is not nominally granted
    unassigned_used_permissions: set[str] = Field(default_factory=set)
    per_call_detail: list[CallDetail] = Field(default_factory=list)
    no_activity_found: bool
    activity_status: ActivityStatus

    @property
    def unmatched_calls(self) -> list[CallDetail]:
        return [
            c for c in self.per_call_detail if not (c.is_mapped or c.is_inferred)
        ]


class RemediationAdvice(BaseModel):
    """LLM-generated remediation advice for one principal."""
    finding_id: str
    model_identifier: str
    prompt: str
    response: str
    risk: str
    action: str
    rationale: str
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
