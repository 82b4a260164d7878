"""
Shared fixtures for pytest.

This file provides reusable, modular data for use across all test files.
Fixtures are a core feature of pytest, enabling dependency injection for tests.
"""
import json
import pytest
from datetime import datetime, timezone
from pathlib import Path

from src.models import (
    ActivityStatus,
    FriendlyNameEntry,
    PermissionMappingEntry,
    RoleAssignment,
    UsageRecord,
)
from src.schemas import IdentitySummary
from src.services.datasets import FriendlyNameLookup, StaticDatasets, load_static_datasets
from src.services.inference import PermissionInferencer
from src.services.mapping_table import PermissionMappingTable
from src.services.reconciler import UsageReconciler

USER_READ_ID = "df021288-bdef-4463-88db-98f22de89214"
MAIL_READ_ID = "810c84a8-4a9e-49e6-bf7d-12d183f40d01"
GROUP_READ_ID = "5b567255-7703-4780-807c-7be8301ae99b"
USER_READ_DELEGATED_ID = "e1fe6dd8-ba31-4d61-89e7-88639da4683d"

# --- Dataset Fixtures ---

MAPPING_ROWS = [
    {"permissionName": "User.Read.All", "endpointPath": "/users", "method": "GET"},
    {"permissionName": "User.Read.All", "endpointPath": "/users/{id}", "method": "GET"},
    {"permissionName": "Directory.Read.All", "endpointPath": "/users/{id}", "method": "GET"},
    {"permissionName": "User.ReadWrite.All", "endpointPath": "/users/{id}", "method": "PATCH"},
    {"permissionName": "Mail.Read.All", "endpointPath": "/users/{id}/messages", "method": "GET"},
    {"permissionName": "Group.Read.All", "endpointPath": "/groups", "method": "GET"},
]

FRIENDLY_NAME_ROWS = [
    {"permissionName": "User.Read.All", "applicationId": USER_READ_ID},
    {"permissionName": "Mail.Read.All", "applicationId": MAIL_READ_ID},
    {"permissionName": "Group.Read.All", "applicationId": GROUP_READ_ID},
    {"permissionName": "User.Read", "delegatedId": USER_READ_DELEGATED_ID},
]


@pytest.fixture
def mapping_entries() -> list[PermissionMappingEntry]:
    """Returns the sample mapping dataset as entries."""
    return [PermissionMappingEntry.model_validate(row) for row in MAPPING_ROWS]


@pytest.fixture
def mapping_table(mapping_entries) -> PermissionMappingTable:
    """Returns a PermissionMappingTable built from the sample dataset."""
    return PermissionMappingTable(mapping_entries)


@pytest.fixture
def friendly_lookup() -> FriendlyNameLookup:
    """Returns a friendly-name lookup covering both id namespaces."""
    return FriendlyNameLookup(
        [FriendlyNameEntry.model_validate(row) for row in FRIENDLY_NAME_ROWS]
    )


@pytest.fixture
def reconciler(mapping_table) -> UsageReconciler:
    return UsageReconciler(mapping_table, PermissionInferencer())


@pytest.fixture
def static_datasets(mapping_table, friendly_lookup) -> StaticDatasets:
    return StaticDatasets(
        mapping_table=mapping_table,
        friendly_names=friendly_lookup,
        datasets_hash="test-hash",
    )


SEED_DIR = Path(__file__).resolve().parent.parent / "data" / "seed"


@pytest.fixture(scope="session")
def seed_datasets() -> StaticDatasets:
    """The datasets shipped in data/seed."""
    return load_static_datasets(
        SEED_DIR / "graph_api_permissions_endpoints.json",
        SEED_DIR / "graph_api_permissions_friendly_names.json",
    )


@pytest.fixture
def dataset_files(tmp_path: Path) -> tuple[Path, Path]:
    """Writes the sample datasets to disk and returns their paths."""
    mapping_path = tmp_path / "endpoints.json"
    mapping_path.write_text(json.dumps(MAPPING_ROWS))
    names_path = tmp_path / "friendly_names.json"
    names_path.write_text(json.dumps(FRIENDLY_NAME_ROWS))
    return mapping_path, names_path


# --- Assignment Fixtures ---

@pytest.fixture
def assignment_hr_sync() -> RoleAssignment:
    """HR Sync holds user and mail read permissions."""
    return RoleAssignment(
        principal_id="sp-1",
        principal_display_name="HR Sync",
        principal_type="ServicePrincipal",
        permissions={"User.Read.All", "Mail.Read.All"},
    )


@pytest.fixture
def assignment_dormant() -> RoleAssignment:
    """A principal that never calls the API."""
    return RoleAssignment(
        principal_id="sp-2",
        principal_display_name="Dormant App",
        principal_type="ServicePrincipal",
        permissions={"Group.Read.All", "User.Read.All", "Mail.Read.All"},
    )


# --- Usage Fixtures ---

def _usage(method: str, path: str, count: int = 1) -> UsageRecord:
    """Helper to create a UsageRecord with a fixed timestamp."""
    return UsageRecord(
        method=method,
        normalized_path=path,
        request_count=count,
        last_access=datetime(2026, 10, 1, tzinfo=timezone.utc),
        status_codes={"200"},
    )


@pytest.fixture
def usage_user_reads() -> list[UsageRecord]:
    """Usage that only requires user read access."""
    return [_usage("GET", "users", 10), _usage("GET", "users/{id}", 4)]


# --- Summary Fixtures ---

def _summary(
    principal_id: str,
    name: str,
    status: ActivityStatus,
    unused: list[str],
    unassigned_used: list[str] | None = None,
    assigned_count: int = 3,
) -> IdentitySummary:
    return IdentitySummary(
        finding_id=f"FINDING-{principal_id.upper()}",
        principal_id=principal_id,
        principal_display_name=name,
        principal_type="ServicePrincipal",
        assigned_count=assigned_count,
        used_count=assigned_count - len(unused),
        unused_count=len(unused),
        unused_permissions=unused,
        unassigned_used_permissions=unassigned_used or [],
        activity_status=status,
        no_activity_found=status != ActivityStatus.ACTIVE,
    )


@pytest.fixture
def summary_hr_sync() -> IdentitySummary:
    """An active principal with one unused permission."""
    return _summary(
        "sp-1",
        "HR Sync",
        ActivityStatus.ACTIVE,
        ["Mail.Read.All"],
        ["Directory.Read.All"],
        assigned_count=2,
    )


@pytest.fixture
def summary_dormant() -> IdentitySummary:
    """A principal that made no calls in the window."""
    return _summary(
        "sp-2",
        "Dormant App",
        ActivityStatus.NO_ACTIVITY,
        ["Group.Read.All", "Mail.Read.All", "User.Read.All"],
    )
