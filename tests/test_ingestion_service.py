"""
Unit tests for grant ingestion and role assignment aggregation.

We use the `tmp_path` fixture provided by pytest to create temporary CSV files
for the service to ingest, ensuring our tests don't rely on the physical
`data/` directory.
"""
import pytest
from pathlib import Path
from src.models import RawGrant
from src.services.ingestion import (
    GrantValidationError,
    IngestionService,
    aggregate_role_assignments,
)
from tests.conftest import GROUP_READ_ID, MAIL_READ_ID, USER_READ_DELEGATED_ID, USER_READ_ID

HEADER = "principal_id,principal_display_name,principal_type,role_identifier,grant_record_id"

GRANTS_CONTENT = f"""{HEADER}
sp-2,Mail Archiver,ServicePrincipal,{MAIL_READ_ID},g1
sp-1,HR Sync,ServicePrincipal,{USER_READ_ID},g2
sp-2,Mail Archiver,ServicePrincipal,{MAIL_READ_ID},g3
sp-1,HR Sync,ServicePrincipal,{GROUP_READ_ID},g4
sp-1,HR Sync,ServicePrincipal,not-a-known-role,g5
sp-3,Portal,ServicePrincipal,{USER_READ_DELEGATED_ID},g6"""

GRANTS_ERROR_CONTENT = f"""{HEADER}
sp-1,HR Sync,ServicePrincipal,{USER_READ_ID},g1
sp-2,Broken
,No Id,ServicePrincipal,{USER_READ_ID},g3
sp-4,Too Many,ServicePrincipal,{USER_READ_ID},g4,extra"""


def _grant(principal_id: str, role: str, record: str = "") -> RawGrant:
    return RawGrant(
        principal_id=principal_id,
        principal_display_name=f"App {principal_id}",
        principal_type="ServicePrincipal",
        role_identifier=role,
        grant_record_id=record,
    )


@pytest.fixture
def service(friendly_lookup) -> IngestionService:
    """Returns a fresh IngestionService instance for each test."""
    return IngestionService(friendly_lookup)


@pytest.fixture
def grants_file(tmp_path: Path) -> Path:
    file_path = tmp_path / "grants.csv"
    file_path.write_text(GRANTS_CONTENT)
    return file_path


def test_aggregate_groups_by_principal_in_first_seen_order(friendly_lookup):
    grants = [
        _grant("b", USER_READ_ID),
        _grant("a", MAIL_READ_ID),
        _grant("b", GROUP_READ_ID),
    ]
    assignments = aggregate_role_assignments(grants, friendly_lookup)

    assert [a.principal_id for a in assignments] == ["b", "a"]
    assert assignments[0].permissions == {"User.Read.All", "Group.Read.All"}
    assert assignments[1].permissions == {"Mail.Read.All"}


def test_aggregate_collapses_duplicate_permissions(friendly_lookup):
    grants = [_grant("a", USER_READ_ID, "g1"), _grant("a", USER_READ_ID, "g2")]
    assignments = aggregate_role_assignments(grants, friendly_lookup)
    assert assignments[0].permissions == {"User.Read.All"}


def test_aggregate_drops_unresolvable_grants(friendly_lookup, caplog):
    unresolved: list[RawGrant] = []
    grants = [_grant("a", "mystery", "g9"), _grant("a", USER_READ_ID)]

    assignments = aggregate_role_assignments(grants, friendly_lookup, unresolved)

    assert assignments[0].permissions == {"User.Read.All"}
    assert [g.grant_record_id for g in unresolved] == ["g9"]
    assert "Unresolvable grant g9" in caplog.text


def test_aggregate_keeps_principal_with_only_unresolvable_grants(friendly_lookup):
    assignments = aggregate_role_assignments([_grant("a", "mystery")], friendly_lookup)
    assert len(assignments) == 1
    assert assignments[0].permissions == set()


def test_aggregate_resolves_delegated_identifiers(friendly_lookup):
    assignments = aggregate_role_assignments(
        [_grant("a", USER_READ_DELEGATED_ID)], friendly_lookup
    )
    assert assignments[0].permissions == {"User.Read"}


def test_process_ingestion_happy_path(service: IngestionService, grants_file: Path):
    response = service.process_ingestion(grants_file)

    assert service.last_ingest is response
    assert response.timestamp.tzinfo is not None
    assert response.total_grant_rows == 6
    assert response.valid_grant_rows == 6
    assert response.corrupt_grant_rows == 0
    assert response.unresolved_grants == 1
    assert response.principals_processed == 3
    assert response.principals_without_permissions == 0
    assert response.total_permissions == 4
    assert response.unique_permissions == 4

    assignments = service.get_assignments()
    assert [a.principal_id for a in assignments] == ["sp-2", "sp-1", "sp-3"]
    hr_sync = service.get_assignment("sp-1")
    assert hr_sync.principal_display_name == "HR Sync"
    assert hr_sync.permissions == {"User.Read.All", "Group.Read.All"}
    assert service.get_assignment("ghost") is None


def test_process_ingestion_with_corrupt_rows(service: IngestionService, tmp_path: Path):
    file_path = tmp_path / "grants_errors.csv"
    file_path.write_text(GRANTS_ERROR_CONTENT)

    response = service.process_ingestion(file_path)

    assert response.total_grant_rows == 4
    assert response.valid_grant_rows == 1
    assert response.corrupt_grant_rows == 3
    assert [e["line"] for e in service.grant_errors] == [3, 4, 5]
    assert response.principals_processed == 1


def test_missing_column_fails_hard(service: IngestionService, tmp_path: Path):
    file_path = tmp_path / "missing_col.csv"
    file_path.write_text("principal_id,role_identifier\nsp-1,abc")

    with pytest.raises(GrantValidationError, match="Missing required columns"):
        service.process_ingestion(file_path)


def test_missing_file_fails_hard(service: IngestionService, tmp_path: Path):
    with pytest.raises(GrantValidationError, match="not found"):
        service.process_ingestion(tmp_path / "absent.csv")


def test_reingestion_resets_state(service: IngestionService, grants_file: Path, tmp_path: Path):
    service.process_ingestion(grants_file)
    assert service.unresolved_grants

    clean = tmp_path / "clean.csv"
    clean.write_text(f"{HEADER}\nsp-9,Other,ServicePrincipal,{USER_READ_ID},g1")
    service.process_ingestion(clean)

    assert [a.principal_id for a in service.get_assignments()] == ["sp-9"]
    assert service.unresolved_grants == []
    assert service.grant_errors == []
