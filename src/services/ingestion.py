"""
Ingestion of raw grant records and aggregation into per-principal
role assignments.
"""
import logging
import csv
from pathlib import Path
from typing import Any, Iterable, List
from pydantic import ValidationError

from src.models import RawGrant, RoleAssignment
from src.schemas import IngestResponse
from src.services.datasets import FriendlyNameLookup

logger = logging.getLogger(__name__)


class IngestionError(Exception):
    """Base exception for ingestion errors."""

    pass


class GrantValidationError(IngestionError):
    """Grant CSV validation failed."""

    pass


REQUIRED_GRANT_COLUMNS = {
    "principal_id",
    "principal_display_name",
    "principal_type",
    "role_identifier",
    "grant_record_id",
}


def aggregate_role_assignments(
    raw_grants: Iterable[RawGrant],
    lookup: FriendlyNameLookup,
    unresolved: List[RawGrant] | None = None,
) -> List[RoleAssignment]:
    """
    Group grants by principal, resolving role ids to permission names.

    Groups keep the first-seen order of principals. Grants whose identifier
    cannot be resolved are left out of the permission set (and appended to
    `unresolved` when given); the principal itself is still reported.
    """
    assignments: dict[str, RoleAssignment] = {}

    for grant in raw_grants:
        assignment = assignments.get(grant.principal_id)
        if assignment is None:
            assignment = RoleAssignment(
                principal_id=grant.principal_id,
                principal_display_name=grant.principal_display_name,
                principal_type=grant.principal_type,
            )
            assignments[grant.principal_id] = assignment

        permission = lookup.resolve(grant.role_identifier)
        if permission is None:
            logger.warning(
                f"Unresolvable grant {grant.grant_record_id or '<no id>'}: role "
                f"{grant.role_identifier} of principal {grant.principal_id} has no "
                "friendly name"
            )
            if unresolved is not None:
                unresolved.append(grant)
            continue

        assignment.permissions.add(permission)

    return list(assignments.values())


class IngestionService:
    """
    Manages the ingestion of grant CSVs into role assignments.
    """

    def __init__(self, lookup: FriendlyNameLookup):
        self.lookup = lookup
        self.assignments: List[RoleAssignment] = []
        self.last_ingest: IngestResponse | None = None
        self.grant_errors: List[dict[str, Any]] = []
        self.unresolved_grants: List[RawGrant] = []

    def _read_grants(self, file: Path) -> tuple[List[RawGrant], dict]:
        stats = {
            "total_grant_rows": 0,
            "valid_grant_rows": 0,
            "corrupt_grant_rows": 0,
        }
        grants: List[RawGrant] = []

        try:
            with open(file, mode="r", encoding="utf-8-sig") as f:
                reader = csv.DictReader(f)

                missing_cols = REQUIRED_GRANT_COLUMNS - set(reader.fieldnames or [])
                if missing_cols:
                    raise GrantValidationError(
                        f"Missing required columns: {sorted(missing_cols)}"
                    )

                for line_number, row in enumerate(reader, start=2):
                    stats["total_grant_rows"] += 1
                    try:
                        if None in row:
                            raise ValueError("Row has more fields than the header.")
                        grants.append(RawGrant(**row))
                        stats["valid_grant_rows"] += 1
                    except (ValidationError, ValueError, TypeError) as e:
                        stats["corrupt_grant_rows"] += 1
                        self.grant_errors.append(
                            {"line": line_number, "error": str(e), "data": row}
                        )

            return grants, stats

        except FileNotFoundError:
            raise GrantValidationError("Grant file not found.")
        except UnicodeDecodeError as e:
            raise GrantValidationError(f"Grant file is not valid UTF-8: {e}")

    def process_ingestion(self, grants_file: Path) -> IngestResponse:
        self.reset()

        grants, stats = self._read_grants(grants_file)
        self.assignments = aggregate_role_assignments(
            grants, self.lookup, unresolved=self.unresolved_grants
        )

        all_permissions = set()
        total_permissions = 0
        for assignment in self.assignments:
            total_permissions += len(assignment.permissions)
            all_permissions.update(assignment.permissions)

        response = IngestResponse(
            total_grant_rows=stats["total_grant_rows"],
            valid_grant_rows=stats["valid_grant_rows"],
            corrupt_grant_rows=stats["corrupt_grant_rows"],
            unresolved_grants=len(self.unresolved_grants),
            principals_processed=len(self.assignments),
            principals_without_permissions=sum(
                1 for a in self.assignments if not a.permissions
            ),
            total_permissions=total_permissions,
            unique_permissions=len(all_permissions),
        )

        if response.corrupt_grant_rows or response.unresolved_grants:
            logger.warning(
                f"Ignored {response.corrupt_grant_rows} corrupt rows and "
                f"{response.unresolved_grants} unresolvable grants."
            )
        self.last_ingest = response
        logger.info(f"Ingestion complete: {response.model_dump(exclude_none=True)}")
        return response

    def get_assignments(self) -> List[RoleAssignment]:
        return self.assignments

    def get_assignment(self, principal_id: str) -> RoleAssignment | None:
        return next(
            (a for a in self.assignments if a.principal_id == principal_id), None
        )

    def reset(self) -> None:
        self.assignments = []
        self.last_ingest = None
        self.grant_errors = []
        self.unresolved_grants = []
