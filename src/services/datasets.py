"""
Loads the static permission datasets (endpoint mapping and friendly names).
These underpin every reconciliation, so any failure here is fatal.
"""
import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from pydantic import ValidationError

from src.config import settings
from src.models import FriendlyNameEntry, PermissionMappingEntry
from src.services.mapping_table import PermissionMappingTable

logger = logging.getLogger(__name__)


class DataLoadError(Exception):
    """A static dataset is missing or cannot be parsed."""

    pass


class FriendlyNameLookup:
    """
    Read-only lookup from role identifiers to permission names.

    Application-context ids take precedence over delegated-context ids when
    the same identifier appears in both namespaces.
    """

    def __init__(self, entries: list[FriendlyNameEntry]):
        self._application: dict[str, str] = {}
        self._delegated: dict[str, str] = {}
        for entry in entries:
            if entry.application_id:
                self._application.setdefault(
                    entry.application_id.lower(), entry.permission_name
                )
            if entry.delegated_id:
                self._delegated.setdefault(
                    entry.delegated_id.lower(), entry.permission_name
                )

    def resolve(self, identifier: str | None) -> str | None:
        if not identifier:
            return None
        key = identifier.strip().lower()
        return self._application.get(key) or self._delegated.get(key)

    @property
    def merged(self) -> dict[str, str]:
        """Single identifier -> permission name view of both namespaces."""
        merged = dict(self._delegated)
        merged.update(self._application)
        return merged

    def __len__(self) -> int:
        return len(self.merged)


@dataclass(frozen=True)
class StaticDatasets:
    mapping_table: PermissionMappingTable
    friendly_names: FriendlyNameLookup
    datasets_hash: str


def _read_json_array(path: Path, label: str) -> list[Any]:
    try:
        with open(path, mode="r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise DataLoadError(f"{label} dataset not found at {path}")
    except (OSError, json.JSONDecodeError) as e:
        raise DataLoadError(f"{label} dataset at {path} is unreadable: {e}")

    if isinstance(data, dict) and isinstance(data.get("value"), list):
        data = data["value"]
    if not isinstance(data, list):
        raise DataLoadError(f"{label} dataset at {path} must be a JSON array")
    return data


def load_mapping_entries(path: Path) -> list[PermissionMappingEntry]:
    rows = _read_json_array(path, "Permission mapping")
    try:
        entries = [PermissionMappingEntry.model_validate(row) for row in rows]
    except ValidationError as e:
        raise DataLoadError(f"Permission mapping dataset at {path} is invalid: {e}")
    logger.info(f"Loaded {len(entries)} permission mapping entries from {path}")
    return entries


def load_friendly_names(path: Path) -> FriendlyNameLookup:
    rows = _read_json_array(path, "Friendly name")
    try:
        entries = [FriendlyNameEntry.model_validate(row) for row in rows]
    except ValidationError as e:
        raise DataLoadError(f"Friendly name dataset at {path} is invalid: {e}")
    logger.info(f"Loaded {len(entries)} friendly name entries from {path}")
    return FriendlyNameLookup(entries)


def _hash_files(*paths: Path) -> str:
    digest = hashlib.sha256()
    for path in paths:
        digest.update(path.read_bytes())
    return digest.hexdigest()[:16]


def load_static_datasets(
    mapping_path: Path | None = None, friendly_names_path: Path | None = None
) -> StaticDatasets:
    mapping_path = mapping_path or settings.mapping_dataset_path
    friendly_names_path = friendly_names_path or settings.friendly_names_dataset_path

    mapping_table = PermissionMappingTable(load_mapping_entries(mapping_path))
    friendly_names = load_friendly_names(friendly_names_path)
    return StaticDatasets(
        mapping_table=mapping_table,
        friendly_names=friendly_names,
        datasets_hash=_hash_files(mapping_path, friendly_names_path),
    )


_static_datasets: StaticDatasets | None = None


def get_static_datasets() -> StaticDatasets:
    global _static_datasets
    if _static_datasets is None:
        _static_datasets = load_static_datasets()
    return _static_datasets
