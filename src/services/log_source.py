"""
Log sources that supply per-principal API usage.

A log source returns one UsageRecord per distinct (method, normalized path)
observed for a principal in a time window, or nothing at all.
"""
import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import httpx
from azure.identity import ClientSecretCredential, DefaultAzureCredential
from pydantic import BaseModel, Field, ValidationError, field_validator

from src.config import settings
from src.models import UsageRecord
from src.services.normalizer import normalize_path

logger = logging.getLogger(__name__)

LOG_ANALYTICS_SCOPE = "https://api.loganalytics.io/.default"

_GUID = re.compile(
    r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
)

USAGE_QUERY = """
MicrosoftGraphActivityLogs
| where TimeGenerated between (datetime({start}) .. datetime({end}))
| where ServicePrincipalId == '{principal_id}'
| summarize RequestCount = count(), LastAccess = max(TimeGenerated),
    StatusCodes = make_set(ResponseStatusCode) by RequestMethod, RequestUri
"""


class LogQueryError(Exception):
    """The log source could not answer a usage query."""

    pass


class UsageRow(BaseModel):
    """A raw usage row before path normalization."""

    principal_id: str = ""
    method: str
    request_uri: str
    request_count: int = Field(default=1, ge=1)
    last_access: datetime
    status_codes: list[str] = Field(default_factory=list)

    @field_validator("last_access", mode="before")
    @classmethod
    def parse_datetime(cls, v: str | datetime) -> datetime:
        if isinstance(v, datetime):
            dt = v
        else:
            dt = datetime.fromisoformat(str(v).replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt

    @field_validator("status_codes", mode="before")
    @classmethod
    def stringify_codes(cls, v: Any) -> list[str]:
        if v is None:
            return []
        if isinstance(v, str):
            v = json.loads(v) if v.startswith("[") else [v]
        if not isinstance(v, (list, tuple, set)):
            v = [v]
        return [str(code) for code in v]


def summarize_usage_rows(rows: Iterable[UsageRow]) -> list[UsageRecord]:
    """Normalize paths and merge rows that hit the same endpoint template."""
    merged: dict[tuple[str, str], dict[str, Any]] = {}
    for row in rows:
        method = row.method.upper()
        path = normalize_path(row.request_uri)
        key = (method, path)
        bucket = merged.get(key)
        if bucket is None:
            merged[key] = {
                "method": method,
                "normalized_path": path,
                "request_count": row.request_count,
                "last_access": row.last_access,
                "status_codes": set(row.status_codes),
            }
            continue
        bucket["request_count"] += row.request_count
        bucket["last_access"] = max(bucket["last_access"], row.last_access)
        bucket["status_codes"].update(row.status_codes)

    return [UsageRecord(**bucket) for bucket in merged.values()]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class LogSource(ABC):
    """Abstract base class for usage log sources."""

    @abstractmethod
    async def query_usage(
        self, principal_id: str, start_time: datetime, end_time: datetime
    ) -> list[UsageRecord] | None:
        """Usage records for the principal, or None when nothing was found."""
        pass

    @abstractmethod
    def get_identifier(self) -> str:
        """Return source identifier for logging."""
        pass


class MockLogSource(LogSource):
    """Reports no activity for anyone; useful for dry runs."""

    def get_identifier(self) -> str:
        return "mock-log-source"

    async def query_usage(
        self, principal_id: str, start_time: datetime, end_time: datetime
    ) -> list[UsageRecord] | None:
        logger.debug(f"Mock log source queried for {principal_id}")
        return None


class JsonFileLogSource(LogSource):
    """
    Serves usage from a JSON export of raw activity rows.

    The file is read lazily on the first query and cached afterwards.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._rows: list[UsageRow] | None = None
        self._lock = asyncio.Lock()

    def get_identifier(self) -> str:
        return f"file:{self.path}"

    def _load(self) -> list[UsageRow]:
        try:
            with open(self.path, mode="r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            raise LogQueryError(f"Usage log file not found at {self.path}")
        except (OSError, json.JSONDecodeError) as e:
            raise LogQueryError(f"Usage log file {self.path} is unreadable: {e}")

        if not isinstance(data, list):
            raise LogQueryError(f"Usage log file {self.path} must be a JSON array")

        rows: list[UsageRow] = []
        skipped = 0
        for raw in data:
            try:
                rows.append(UsageRow.model_validate(raw))
            except ValidationError as e:
                skipped += 1
                logger.debug(f"Skipping malformed usage row {raw}: {e}")
        if skipped:
            logger.warning(f"Skipped {skipped} malformed usage rows in {self.path}")
        logger.info(f"Loaded {len(rows)} usage rows from {self.path}")
        return rows

    async def query_usage(
        self, principal_id: str, start_time: datetime, end_time: datetime
    ) -> list[UsageRecord] | None:
        async with self._lock:
            if self._rows is None:
                self._rows = self._load()

        start, end = _as_utc(start_time), _as_utc(end_time)
        matching = [
            row
            for row in self._rows
            if row.principal_id == principal_id and start <= row.last_access <= end
        ]
        if not matching:
            return None
        return summarize_usage_rows(matching)


class LogAnalyticsLogSource(LogSource):
    """
    Queries the MicrosoftGraphActivityLogs table of a Log Analytics workspace.
    """

    def __init__(
        self,
        workspace_id: str,
        credential: Any,
        endpoint: str = "https://api.loganalytics.io",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.workspace_id = workspace_id
        self.credential = credential
        self.url = f"{endpoint.rstrip('/')}/v1/workspaces/{workspace_id}/query"
        self.timeout = timeout
        self.transport = transport

    def get_identifier(self) -> str:
        return f"log_analytics:{self.workspace_id}"

    @staticmethod
    def build_query(principal_id: str, start_time: datetime, end_time: datetime) -> str:
        # Service principal ids are GUIDs; anything else never reaches KQL
        if not _GUID.fullmatch(principal_id or ""):
            raise LogQueryError(f"Principal id {principal_id!r} is not a GUID")
        return USAGE_QUERY.format(
            start=_as_utc(start_time).isoformat(),
            end=_as_utc(end_time).isoformat(),
            principal_id=principal_id,
        ).strip()

    async def _get_token(self) -> str:
        token = await asyncio.to_thread(self.credential.get_token, LOG_ANALYTICS_SCOPE)
        return token.token

    @staticmethod
    def parse_response(payload: dict[str, Any]) -> list[UsageRow]:
        tables = payload.get("tables") or []
        if not tables:
            return []
        table = tables[0]
        columns = [c["name"] for c in table.get("columns", [])]
        rows: list[UsageRow] = []
        for values in table.get("rows", []):
            record = dict(zip(columns, values))
            rows.append(
                UsageRow(
                    method=record["RequestMethod"],
                    request_uri=record["RequestUri"],
                    request_count=record["RequestCount"],
                    last_access=record["LastAccess"],
                    status_codes=record.get("StatusCodes"),
                )
            )
        return rows

    async def query_usage(
        self, principal_id: str, start_time: datetime, end_time: datetime
    ) -> list[UsageRecord] | None:
        query = self.build_query(principal_id, start_time, end_time)
        try:
            token = await self._get_token()
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout), transport=self.transport
            ) as client:
                response = await client.post(
                    self.url,
                    json={"query": query},
                    headers={"Authorization": f"Bearer {token}"},
                )
                response.raise_for_status()
                rows = self.parse_response(response.json())
        except httpx.HTTPError as e:
            raise LogQueryError(f"Log Analytics query failed for {principal_id}: {e}")
        except (KeyError, ValueError, ValidationError) as e:
            raise LogQueryError(
                f"Unexpected Log Analytics response for {principal_id}: {e}"
            )

        if not rows:
            return None
        return summarize_usage_rows(rows)


def _build_azure_credential():
    if settings.has_azure_client_secret:
        logger.info("Using explicit Azure client secret credential")
        return ClientSecretCredential(
            tenant_id=settings.azure_tenant_id,
            client_id=settings.azure_client_id,
            client_secret=settings.azure_client_secret,
        )
    logger.info("Using default Azure credential chain")
    return DefaultAzureCredential()


def get_log_source() -> LogSource:
    """Build the configured log source, falling back to the mock source."""
    if settings.log_source == "file":
        logger.info(f"Using usage log file {settings.usage_log_path}")
        return JsonFileLogSource(settings.usage_log_path)

    if settings.log_source == "log_analytics":
        if not settings.log_analytics_workspace_id:
            logger.error(
                "log_source is 'log_analytics' but no workspace id is configured, "
                "falling back to mock."
            )
            return MockLogSource()
        try:
            return LogAnalyticsLogSource(
                workspace_id=settings.log_analytics_workspace_id,
                credential=_build_azure_credential(),
                endpoint=settings.log_analytics_endpoint,
                timeout=settings.log_query_timeout_seconds,
            )
        except Exception as exc:
            logger.error("Log Analytics initialization failed, falling back to mock: %s", exc)
            return MockLogSource()

    logger.info("Using mock log source")
    return MockLogSource()
