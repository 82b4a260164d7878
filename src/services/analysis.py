"""
Runs the per-principal reconciliation across all assignments.
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone

from src.config import settings
from src.models import (
    ActivityStatus,
    ReconciliationResult,
    RoleAssignment,
    UsageRecord,
)
from src.services.log_source import LogSource
from src.services.reconciler import UsageReconciler

logger = logging.getLogger(__name__)


def lookback_window(
    days: int | None = None, now: datetime | None = None
) -> tuple[datetime, datetime]:
    if days is None:
        days = settings.lookback_days
    if days < 1:
        raise ValueError(f"Lookback must be at least one day, got {days}")
    end = now or datetime.now(timezone.utc)
    return end - timedelta(days=days), end


class AnalysisRunner:
    """
    Queries usage for every principal through a bounded worker pool and
    reconciles it against the principal's assignment.

    A failing or slow log query only affects its own principal, which is
    then reported as `query_failed`.
    """

    def __init__(
        self,
        log_source: LogSource,
        reconciler: UsageReconciler,
        max_concurrency: int | None = None,
        query_timeout: float | None = None,
    ):
        self.log_source = log_source
        self.reconciler = reconciler
        self.max_concurrency = max(1, max_concurrency or settings.max_concurrent_queries)
        self.query_timeout = query_timeout or settings.log_query_timeout_seconds

    async def _query(
        self,
        semaphore: asyncio.Semaphore,
        principal_id: str,
        start_time: datetime,
        end_time: datetime,
    ) -> tuple[list[UsageRecord] | None, bool]:
        async with semaphore:
            started = time.perf_counter()
            try:
                records = await asyncio.wait_for(
                    self.log_source.query_usage(principal_id, start_time, end_time),
                    timeout=self.query_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Log query for {principal_id} timed out after {self.query_timeout}s"
                )
                return None, True
            except Exception as e:
                logger.warning(f"Log query for {principal_id} failed: {e}")
                return None, True

            logger.debug(
                "Log query finished",
                extra={
                    "principal_id": principal_id,
                    "log_source": self.log_source.get_identifier(),
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "records": len(records or []),
                },
            )
            return records, False

    async def _analyze_one(
        self,
        semaphore: asyncio.Semaphore,
        assignment: RoleAssignment,
        start_time: datetime,
        end_time: datetime,
    ) -> ReconciliationResult:
        records, failed = await self._query(
            semaphore, assignment.principal_id, start_time, end_time
        )
        return self.reconciler.reconcile(assignment, records, query_failed=failed)

    async def run(
        self,
        assignments: list[RoleAssignment],
        start_time: datetime,
        end_time: datetime,
    ) -> list[ReconciliationResult]:
        logger.info(
            f"Running analysis: {len(assignments)} principals, "
            f"window {start_time.isoformat()} .. {end_time.isoformat()}, "
            f"concurrency {self.max_concurrency}"
        )
        semaphore = asyncio.Semaphore(self.max_concurrency)
        results = await asyncio.gather(
            *(
                self._analyze_one(semaphore, assignment, start_time, end_time)
                for assignment in assignments
            )
        )
        failed = sum(
            1 for r in results if r.activity_status == ActivityStatus.QUERY_FAILED
        )
        logger.info(
            f"Analysis complete: {len(results)} principals reconciled, "
            f"{failed} log queries failed"
        )
        return list(results)
