"""API route definitions."""
import logging
import tempfile
import shutil
import io
import csv
import asyncio
import json
from typing import Annotated, Dict
from pathlib import Path

from fastapi import APIRouter, File, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse

from src.config import settings
from src.schemas import (
    AnalysisReport,
    FindingResponse,
    IdentityDetail,
    IdentitySummary,
    IngestResponse,
)
from src.services.advisor import get_advisor_service
from src.services.analysis import AnalysisRunner, lookback_window
from src.services.datasets import DataLoadError, StaticDatasets, get_static_datasets
from src.services.ingestion import GrantValidationError, IngestionService
from src.services.log_source import get_log_source
from src.services.reconciler import UsageReconciler
from src.services.report import ReportAggregator, render_summary_csv

logger = logging.getLogger(__name__)

router = APIRouter()

_ingestion_service: IngestionService | None = None
_last_report: AnalysisReport | None = None
_advice_cache: Dict[str, FindingResponse] = {}


def _get_datasets() -> StaticDatasets:
    try:
        return get_static_datasets()
    except DataLoadError as e:
        logger.error(f"Static datasets unavailable: {e}")
        raise HTTPException(status_code=500, detail=f"Static datasets unavailable: {e}")


def get_ingestion_service() -> IngestionService:
    global _ingestion_service
    if _ingestion_service is None:
        _ingestion_service = IngestionService(_get_datasets().friendly_names)
    return _ingestion_service


def reset_state() -> None:
    global _ingestion_service, _last_report, _advice_cache
    _ingestion_service = None
    _last_report = None
    _advice_cache = {}


def _validate_csv_upload(upload: UploadFile, label: str) -> None:
    filename = upload.filename or ""
    if not filename.lower().endswith(".csv"):
        raise HTTPException(
            status_code=400,
            detail=f"{label} must be a .csv file.",
        )


def _require_report() -> AnalysisReport:
    if _last_report is None:
        raise HTTPException(
            status_code=400, detail="No analysis has been run. Call /analyze first."
        )
    return _last_report


@router.post("/ingest", response_model=IngestResponse)
async def ingest_grants(
    grants: Annotated[UploadFile, File(description="Grants CSV file")],
) -> IngestResponse:
    global _last_report, _advice_cache
    safe_filename = "".join(
        c for c in (grants.filename or "unknown") if c.isalnum() or c in (".", "_", "-")
    ).strip()
    logger.info(f"Ingesting grants from {safe_filename}")
    _validate_csv_upload(grants, "Grants upload")

    service = get_ingestion_service()
    tmp_grants_file = None

    try:
        tmp_grants_file = tempfile.NamedTemporaryFile(delete=False, suffix=".csv")
        with tmp_grants_file as f:
            shutil.copyfileobj(grants.file, f)

        response = service.process_ingestion(Path(tmp_grants_file.name))
        _last_report = None
        _advice_cache = {}
        return response

    except GrantValidationError as e:
        logger.error(f"Grant CSV validation error: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Ingestion failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Ingestion failed: {str(e)}")
    finally:
        grants.file.close()
        if tmp_grants_file and Path(tmp_grants_file.name).exists():
            Path(tmp_grants_file.name).unlink()


@router.post("/analyze", response_model=AnalysisReport)
async def analyze(
    lookback_days: Annotated[int | None, Query(ge=1, le=365)] = None,
) -> AnalysisReport:
    global _last_report, _advice_cache
    service = get_ingestion_service()
    if not service.last_ingest:
        raise HTTPException(
            status_code=400, detail="No grants ingested. Call /ingest first."
        )

    datasets = _get_datasets()
    log_source = get_log_source()
    runner = AnalysisRunner(log_source, UsageReconciler(datasets.mapping_table))
    start_time, end_time = lookback_window(lookback_days)

    try:
        results = await runner.run(service.get_assignments(), start_time, end_time)
        report = ReportAggregator().build(
            results,
            window_start=start_time,
            window_end=end_time,
            datasets_hash=datasets.datasets_hash,
            metadata={
                "log_source": log_source.get_identifier(),
                "lookback_days": lookback_days or settings.lookback_days,
                "mapping_entries": len(datasets.mapping_table),
                "unresolved_grants": len(service.unresolved_grants),
            },
        )
    except Exception as e:
        logger.error(f"Analysis failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Analysis failed: {str(e)}")

    _last_report = report
    _advice_cache = {}
    return report


@router.get("/report", response_model=AnalysisReport)
async def get_report() -> AnalysisReport:
    return _require_report()


@router.get("/report/csv")
async def get_report_csv():
    report = _require_report()
    output = io.StringIO(render_summary_csv(report))
    return StreamingResponse(
        output,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=permission_usage.csv"},
    )


async def stream_findings(summaries: list[IdentitySummary]):
    """
    Async generator that attaches remediation advice to each finding and
    streams them one by one. Advice is generated once per analysis run.
    """
    advisor = get_advisor_service()
    logger.info(f"Streaming {len(summaries)} findings...")

    for summary in summaries:
        try:
            response = _advice_cache.get(summary.principal_id)
            if response is None:
                advice = await advisor.generate_remediation(summary)
                response = FindingResponse(summary=summary, advice=advice)
                _advice_cache[summary.principal_id] = response

            yield f"data: {response.model_dump_json()}\n\n"
            await asyncio.sleep(0.01)

        except Exception as e:
            logger.error(
                f"Failed to stream finding for {summary.principal_id}: {e}",
                exc_info=True,
            )
            error_payload = {
                "error": True,
                "principal_id": summary.principal_id,
                "message": str(e),
            }
            yield f"data: {json.dumps(error_payload)}\n\n"

    logger.info("Stream complete. Sending done event.")
    yield 'event: done\ndata: {"message": "Stream complete"}\n\n'


@router.get("/findings")
async def get_findings():
    report = _require_report()
    summaries = [s for s in report.identities if s.unused_count]

    if not summaries:
        logger.info("No unused permissions found.")

        async def empty_generator():
            yield "data: {}\n\n"

        return StreamingResponse(empty_generator(), media_type="text/event-stream")

    return StreamingResponse(stream_findings(summaries), media_type="text/event-stream")


@router.get("/findings/{principal_id}", response_model=IdentityDetail)
async def get_finding_detail(principal_id: str) -> IdentityDetail:
    report = _require_report()
    detail = report.get_detail(principal_id)
    if detail is None:
        raise HTTPException(
            status_code=404,
            detail=f"Principal {principal_id} not found in the current analysis.",
        )
    return detail


@router.get("/status")
async def get_status():
    datasets = _get_datasets()
    service = get_ingestion_service()
    return {
        "datasets_hash": datasets.datasets_hash,
        "mapping_entries": len(datasets.mapping_table),
        "friendly_names": len(datasets.friendly_names),
        "log_source": settings.log_source,
        "advisor": get_advisor_service().get_status(),
        "principals_ingested": len(service.get_assignments()),
        "analysis_available": _last_report is not None,
    }


# --- Error Reporting Routes ---
@router.get("/ingest/errors/grants")
async def get_grant_errors():
    service = get_ingestion_service()
    if not service.grant_errors and not service.unresolved_grants:
        return {"message": "No grant ingestion errors found."}

    output = io.StringIO()
    headers = ["line", "error", "principal_id", "role_identifier", "grant_record_id"]
    writer = csv.DictWriter(output, fieldnames=headers, extrasaction="ignore")
    writer.writeheader()
    for err in service.grant_errors:
        row_data = {k: v for k, v in (err.get("data") or {}).items() if k}
        row_data["line"] = err.get("line")
        row_data["error"] = err.get("error")
        writer.writerow(row_data)
    for grant in service.unresolved_grants:
        writer.writerow(
            {
                "line": "",
                "error": "Unresolvable role identifier",
                "principal_id": grant.principal_id,
                "role_identifier": grant.role_identifier,
                "grant_record_id": grant.grant_record_id,
            }
        )

    output.seek(0)
    return StreamingResponse(
        output,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=grant_errors.csv"},
    )
