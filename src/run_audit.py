"""
Batch runner: audit every principal of a grants CSV and write the report
to disk (summary.csv plus one JSON detail file per principal).

    python -m src.run_audit --grants data/grants.csv --output-dir reports
"""
import argparse
import asyncio
import logging
import re
import sys
from pathlib import Path

from src.config import settings
from src.logging_config import setup_logging
from src.services.analysis import AnalysisRunner, lookback_window
from src.services.datasets import DataLoadError, load_static_datasets
from src.services.ingestion import GrantValidationError, IngestionService
from src.services.log_source import get_log_source
from src.services.reconciler import UsageReconciler
from src.services.report import ReportAggregator, render_summary_csv

logger = logging.getLogger(__name__)


def _safe_filename(name: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return cleaned or "principal"


def _positive_int(value: str) -> int:
    days = int(value)
    if days < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {days}")
    return days


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--grants", type=Path, required=True, help="Grants CSV file")
    parser.add_argument("--output-dir", type=Path, default=Path("reports"))
    parser.add_argument(
        "--lookback-days", type=_positive_int, default=settings.lookback_days
    )
    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        datasets = load_static_datasets()
    except DataLoadError as e:
        logger.error(f"Cannot run analysis: {e}")
        return 1

    ingestion = IngestionService(datasets.friendly_names)
    try:
        ingestion.process_ingestion(args.grants)
    except GrantValidationError as e:
        logger.error(f"Cannot read grants: {e}")
        return 1

    log_source = get_log_source()
    runner = AnalysisRunner(log_source, UsageReconciler(datasets.mapping_table))
    start_time, end_time = lookback_window(args.lookback_days)
    results = await runner.run(ingestion.get_assignments(), start_time, end_time)

    report = ReportAggregator().build(
        results,
        window_start=start_time,
        window_end=end_time,
        datasets_hash=datasets.datasets_hash,
        metadata={"log_source": log_source.get_identifier()},
    )

    details_dir = args.output_dir / "details"
    details_dir.mkdir(parents=True, exist_ok=True)
    (args.output_dir / "summary.csv").write_text(
        render_summary_csv(report), encoding="utf-8"
    )
    for detail in report.details:
        summary = detail.summary
        filename = _safe_filename(
            f"{summary.principal_display_name}_{summary.principal_id}"
        )
        (details_dir / f"{filename}.json").write_text(
            detail.model_dump_json(indent=2), encoding="utf-8"
        )

    logger.info(
        f"Wrote report for {report.total_principals} principals to {args.output_dir}"
    )
    return 0


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(main()))
