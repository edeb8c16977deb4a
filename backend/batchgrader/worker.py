"""Command-line worker that drains the submission queue."""

from __future__ import annotations

import argparse
import logging
import time

from batchgrader.db import create_db_and_tables
from batchgrader.pipeline.orchestrator import build_processor
from batchgrader.settings import settings

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Process queued presentation submissions.")
    parser.add_argument("--batch-id", default=None, help="Only process submissions from this batch.")
    parser.add_argument("--max", type=int, default=settings.worker_max_per_run, help="Submissions per run.")
    parser.add_argument("--loop", action="store_true", help="Keep polling instead of exiting after one run.")
    parser.add_argument("--interval", type=float, default=10.0, help="Seconds between polls with --loop.")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    if settings.record_store_backend.lower().strip() == "sql":
        create_db_and_tables()

    processor = build_processor()
    while True:
        report = processor.run_worker(max_submissions=args.max, batch_id=args.batch_id)
        logger.info("worker pass complete", extra={"processed": report.processed, "remaining": report.remaining})
        if not args.loop:
            return 0
        if report.processed == 0:
            time.sleep(args.interval)


if __name__ == "__main__":
    raise SystemExit(main())
