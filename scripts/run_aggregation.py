#!/usr/bin/env python3
"""Run one usage rollup job — invoked by cron or another external scheduler.

Usage:
    python scripts/run_aggregation.py hourly
    python scripts/run_aggregation.py daily
    python scripts/run_aggregation.py weekly monthly

Exit status is 1 when any job finished degraded (some rows not written).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from config.settings import get_settings
from quotaflow.core.logging import get_logger, setup_logging
from quotaflow.core.types import PeriodType
from quotaflow.data.db import close_engine
from quotaflow.quota.engine import build_engine

log = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Roll usage counters into the ledger")
    parser.add_argument(
        "jobs",
        nargs="+",
        choices=[p.value.lower() for p in PeriodType],
        help="Rollup job(s) to run, in order",
    )
    return parser.parse_args(argv)


async def run(jobs: list[str]) -> int:
    settings = get_settings()
    engine = await build_engine(settings)
    failed = 0
    try:
        for job in jobs:
            outcome = await engine.run_aggregation(PeriodType(job.upper()))
            if outcome.degraded:
                failed += 1
                log.error("aggregation_job_degraded", job=job, rows=outcome.value, error=outcome.error.reason)
            else:
                log.info("aggregation_job_done", job=job, rows=outcome.value)
    finally:
        await engine.close()
        await close_engine()
    return 1 if failed else 0


def main() -> None:
    args = parse_args()
    settings = get_settings()
    setup_logging(settings.log_level, json_output=settings.log_json)
    sys.exit(asyncio.run(run(args.jobs)))


if __name__ == "__main__":
    main()
