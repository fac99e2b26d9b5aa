"""
Script to run one pipeline (or every configured pipeline) once

Usage:
    python -m scripts.run_pipeline orders_to_sales
    python -m scripts.run_pipeline --all --max-batch-size 1000
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from core.config import settings
from core.database import create_engine, create_session_maker
from core.exceptions import ETLException
from core.logging import setup_logging
from pipeline.coordinator import PipelineCoordinator
from schemas.pipeline import PipelineCatalog

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run star-schema ETL pipelines")
    parser.add_argument("pipeline_id", nargs="?", help="Pipeline to run")
    parser.add_argument("--all", action="store_true", help="Run every configured pipeline")
    parser.add_argument("--catalog", default=settings.PIPELINES_FILE, help="Pipeline catalog (YAML)")
    parser.add_argument("--database-url", default=None, help="Warehouse database URL")
    parser.add_argument("--max-batch-size", type=int, default=None)
    parser.add_argument("--retry-limit", type=int, default=None)
    parser.add_argument("--backoff-base", type=float, default=None)

    args = parser.parse_args(argv)
    if not args.all and not args.pipeline_id:
        parser.error("either a pipeline_id or --all is required")
    return args


async def run_pipelines(args: argparse.Namespace) -> int:
    """Run the requested pipelines sequentially, print one JSON line per run"""
    catalog = PipelineCatalog.from_yaml(args.catalog)
    engine = create_engine(args.database_url)
    coordinator = PipelineCoordinator(create_session_maker(engine), catalog)

    overrides = {
        "max_batch_size": args.max_batch_size,
        "retry_limit": args.retry_limit,
        "backoff_base": args.backoff_base,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    pipeline_ids = catalog.pipeline_ids if args.all else [args.pipeline_id]

    exit_code = 0
    try:
        for pipeline_id in pipeline_ids:
            try:
                result = await coordinator.run_pipeline(pipeline_id, **overrides)
                print(result.model_dump_json())
            except ETLException as e:
                logger.error(f"Pipeline {pipeline_id} failed: {e.message}")
                print(json.dumps(e.to_dict()))
                exit_code = 1
    finally:
        await engine.dispose()

    return exit_code


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging()
    return asyncio.run(run_pipelines(args))


if __name__ == "__main__":
    sys.exit(main())
