"""CLI for operators and schedulers: start crawls, reconcile, list stale jobs, dedup."""

import argparse
import json
import logging
from typing import List, Optional

from boothworker.core.config import get_settings
from boothworker.core.db import Database
from boothworker.core.errors import ConfigError, PipelineError
from boothworker.core.services import build_services

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Booth crawl orchestration jobs")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start crawls for one source or every due source")
    start.add_argument("--source-name", dest="source_name", help="Registry name of the source to crawl")
    start.add_argument("--source-url", dest="source_url", help="Override the registry URL")
    start.add_argument("--extractor-type", dest="extractor_type", help="Override the registry extractor")
    start.add_argument("--force", dest="force_crawl", action="store_true", help="Ignore the crawl cadence")
    start.add_argument("--max-pages", dest="max_pages", type=int, help="Page limit for the crawl")

    sub.add_parser("reconcile", help="Poll the provider for in-flight jobs and resume orphaned processing")
    sub.add_parser("stale", help="List jobs that have not advanced within the staleness window")

    dedup = sub.add_parser("dedup", help="Run deduplication passes over canonical booths")
    dedup.add_argument("--city", dest="city", help="Restrict to one city")
    dedup.add_argument("--radius", dest="radius_m", type=float, help="Clustering radius in metres")
    dedup.add_argument("--final", dest="final", action="store_true", help="Use the high-confidence radius")

    sub.add_parser("init-db", help="Create tables and indexes")
    return parser


def run(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    if args.command == "init-db":
        database = Database(settings)
        database.init_pool()
        try:
            database.ensure_schema()
        finally:
            database.close()
        logger.info("Schema ready")
        return 0

    services = build_services(settings)
    # One-shot commands process finished crawls inline instead of on the background executor.
    services.orchestrator.executor = None
    try:
        if args.command == "start":
            request = {
                "source_name": args.source_name,
                "source_url": args.source_url,
                "extractor_type": args.extractor_type,
                "force_crawl": args.force_crawl,
                "max_pages": args.max_pages,
            }
            print(json.dumps({"jobs": services.orchestrator.start_crawl(request)}, indent=2))
        elif args.command == "reconcile":
            print(json.dumps(services.orchestrator.reconcile(), indent=2))
        elif args.command == "stale":
            stale = services.orchestrator.stale_jobs()
            print(json.dumps([job.to_dict() for job in stale], indent=2))
        elif args.command == "dedup":
            report = services.engine.run(city=args.city, radius_m=args.radius_m, final=args.final)
            print(json.dumps(report.to_dict(), indent=2))
    finally:
        services.close()
    return 0


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    try:
        code = run()
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc
    except PipelineError as exc:
        logger.error("Crawl job failed: %s", exc)
        raise SystemExit(1) from exc
    raise SystemExit(code)


if __name__ == "__main__":
    main()
