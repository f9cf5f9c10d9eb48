"""Command line entry point: ``workshop-enrollment <command>``."""
import argparse
import asyncio
import sys
from typing import List, Optional

import structlog

from workshop_enrollment.config import get_settings
from workshop_enrollment.database import close_db, init_db
from workshop_enrollment.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "workshop_enrollment.api.main:app",
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
    return 0


async def _init_db() -> None:
    try:
        await init_db()
        logger.info("database_initialized")
    finally:
        await close_db()


def _run_init_db(args: argparse.Namespace) -> int:
    setup_logging()
    asyncio.run(_init_db())
    return 0


def _run_sweeper(args: argparse.Namespace) -> int:
    from workshop_enrollment.workers.waitlist_sweeper import start_waitlist_sweeper

    asyncio.run(start_waitlist_sweeper(once=args.once))
    return 0


def _run_outbox(args: argparse.Namespace) -> int:
    from workshop_enrollment.workers.outbox_publisher import start_outbox_publisher

    asyncio.run(start_outbox_publisher())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workshop-enrollment",
        description="Workshop enrollment admission service",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=None, help="Bind address (default: API_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: API_PORT)")
    serve.set_defaults(func=_serve)

    init = subparsers.add_parser("init-db", help="Create database tables")
    init.set_defaults(func=_run_init_db)

    sweep = subparsers.add_parser("sweep-waitlist", help="Expire overdue claim offers")
    sweep.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    sweep.set_defaults(func=_run_sweeper)

    outbox = subparsers.add_parser("publish-outbox", help="Deliver queued notifications")
    outbox.set_defaults(func=_run_outbox)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
