"""Command-line entry point for scheduled reconciliation runs.

    python -m app.jobs.reconcile verify
    python -m app.jobs.reconcile sync --timeout 120
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading

from sqlalchemy.exc import SQLAlchemyError

from app.core.context import privileged_context
from app.core.db import SessionLocal
from app.services.reconciliation import sync_enrollments, verify_enrollments

logger = logging.getLogger("app.jobs.reconcile")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reconcile",
        description="Audit or repair enrollments for paid orders",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("verify", help="Report paid orders without an enrollment (read-only)")

    sync_parser = subparsers.add_parser("sync", help="Create missing enrollments")
    sync_parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Stop between orders after this many seconds",
    )
    return parser


def cmd_verify(args: argparse.Namespace, session_factory) -> int:
    db = session_factory()
    try:
        report = verify_enrollments(privileged_context(db, actor="reconcile-job"))
        print(json.dumps(report.model_dump(), indent=2, default=str))
        return 0
    except SQLAlchemyError as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()


def cmd_sync(args: argparse.Namespace, session_factory) -> int:
    cancel = threading.Event()
    previous = None
    if threading.current_thread() is threading.main_thread():
        # Ctrl-C finishes the current order, then stops
        previous = signal.signal(signal.SIGINT, lambda *_: cancel.set())

    db = session_factory()
    try:
        report = sync_enrollments(
            privileged_context(db, actor="reconcile-job"),
            cancel=cancel,
            timeout_s=args.timeout,
        )
        print(json.dumps(report.model_dump(), indent=2))
        return 1 if report.failed else 0
    except SQLAlchemyError as e:
        print(f"Error: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()
        if previous is not None:
            signal.signal(signal.SIGINT, previous)


def main(argv: list[str] | None = None, session_factory=SessionLocal) -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")

    commands = {
        "verify": cmd_verify,
        "sync": cmd_sync,
    }
    return commands[args.command](args, session_factory)


if __name__ == "__main__":
    sys.exit(main())
