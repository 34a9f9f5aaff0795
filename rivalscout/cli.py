"""Command-line entry point: ``rivalscout init-db | run <project_id> | serve``."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from rivalscout.config import ConfigError
from rivalscout.db import init_db, session_scope
from rivalscout.models import Project
from rivalscout.orchestrator import build_pipeline_deps, orchestrate_run
from rivalscout.services import create_run, run_logs

log = logging.getLogger(__name__)


def _cmd_init_db(args: argparse.Namespace) -> int:
    engine = init_db(args.db_url)
    print(f"Database ready: {engine.url.render_as_string(hide_password=True)}")
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    init_db(args.db_url)
    with session_scope() as session:
        if session.get(Project, args.project_id) is None:
            print(f"Project not found: {args.project_id}", file=sys.stderr)
            return 1
        run_id = create_run(session, args.project_id).id
    try:
        deps = build_pipeline_deps()
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    print(f"Run {run_id} started for project {args.project_id}")
    try:
        status = asyncio.run(orchestrate_run(run_id, deps))
    except Exception as exc:
        print(f"Run {run_id} failed: {exc}", file=sys.stderr)
        return 1
    finally:
        if args.show_logs:
            with session_scope() as session:
                for line in run_logs(session, run_id):
                    print(line)
    print(f"Run {run_id} finished: {status}")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn
    uvicorn.run("rivalscout.app:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="rivalscout", description="Competitive intelligence pipeline")
    parser.add_argument("--db-url", default=None, help="SQLAlchemy database URL (default: RIVALSCOUT_DB_URL)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create the database schema")
    p.set_defaults(func=_cmd_init_db)

    p = sub.add_parser("run", help="Run the analysis pipeline for a project")
    p.add_argument("project_id", type=int)
    p.add_argument("--show-logs", action="store_true", help="Print the run log when done")
    p.set_defaults(func=_cmd_run)

    p = sub.add_parser("serve", help="Start the HTTP API")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8001)
    p.add_argument("--reload", action="store_true")
    p.set_defaults(func=_cmd_serve)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
