"""API server entry point.

Usage:
    python run_server.py
    python run_server.py --host 0.0.0.0 --port 9000
    python run_server.py --no-scheduler     # serve reads only, do not poll
"""
from __future__ import annotations

import argparse
import logging

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Training Centre API Server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--db", default=None, help="Job database path (default: TC_API_JOB_DB_PATH or config)")
    parser.add_argument("--no-scheduler", action="store_true", help="Do not start the poll scheduler")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    import uvicorn

    from training_centre.api.config import ApiSettings
    from training_centre.api.main import create_app

    overrides = {"host": args.host, "port": args.port, "log_level": args.log_level}
    if args.db:
        overrides["job_db_path"] = args.db
    if args.no_scheduler:
        overrides["start_scheduler"] = False
    settings = ApiSettings(**overrides)

    app = create_app(settings)
    logger.info("Starting Training Centre API on %s:%s", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
