"""API server entry point.

Usage:
    # Defaults (0.0.0.0:8000, queue DB in the working directory):
    python run_server.py

    # Custom host/port and queue database:
    python run_server.py --host 127.0.0.1 --port 9000 --queue-db /var/lib/catalog/queue.db

Requires the package to be installed (``pip install -e .``).
"""
from __future__ import annotations

import argparse
import logging

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Catalog Jobs API Server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--queue-db", default=None, help="SQLite file backing the durable lanes")
    parser.add_argument("--no-workers", action="store_true", help="Serve status only; do not start lane workers")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()

    import uvicorn

    from catalog_jobs.api.config import ApiSettings
    from catalog_jobs.api.main import create_app

    overrides = {
        "host": args.host,
        "port": args.port,
        "log_level": args.log_level.upper(),
        "start_queue_workers": not args.no_workers,
    }
    if args.queue_db:
        overrides["queue_db_path"] = args.queue_db
    settings = ApiSettings(**overrides)
    app = create_app(settings)

    logger.info("Starting Catalog Jobs API on %s:%s", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
