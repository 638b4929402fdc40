#!/usr/bin/env python3
"""
Start the event lifecycle API server under uvicorn.

The app's lifespan re-arms persisted timers and starts the periodic jobs,
so a single server process is also the lifecycle worker. Set
LIFECYCLE_BACKGROUND_JOBS_ENABLED=false on extra API replicas so only one
process runs the scheduler and sweeps.

Usage:
    python3 web_server.py
    python3 web_server.py --host 0.0.0.0 --port 8080
    python3 web_server.py --reload

Settings are read from the environment and backend/.env (see
backend/src/config/settings.py).
"""

import argparse
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parent
APP_PATH = "backend.src.main:app"


def load_env_file() -> None:
    """Load backend/.env without overriding variables already exported."""
    load_dotenv(dotenv_path=REPO_ROOT / "backend" / ".env", override=False)


def warn_no_signer() -> None:
    if not os.environ.get("ESCROW_SERVICE_URL"):
        print(
            "WARNING: ESCROW_SERVICE_URL is not set; escrow releases and forfeits "
            "will only be logged (no-signer mode).",
            file=sys.stderr,
        )


def parse_arguments(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Start the event lifecycle API server",
    )
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Interface to bind (default: 127.0.0.1, use 0.0.0.0 for all)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind (default: 8000)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Restart on code changes (development only; each restart re-arms timers)",
    )
    return parser.parse_args(argv)


def main(argv=None) -> None:
    args = parse_arguments(argv)

    # "backend.src.main" must be importable when started from another directory
    if str(REPO_ROOT) not in sys.path:
        sys.path.insert(0, str(REPO_ROOT))

    load_env_file()
    warn_no_signer()

    import uvicorn

    print(f"Event lifecycle server on http://{args.host}:{args.port} "
          f"(docs at /docs, health at /health, reload {'on' if args.reload else 'off'})")
    try:
        uvicorn.run(APP_PATH, host=args.host, port=args.port, reload=args.reload, log_level="info")
    except KeyboardInterrupt:
        print("\nServer stopped")


if __name__ == "__main__":
    main()
