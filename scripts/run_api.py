#!/usr/bin/env python3
"""Run the CoinCraze wallet API server.

Usage:
    python scripts/run_api.py [--host HOST] [--port PORT]

Environment:
    COINCRAZE_STORE_URL - Optional. memory:// (default), file://<path> or a SQLAlchemy URL.
    COINCRAZE_LOG_LEVEL - Optional. Defaults to INFO.

Examples:
    python scripts/run_api.py
    COINCRAZE_STORE_URL=sqlite:///wallet.db python scripts/run_api.py --port 8000
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure imports work when invoked as a script
_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

import uvicorn  # noqa: E402

from coincraze.config import AppConfig  # noqa: E402


def main() -> int:
    """Run the API server."""
    parser = argparse.ArgumentParser(description="Run the CoinCraze wallet API server.")
    parser.add_argument(
        "--host",
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    args = parser.parse_args()

    # Fail fast on bad configuration instead of inside the lifespan
    try:
        config = AppConfig.from_env()
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Starting CoinCraze API on {args.host}:{args.port} (store: {config.store_url.split(':', 1)[0]})")
    print("Endpoints:")
    print(f"  - GET  http://{args.host}:{args.port}/health")
    print(f"  - GET  http://{args.host}:{args.port}/price")
    print(f"  - GET  http://{args.host}:{args.port}/wallet")
    print(f"  - POST http://{args.host}:{args.port}/wallet/buy")
    print()

    uvicorn.run(
        "api.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=config.log_level.lower(),
    )

    return 0


if __name__ == "__main__":
    sys.exit(main())
