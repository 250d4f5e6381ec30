"""Script to launch the Nova chat relay server."""

from __future__ import annotations

import argparse
import logging
import os
import sys

import uvicorn

# Ensure src/ is on sys.path (so imports work when run directly)
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC_DIR = os.path.join(ROOT_DIR, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from nova_chat.config import load_config  # noqa: E402
from nova_chat.server import create_app  # noqa: E402


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Nova chat relay server.")
    parser.add_argument(
        "--host",
        type=str,
        default=os.environ.get("HOST", "127.0.0.1"),
        help="Host to bind the server to (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind the server to (default: 8000)",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to a YAML config file (default: $NOVA_CHAT_CONFIG or config/default.yaml)",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development (default: off)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=int(os.environ.get("WORKERS", "1")),
        help="Number of worker processes (default: 1)",
    )
    args = parser.parse_args()

    cfg = load_config(args.config)
    level = str(cfg.get("logging", {}).get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.config:
        os.environ["NOVA_CHAT_CONFIG"] = args.config

    # reload and multiple workers need an import string, not an app object
    if args.reload or args.workers > 1:
        target = "nova_chat.server:create_app"
    else:
        target = create_app(args.config)

    uvicorn.run(
        target,
        factory=isinstance(target, str),
        app_dir=SRC_DIR,
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=args.workers,
        log_level=level.lower(),
    )


if __name__ == "__main__":
    main()
