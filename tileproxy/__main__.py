#!/usr/bin/env python3
"""
Entry point for running the tile proxy as a module.

Usage:
    python -m tileproxy [config_file] -p [port] -b [bind address]

    Or run directly with uvicorn:
    uvicorn tileproxy.main:get_app --factory --host 0.0.0.0 --port 8000
"""

import argparse
import logging
import os
import sys

import uvicorn

from tileproxy.config import load_proxy_config

logger = logging.getLogger("ee_tile_proxy")


def parse_arguments() -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        description="Authenticated Earth Engine tile proxy using FastAPI/Uvicorn."
    )
    parser.add_argument(
        "config",
        nargs="?",
        default=None,
        help="Optional path to a JSON settings file (defaults plus environment otherwise).",
    )
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=int(os.getenv("PORT", "3000")),
        help="Port to bind to (default: $PORT or 3000).",
    )
    parser.add_argument(
        "-b",
        "--bind",
        default="127.0.0.1",
        help="Address to bind to (default: 127.0.0.1).",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1). Sessions live in process "
        "memory, so more than one worker needs sticky routing by session id.",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development.",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Log warnings only and disable the access log.",
    )
    return parser.parse_args()


def main() -> None:
    """
    Main entry point: validates config and starts the Uvicorn server.

    Exits with code 1 on configuration errors or server failures.
    """
    args = parse_arguments()

    if args.quiet:
        logging.basicConfig(level=logging.WARNING)
    else:
        logging.basicConfig(level=logging.INFO)

    # Validate configuration early to avoid worker crashes
    try:
        logger.info("Validating configuration...")
        settings = load_proxy_config(args.config)
        logger.info(
            "Configuration valid: project '%s', proxy prefix %s",
            settings["project_id"],
            settings["proxy_prefix"],
        )
    except ValueError as e:
        print("\nConfiguration Validation Failed:")
        print("=" * 60)
        print(str(e))
        print("=" * 60)
        sys.exit(1)

    # Export env for worker factory to consume
    if args.config:
        os.environ["PROXY_CONFIG_PATH"] = args.config

    if args.workers > 1:
        logger.warning(
            "Running %d workers: a session created in one worker is unknown to the others",
            args.workers,
        )

    print("\n" + "=" * 50)
    print("Starting Earth Engine Tile Proxy")
    print(f"Project: {settings['project_id']}")
    print(f"Listening on: http://{args.bind}:{args.port}")
    print(f"Tile proxy route: {settings['proxy_prefix']}/{{session}}/{{z}}/{{x}}/{{y}}")
    print("=" * 50 + "\n")

    uvicorn_config = {
        "app": "tileproxy.main:get_app",
        "factory": True,
        "host": args.bind,
        "port": args.port,
        "workers": args.workers,
        "reload": args.reload,
        "loop": "uvloop",
        "http": "httptools",
        "backlog": 256,
        "timeout_keep_alive": 30,
    }

    if args.quiet:
        uvicorn_config.update({"log_level": "warning", "access_log": False})
    else:
        uvicorn_config.update({"log_level": "info", "access_log": True})

    try:
        uvicorn.run(**uvicorn_config)
    except KeyboardInterrupt:
        print("\nTile proxy stopped.")
    except Exception as e:
        print(f"Server encountered a critical error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
