#!/usr/bin/env python3
"""
Launch the interview session relay.

Reads a .env file next to this script (if present), maps CLI flags onto the
relay's environment variables, then starts uvicorn.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the interview session relay (WebSocket fan-out + screenshots).",
    )
    parser.add_argument("--host", default=None, help="Bind host (env RELAY_HOST).")
    parser.add_argument("--port", type=int, default=None, help="Bind port (env RELAY_PORT).")
    parser.add_argument(
        "--screenshot-dir",
        default=None,
        help="Screenshot root directory (env SCREENSHOT_DIR). Default: ./screenshots.",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=None,
        help="Close connections idle for this many seconds; 0 disables (env RELAY_IDLE_TIMEOUT_SECONDS).",
    )
    parser.add_argument(
        "--send-timeout",
        type=float,
        default=None,
        help="Drop a recipient whose send takes longer than this many seconds (env RELAY_SEND_TIMEOUT_SECONDS).",
    )
    parser.add_argument(
        "--presence-events",
        action="store_true",
        help="Announce participants joining and leaving a room (env RELAY_PRESENCE_EVENTS).",
    )
    parser.add_argument("--log-level", default="info", help="Uvicorn log level.")
    return parser.parse_args()


def main() -> None:
    load_dotenv(Path(__file__).parent / ".env")
    args = parse_args()

    if args.host:
        os.environ["RELAY_HOST"] = args.host
    if args.port is not None:
        os.environ["RELAY_PORT"] = str(args.port)
    if args.screenshot_dir:
        os.environ["SCREENSHOT_DIR"] = str(Path(args.screenshot_dir).expanduser())
    if args.idle_timeout is not None:
        os.environ["RELAY_IDLE_TIMEOUT_SECONDS"] = str(args.idle_timeout)
    if args.send_timeout is not None:
        os.environ["RELAY_SEND_TIMEOUT_SECONDS"] = str(args.send_timeout)
    if args.presence_events:
        os.environ["RELAY_PRESENCE_EVENTS"] = "true"

    from relay_server import RUNTIME_CONFIG, app  # Import after env config

    print(
        f"Starting session relay bind=ws://{RUNTIME_CONFIG.host}:{RUNTIME_CONFIG.port}/ws "
        f"screenshot_dir={RUNTIME_CONFIG.screenshot_dir} "
        f"idle_timeout={RUNTIME_CONFIG.idle_timeout_seconds}s "
        f"presence_events={RUNTIME_CONFIG.presence_events}"
    )
    uvicorn.run(
        app,
        host=RUNTIME_CONFIG.host,
        port=RUNTIME_CONFIG.port,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
