"""Command line entry points: run the chat server or replay frames offline."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Callable, Dict, Iterable, TextIO

from aiohttp import web

from .config import GatewayConfig
from .delivery import DeliveryEngine
from .errors import ConflictError
from .hub import ClientConnection, ConnectionHub
from .logging_utils import setup_logging
from .messages import MessageStore
from .models import _now_ms
from .presence import PresenceRegistry
from .users import UserStore
from .ws_transport import create_app

logger = logging.getLogger(__name__)

_USER_FIELDS = ("username", "sender", "receiver")


async def _simulate(frames: Iterable[dict], output: TextIO, now_func: Callable[[], int]) -> None:
    users = UserStore()
    registry = PresenceRegistry()
    engine = DeliveryEngine(registry, users, MessageStore(), now_func=now_func)
    hub = ConnectionHub()
    connections: Dict[str, ClientConnection] = {}

    def connection_for(name: str) -> ClientConnection:
        if name not in connections:
            def _write(frame: dict, conn: str = name) -> None:
                output.write(json.dumps({"conn": conn, "t": frame["t"], "body": frame["body"]}) + "\n")

            connections[name] = hub.open(_write, conn_id=name)
        return connections[name]

    for frame in frames:
        name = frame.get("conn")
        frame_type = frame.get("t")
        if not isinstance(name, str) or not isinstance(frame_type, str):
            raise ValueError(f"frame requires conn and t: {frame!r}")
        body = frame.get("body") or {}

        if frame_type == "disconnect":
            connection = connections.pop(name, None)
            if connection is not None:
                hub.close(connection)
                hub.deliver(await engine.disconnect(connection))
            continue

        if isinstance(body, dict):
            for field in _USER_FIELDS:
                username = body.get(field)
                if isinstance(username, str) and username:
                    try:
                        await users.create(username, "!", at_ms=now_func())
                    except ConflictError:
                        pass
        hub.deliver(await engine.dispatch(connection_for(name), frame_type, body))


def simulate(frames: Iterable[dict], output: TextIO, *, now_func: Callable[[], int] = _now_ms) -> None:
    """Drive JSON frames through the delivery core and emit outbound events."""

    asyncio.run(_simulate(frames, output, now_func))


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    if args.file is None:
        frames = _load_frames(sys.stdin)
    else:
        with open(args.file, encoding="utf-8") as handle:
            frames = _load_frames(handle)
    simulate(frames, output)
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    config = GatewayConfig.from_env().override(
        host=args.host,
        port=args.port,
        db_path=args.db,
        ping_interval_s=args.ping_interval,
        log_level=args.log_level,
        log_json=True if args.log_json else None,
    )
    setup_logging(config.log_level, json_format=config.log_json)
    logger.info("starting chat server on %s:%s", config.host, config.port)
    app = create_app(config)
    web.run_app(app, host=config.host, port=config.port, print=None)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="nexsy", description="Nexsy chat server")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay client frames through the delivery core")
    simulate_parser.add_argument(
        "-f",
        "--file",
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp chat server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--ping-interval", type=int, default=None, help="Seconds between heartbeat pings")
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument("--log-level", default=None, help="Root log level")
    serve_parser.add_argument("--log-json", action="store_true", help="Emit JSON log lines")

    args = parser.parse_args(argv)

    if args.command == "serve":
        return _run_serve(args)
    return _run_simulation(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
