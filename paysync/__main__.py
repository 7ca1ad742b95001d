"""
Command-line entry point.

    python -m paysync serve [--host 0.0.0.0] [--port 8000]
    python -m paysync sweep            # one expiration sweep, then exit
    python -m paysync sweep --loop     # sweep every SWEEPER__INTERVAL_SECONDS
"""

import argparse
import asyncio
import signal

import structlog
import uvicorn

from paysync.config import get_settings
from paysync.main import build_services, close_services, create_supabase_client

logger = structlog.get_logger("paysync.cli")


async def run_sweep(loop: bool) -> int:
    settings = get_settings()
    supabase_client = await create_supabase_client(settings)
    services = build_services(settings, supabase_client)
    sweeper = services["sweeper"]

    try:
        if not loop:
            await sweeper.sweep_once()
            return 0

        stop_event = asyncio.Event()
        event_loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            event_loop.add_signal_handler(sig, stop_event.set)
        await sweeper.run(stop_event)
        return 0
    finally:
        await close_services(services)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="paysync")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    sweep = commands.add_parser("sweep", help="expire / cancel elapsed subscriptions")
    sweep.add_argument(
        "--loop",
        action="store_true",
        help="keep sweeping on the configured interval until interrupted",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        uvicorn.run("paysync.main:app", host=args.host, port=args.port)
        return 0

    logger.info("sweep_command_started", loop=args.loop)
    return asyncio.run(run_sweep(args.loop))


if __name__ == "__main__":
    raise SystemExit(main())
