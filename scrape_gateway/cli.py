"""Command-line interface for the scrape gateway"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

import orjson
import uvicorn
from dotenv import load_dotenv
from loguru import logger

from . import __version__
from .api import create_app
from .gateway import GatewayRouter
from .logging_config import setup_logging
from .models import ProxyRequest
from .worker import AlertWorker


async def run_route(args: argparse.Namespace) -> int:
    """One routed request; prints the JSON result"""
    body = None
    if args.body:
        try:
            body = orjson.loads(args.body)
        except orjson.JSONDecodeError:
            body = args.body

    async with GatewayRouter.from_env() as router:
        result = await router.route_request(ProxyRequest(url=args.url, method=args.method, body=body))
        print(orjson.dumps(result.to_dict(), option=orjson.OPT_INDENT_2).decode())
        router.print_stats()

    return 0 if result.success else 1


async def run_stats(args: argparse.Namespace) -> int:
    async with GatewayRouter.from_env() as router:
        if args.json:
            print(orjson.dumps(router.get_cluster_stats(), option=orjson.OPT_INDENT_2).decode())
        else:
            router.print_stats()
    return 0


async def run_worker(args: argparse.Namespace) -> int:
    worker = AlertWorker.from_env()
    worker.install_signal_handlers()
    await worker.run()
    return 0


def run_server(args: argparse.Namespace) -> int:
    logger.info(f"🚀 Serving on http://{args.host}:{args.port}")
    uvicorn.run(create_app(), host=args.host, port=args.port, log_level="debug" if args.verbose else "info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scrape-gateway",
        description="Rotating scraper cluster gateway and alert worker",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    config_group = parser.add_argument_group("Configuration")
    config_group.add_argument("--verbose", action="store_true", help="Debug logging")
    config_group.add_argument("--log-file", type=str, help="Log file path, or a directory for one file per command")
    config_group.add_argument("--env-file", type=str, help="Load environment variables from this file")

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0", help="Bind address")
    serve.add_argument("--port", type=int, default=3000, help="Bind port")
    serve.set_defaults(handler=run_server)

    worker = subparsers.add_parser("worker", help="Run the alert worker")
    worker.set_defaults(handler=run_worker)

    route = subparsers.add_parser("route", help="Route one request through the cluster")
    route.add_argument("url", help="Target URL")
    route.add_argument("--method", default="GET", help="HTTP method")
    route.add_argument("--body", type=str, help="Request body (JSON or raw text)")
    route.set_defaults(handler=run_route)

    stats = subparsers.add_parser("stats", help="Print cluster statistics")
    stats.add_argument("--json", action="store_true", help="Print raw JSON")
    stats.set_defaults(handler=run_stats)

    return parser


def main(argv: Optional[list] = None) -> None:
    """Main CLI entry point"""
    args = build_parser().parse_args(argv)

    if args.env_file:
        env_file = Path(args.env_file)
        if not env_file.exists():
            print(f"Env file not found: {env_file}", file=sys.stderr)
            sys.exit(1)
        load_dotenv(env_file, override=True)
    else:
        load_dotenv()

    setup_logging(
        verbose=args.verbose,
        log_file=Path(args.log_file) if args.log_file else None,
        component=args.command,
    )

    try:
        result = args.handler(args)
        if asyncio.iscoroutine(result):
            result = asyncio.run(result)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        sys.exit(1)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)

    sys.exit(result)


if __name__ == "__main__":
    main()
