"""
Command-line entry point.

    dns-filter-manager [--config PATH] [--log-level LEVEL] call ACTION [JSON]
    dns-filter-manager serve
    dns-filter-manager doctor
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import List, Optional

from . import __version__
from .config import load_config, ManagerConfig
from .context import create_context
from .service import ManagerService

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dns-filter-manager",
        description="Manage AdGuard Home appliances: credentials, rules and sync",
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument(
        "--config",
        type=str,
        help="Path to configuration file (defaults and env vars if not specified)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (overrides config)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    call = subparsers.add_parser("call", help="Run one operation and print the JSON response")
    call.add_argument("action", help="Operation name, e.g. getServers")
    call.add_argument("data", nargs="?", default="{}", help="JSON argument object")

    subparsers.add_parser("serve", help="Run the periodic background sync loop")
    subparsers.add_parser("doctor", help="Check the credential codec and appliance reachability")

    return parser


async def _call(service: ManagerService, action: str, raw: str) -> int:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON argument: {e}", file=sys.stderr)
        return 2
    if not isinstance(data, dict):
        print("ERROR: JSON argument must be an object", file=sys.stderr)
        return 2

    response = await service.handle(action, data)
    await service.wait_background()
    print(json.dumps(response, indent=2, default=str))
    return 0 if response["success"] else 1


async def _serve(service: ManagerService, config: ManagerConfig) -> int:
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Shutdown signal received")
        shutdown.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    await service.ctx.sync.run_periodic(config.sync_interval, shutdown)
    return 0


async def _doctor(service: ManagerService) -> int:
    ctx = service.ctx
    healthy = True

    codec_ok = await ctx.codec.self_test()
    print(f"  credential codec: {'OK' if codec_ok else 'FAIL'}")
    healthy = healthy and codec_ok

    servers = await ctx.credentials.list()
    if not servers:
        print("  no appliances configured")

    for server in servers:
        if server.password is None:
            print(f"  {server.name or server.id}: FAIL (password could not be decrypted)")
            healthy = False
            continue

        result = await ctx.client.test_connection(server.host, server.username, server.password)
        extra = f" ({result['error']})" if not result["success"] else ""
        print(f"  {server.name or server.id}: {'OK' if result['success'] else 'FAIL'}{extra}")
        healthy = healthy and result["success"]

    print(f"Doctor {'PASSED' if healthy else 'FAILED'}")
    return 0 if healthy else 1


async def run_command(args: argparse.Namespace, config: ManagerConfig) -> int:
    context = create_context(config)
    service = ManagerService(context)

    try:
        await service.initialize()

        if args.command == "call":
            return await _call(service, args.action, args.data)
        if args.command == "serve":
            return await _serve(service, config)
        if args.command == "doctor":
            return await _doctor(service)
        raise ValueError(f"Unknown command: {args.command}")
    finally:
        await context.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except FileNotFoundError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"ERROR: Invalid config: {e}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=getattr(logging, args.log_level or config.log_level),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    )

    try:
        return asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
