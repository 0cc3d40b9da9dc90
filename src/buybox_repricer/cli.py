"""
Command-line interface for the Buy Box Repricer.

Runs single ticks, serves the recurring scheduler and inspects
configuration and supported marketplaces.
"""

import argparse
import asyncio
import json
import signal
import sys
from typing import Optional

from buybox_repricer.bootstrap import build_app
from buybox_repricer.marketplaces.factory import create_default_factory
from buybox_repricer.utils.config import get_config, validate_configuration
from buybox_repricer.utils.exceptions import RepricerError
from buybox_repricer.utils.logger import get_logger


cli_logger = get_logger(__name__)


class RepricerCLI:
    """Command-line interface for repricer operations."""

    async def cmd_run_once(self, args) -> int:
        """Run a single tick and print its result and counters."""
        app = build_app()
        try:
            tick = await app.scheduler.run_once(trigger="manual")
            status = app.scheduler.get_status()
            print(json.dumps({
                "tick": tick.to_dict() if tick else None,
                "metrics": status["metrics"],
            }, indent=2, default=str))
            return 0 if tick and tick.state.value == "completed" else 1
        finally:
            await app.aclose()

    async def cmd_serve(self, args) -> int:
        """Start the recurring scheduler and block until interrupted."""
        app = build_app()
        stop = asyncio.Event()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows event loops; KeyboardInterrupt still applies
                pass

        try:
            await app.scheduler.start()
            if args.run_now:
                await app.scheduler.run_once(trigger="manual")
            print(f"🔁 Repricing every {app.config.scheduler.tick_interval_seconds}s - Ctrl+C to stop")
            await stop.wait()
            return 0
        finally:
            await app.aclose()

    async def cmd_config(self, args) -> int:
        """Handle configuration commands."""
        if args.config_action == "validate":
            cli_logger.info("Validating configuration...")
            validation_result = validate_configuration()

            if validation_result["valid"]:
                print("✅ Configuration is valid")
                print(f"📊 Summary: {json.dumps(validation_result['summary'], indent=2)}")
                return 0

            print(f"❌ Configuration validation failed: {validation_result['error']}")
            return 1

        if args.config_action == "show":
            config = get_config()
            print("📋 Current configuration:")
            # Secrets reported only as present/absent
            config_summary = {
                "scheduler": config.scheduler.model_dump(),
                "retry": config.retry.model_dump(),
                "credits": {
                    "monitoring": config.credits.monitoring,
                    "repricing": config.credits.repricing,
                    "ledger_url": config.credits.ledger_url,
                    "has_ledger_api_key": bool(config.credits.ledger_api_key),
                },
                "application": {
                    "log_level": config.app.log_level,
                    "log_dir": config.app.log_dir,
                    "debug_mode": config.app.debug_mode,
                    "database": config.app.database_url.split("://", 1)[0],
                    "sentry_environment": config.app.sentry_environment,
                    "has_sentry_dsn": bool(config.app.sentry_dsn),
                    "has_encryption_key": bool(config.encryption_master_key),
                },
            }
            print(json.dumps(config_summary, indent=2))
            return 0

        print(f"❌ Unknown config action: {args.config_action}")
        return 1

    async def cmd_marketplaces(self, args) -> int:
        """List supported marketplace ids."""
        factory = create_default_factory()
        try:
            for marketplace_id in factory.list_supported():
                print(marketplace_id)
        finally:
            await factory.aclose()
        return 0


def create_parser() -> argparse.ArgumentParser:
    """Create command-line argument parser."""
    parser = argparse.ArgumentParser(
        prog="buybox-repricer",
        description="Buy Box Repricer - monitoring and automated repricing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  buybox-repricer config validate     # Validate configuration
  buybox-repricer run-once            # Run a single tick
  buybox-repricer serve --run-now     # Tick immediately, then on schedule
  buybox-repricer marketplaces        # List supported marketplaces
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("run-once", help="Run a single monitoring and repricing tick")

    serve_parser = subparsers.add_parser("serve", help="Run the recurring scheduler")
    serve_parser.add_argument(
        "--run-now",
        action="store_true",
        help="Run one tick immediately instead of waiting for the first interval"
    )

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_parser.add_argument(
        "config_action",
        choices=["validate", "show"],
        help="Configuration action to perform"
    )

    subparsers.add_parser("marketplaces", help="List supported marketplace ids")

    return parser


async def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    cli = RepricerCLI()
    handlers = {
        "run-once": cli.cmd_run_once,
        "serve": cli.cmd_serve,
        "config": cli.cmd_config,
        "marketplaces": cli.cmd_marketplaces,
    }

    try:
        return await handlers[args.command](args)
    except KeyboardInterrupt:
        print("\n⏹️  Operation cancelled by user")
        return 130
    except (RepricerError, ValueError) as e:
        cli_logger.error(f"CLI operation failed: {e}")
        print(f"❌ Operation failed: {e}")
        return 1


def cli_entry_point():
    """Entry point for console script."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n⏹️  Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    cli_entry_point()
