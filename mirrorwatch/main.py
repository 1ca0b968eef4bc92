"""CLI entry point for the mirror monitor.

Usage:
    python -m mirrorwatch.main [--config path/to/config.yaml] [-v] run
    python -m mirrorwatch.main sweep
    python -m mirrorwatch.main resolve movierulz moviezap
    python -m mirrorwatch.main health
"""

import argparse
import asyncio
import json
import logging
import sys

from mirrorwatch.config import load_config
from mirrorwatch.errors import ConfigError, MirrorWatchError
from mirrorwatch.models import SiteView
from mirrorwatch.orchestrator import run_daemon, run_health, run_resolve, run_sweep


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="mirrorwatch: tracks the working mirror of movie sites",
    )
    parser.add_argument(
        "--config",
        default="config/config.yaml",
        help="Path to configuration YAML (default: config/config.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("run", help="Run the scheduler until interrupted")
    commands.add_parser("sweep", help="Run one full sweep and exit")
    resolve = commands.add_parser("resolve", help="Resolve site names and print the result")
    resolve.add_argument("names", nargs="+", help="Logical site names")
    commands.add_parser("health", help="Print the health report")
    return parser


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


async def _dispatch(args: argparse.Namespace, config: dict) -> None:
    if args.command == "run":
        await run_daemon(config)
    elif args.command == "sweep":
        outcome = await run_sweep(config)
        _print_json({
            "checked": outcome.checked,
            "working": outcome.working,
            "down": outcome.down,
            "skipped": outcome.skipped,
            "failed": outcome.failed,
            "transitions": len(outcome.events),
            "aborted": outcome.aborted,
        })
    elif args.command == "resolve":
        records = await run_resolve(config, args.names)
        _print_json([SiteView.from_record(r, include_internal=True).to_dict() for r in records])
    elif args.command == "health":
        report = await run_health(config)
        _print_json(report.to_dict())


def main() -> None:
    """Parse arguments and run the selected command."""
    args = build_parser().parse_args()

    # Configure logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr if args.command != "run" else sys.stdout,
    )
    # Suppress noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("google").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.debug("mirrorwatch starting: command=%s", args.command)

    try:
        config = load_config(args.config)
        asyncio.run(_dispatch(args, config))
    except FileNotFoundError as e:
        logger.error("Configuration file not found: %s", e)
        sys.exit(1)
    except ConfigError as e:
        logger.error("Invalid configuration: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(130)
    except MirrorWatchError as e:
        logger.error("%s failed: %s", args.command, e)
        sys.exit(1)
    except Exception as e:
        logger.error("%s failed: %s", args.command, e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
