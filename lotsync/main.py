#!/usr/bin/env python3
"""LotSync application entry point.

This module provides a unified entry point for all interfaces:
- TUI: Conflict resolution in the terminal with Textual
- CLI: Command-line interface
- Web: RESTful HTTP API

Usage:
    python -m lotsync.main                     # Default interface from config (TUI)
    python -m lotsync.main tui                 # Launch TUI
    python -m lotsync.main cli status          # Use CLI
    python -m lotsync.main web [--port 8080]   # Start web server
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import NoReturn, Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

INTERFACES = ("tui", "cli", "web")


def create_parser() -> argparse.ArgumentParser:
    """Create the unified argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        description="LotSync - offline mutation queue and conflict resolution",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m lotsync.main                         Default interface (TUI unless configured)
  python -m lotsync.main tui                     Resolve conflicts in the terminal
  python -m lotsync.main cli queue               List queued mutations
  python -m lotsync.main cli resolve 0193 merge --field status=local
  python -m lotsync.main web --port 8080         Start web server on port 8080
""",
    )

    parser.add_argument(
        "-d", "--config-dir",
        type=Path,
        default=None,
        help="Custom configuration directory (default: ~/.config/lotsync/)"
    )

    subparsers = parser.add_subparsers(dest="interface", help="Interface to use")

    from lotsync.tui import add_tui_subparser
    add_tui_subparser(subparsers)

    from lotsync.cli import add_cli_subparser
    add_cli_subparser(subparsers)

    from lotsync.web import add_web_subparser
    add_web_subparser(subparsers)

    return parser


def get_default_interface(config_dir: Optional[Path]) -> str:
    """Get default interface from config file, falling back to the TUI.

    Args:
        config_dir: Custom configuration directory or None for default

    Returns:
        Interface name: "tui", "cli", or "web"
    """
    from lotsync.core.config import Config
    config = Config(config_dir=config_dir)

    configured = config.get("default_interface")
    if configured in INTERFACES:
        return configured
    return "tui"


def main() -> NoReturn:
    """Main entry point for LotSync.

    Parses arguments and dispatches to the appropriate interface.
    """
    parser = create_parser()
    args = parser.parse_args()

    # If no interface specified, use default from config
    if not args.interface:
        default_interface = get_default_interface(args.config_dir)
        logger.info(f"No interface specified, using default: {default_interface}")

        # Inject the default interface after any global options
        new_argv = sys.argv[:]
        insert_pos = 1
        for i, arg in enumerate(sys.argv[1:], 1):
            if arg in ["-d", "--config-dir"]:
                insert_pos = i + 2
            elif arg.startswith("-"):
                continue
            else:
                break

        new_argv.insert(insert_pos, default_interface)
        args = parser.parse_args(new_argv[1:])

    if args.interface == "tui":
        from lotsync.tui import run as run_tui
        exit_code = run_tui(args.config_dir, args)
    elif args.interface == "cli":
        from lotsync.cli import run as run_cli
        exit_code = run_cli(args.config_dir, args)
    elif args.interface == "web":
        from lotsync.web import run as run_web
        exit_code = run_web(args.config_dir, args)
    else:
        parser.print_help()
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
