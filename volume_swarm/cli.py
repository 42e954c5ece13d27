#!/usr/bin/env python3
"""
Volume Swarm CLI
================

Usage:
    volume-swarm run [--config bot_config.yaml] [--dry-run] [--wallets N] [--threads N] [--cycles N]
                     [--export-keys PATH]
    volume-swarm config [--config bot_config.yaml]
    volume-swarm init [--output bot_config.yaml]

Settings come from the environment (AMOUNT, TOKEN_ADDRESS, DELAY, SELL_DELAY,
SLIPPAGE, PRIORITY_FEE, JITO, RPC_URL, THREADS, NUMBER_WALLETS, FUNDER_PRIVATE_KEY, ...),
optionally on top of a YAML file.
"""

import sys
import asyncio
import argparse
from pathlib import Path
from typing import Optional, Sequence

from rich import box
from rich.table import Table

from .bot import VolumeBot
from .config import DEFAULT_CONFIG, Config, ConfigManager
from .utils import VolumeSwarmError, console, setup_logging


def load_config(args) -> Config:
    config = ConfigManager(Path(args.config) if args.config else None).load_config()

    # Command line flags win over file and environment
    if getattr(args, 'dry_run', False):
        config.dry_run = True
    if getattr(args, 'wallets', None) is not None:
        config.number_wallets = args.wallets
    if getattr(args, 'threads', None) is not None:
        config.threads = args.threads
    if getattr(args, 'export_keys', None):
        config.key_export_file = args.export_keys
    return config


def run_command(args) -> int:
    """Handle run command - fund the swarm and trade until stopped."""
    config = load_config(args)
    config.validate()

    setup_logging(config.log_level, config.log_file)

    if config.dry_run:
        console.print("[yellow][DRY RUN MODE] No real transactions will be executed[/yellow]\n")

    bot = VolumeBot(config)
    try:
        stats = asyncio.run(bot.start(max_cycles=args.cycles))
    except KeyboardInterrupt:
        console.print("\n[yellow]Bot stopped by user[/yellow]")
        return 130

    return 0 if stats.cycles == 0 or stats.completed > 0 else 1


def config_command(args) -> int:
    """Handle config command - show the effective configuration."""
    config = load_config(args)

    table = Table(title="Effective Configuration", box=box.ROUNDED)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    for key, value in config.to_dict().items():
        table.add_row(key, "" if value is None else str(value))

    console.print(table)
    return 0


def init_command(args) -> int:
    """Handle init command - write a starter YAML config."""
    path = Path(args.output)
    if path.exists() and not args.force:
        console.print(f"[red]{path} already exists (use --force to overwrite)[/red]")
        return 1

    path.write_text(DEFAULT_CONFIG + "\n")
    console.print(f"[green]Wrote {path}[/green]")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="volume-swarm",
        description="Multi-wallet volume bot",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run with settings from the environment
  TOKEN_ADDRESS=0x... FUNDER_PRIVATE_KEY=0x... volume-swarm run

  # 10 wallets, 4 concurrent workers, stop after 20 cycles, no real transactions
  volume-swarm run --wallets 10 --threads 4 --cycles 20 --dry-run

  # Show the effective configuration (secrets masked)
  volume-swarm config --config bot_config.yaml
        """
    )

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser('run', help='Fund the swarm and run swap cycles')
    run_parser.add_argument('--config', help='Path to YAML config (environment overrides it)')
    run_parser.add_argument('--dry-run', action='store_true', help='Simulate without sending transactions')
    run_parser.add_argument('--wallets', type=int, help='Number of worker wallets (NUMBER_WALLETS)')
    run_parser.add_argument('--threads', type=int, help='Concurrent workers (THREADS)')
    run_parser.add_argument('--cycles', type=int, help='Stop after this many cycles in total')
    run_parser.add_argument('--export-keys', metavar='PATH', help='Write worker keys to PATH, owner-only (KEY_EXPORT_FILE)')

    config_parser = subparsers.add_parser('config', help='Show effective configuration')
    config_parser.add_argument('--config', help='Path to YAML config')

    init_parser = subparsers.add_parser('init', help='Write a starter YAML config')
    init_parser.add_argument('--output', default='./bot_config.yaml', help='Where to write it')
    init_parser.add_argument('--force', action='store_true', help='Overwrite an existing file')

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    commands = {
        'run': run_command,
        'config': config_command,
        'init': init_command,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 1

    try:
        return command(args)
    except VolumeSwarmError as e:
        console.print(f"Error: {e}", style="red", markup=False)
        return 1
    except ValueError as e:
        console.print(f"Error: {e}", style="red", markup=False)
        return 1


if __name__ == '__main__':
    sys.exit(main())
