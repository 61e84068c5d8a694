"""
Email vault maintenance CLI.

Usage:
    mail-vault init-db
    mail-vault sweep {daily,weekly}
    mail-vault serve-sweeps
    mail-vault import FILE [--target-user ID]

Or run directly:
    python -m mail_vault.cli sweep daily

Secrets and DATABASE_URL come from the environment or a .env file. The import
password is read from MAIL_VAULT_IMPORT_PASSWORD or prompted for.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import asyncpg

from .config import VaultConfig
from .errors import ConfigurationError, StorageError, VaultError
from .postgres_storage import PostgresStorage
from .retention import Cadence, CronTicker, RetentionScheduler, SweepReport
from .vault import EmailVault

logger = logging.getLogger("mail_vault")


def _print_report(report: SweepReport) -> None:
    print(f"[{report.cadence}] started {report.started_at.isoformat()}")
    for name, count in sorted(report.counts.items()):
        print(f"  - {name}: {count}")
    for name, reason in sorted(report.failures.items()):
        print(f"  ! {name} failed: {reason}")


async def _connect(config: VaultConfig) -> asyncpg.Pool:
    if not config.database_url:
        raise ConfigurationError("DATABASE_URL must be set in environment or .env file")
    try:
        pool = await asyncpg.create_pool(config.database_url)
    except Exception as e:
        raise StorageError(f"Failed to connect to database: {e}")
    if pool is None:
        raise ConfigurationError("Failed to create connection pool")
    return pool


async def run_command(args: argparse.Namespace, config: VaultConfig) -> int:
    pool = await _connect(config)
    try:
        storage = PostgresStorage(pool, timeout=config.store_timeout)

        if args.command == "init-db":
            await storage.create_schema()
            print("[STARTUP] Email vault tables ready")
            return 0

        vault = EmailVault.new(storage, config)

        if args.command == "sweep":
            report = await vault.sweeper.run(Cadence(args.cadence))
            _print_report(report)
            return 0 if report.ok else 1

        if args.command == "serve-sweeps":
            scheduler = RetentionScheduler(vault.sweeper, on_report=_print_report)
            await scheduler.run(CronTicker())
            return 0

        if args.command == "import":
            raw = Path(args.file).read_bytes()
            password = os.environ.get("MAIL_VAULT_IMPORT_PASSWORD") or getpass.getpass(
                "Recovery password: "
            )
            result = await vault.importer.import_file(raw, password, args.target_user)
            if result.already_imported:
                print("Recovery package was already imported; nothing to do")
            else:
                print(
                    f"Imported {result.imported_count}/{result.total_count} emails "
                    f"into user {result.target_user_id} ({result.failed_count} failed)"
                )
            return 0
    finally:
        await pool.close()

    return 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mail-vault", description=__doc__.splitlines()[1])
    parser.add_argument("--env-file", help="Path to a .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the email vault tables")

    sweep = sub.add_parser("sweep", help="Run one retention sweep now")
    sweep.add_argument("cadence", choices=["daily", "weekly"])

    sub.add_parser("serve-sweeps", help="Run sweeps on the daily/weekly schedule")

    imp = sub.add_parser("import", help="Import a downloaded recovery package file")
    imp.add_argument("file")
    imp.add_argument("--target-user", type=int, default=None)
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point for the mail-vault command."""
    args = build_parser().parse_args(argv)

    try:
        config = VaultConfig.from_env(dotenv_path=args.env_file)
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        code = asyncio.run(run_command(args, config))
    except VaultError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"ERROR: {e.public_message}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
