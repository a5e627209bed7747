#!/usr/bin/env python3
"""
Command line entry point.

    molt-indexer run [--network monad,monad_testnet] [--once]
    molt-indexer init-db
    molt-indexer backfill-timestamps [--network monad]
    molt-indexer status
"""

import sys
import argparse
import logging
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from . import __version__
from .backfill import backfill_timestamps
from .config import IndexerSettings, configure_logging, load_abis, load_config, load_networks
from .db.cursor_store import CursorStore
from .db.schema import init_db, make_engine
from .errors import ConfigError, IndexerError
from .log_source import LogSource
from .scheduler import PollScheduler

logger = logging.getLogger(__name__)


def _split(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [n.strip() for n in value.split(',') if n.strip()]


def _connect(settings: IndexerSettings) -> Engine:
    """Engine for the configured database; an unreachable store is fatal"""
    engine = make_engine(settings.database_url)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        raise ConfigError(f"Cannot connect to database: {e}") from e
    return engine


def _load_networks(settings: IndexerSettings, args):
    config = load_config(args.config or settings.config_path)
    networks = load_networks(config, only=_split(getattr(args, 'network', None)))
    if not networks:
        raise ConfigError("No networks enabled")
    return config, networks


def cmd_run(settings: IndexerSettings, args) -> int:
    config, networks = _load_networks(settings, args)
    abis = load_abis(config)
    engine = _connect(settings)
    init_db(engine)

    if settings.backfill_on_start:
        backfill_timestamps(engine, {n.chain_id: LogSource(n, settings, abis) for n in networks})

    scheduler = PollScheduler(networks, settings, engine, abis)
    if getattr(args, 'once', False):
        scheduler.sync_marketplace_config()
        for name, remaining in scheduler.run_once().items():
            logger.info(f"{name}: {remaining} blocks behind")
        scheduler.enricher.shutdown(wait=True)
        return 0

    scheduler.run()
    return 0


def cmd_init_db(settings: IndexerSettings, args) -> int:
    init_db(_connect(settings))
    return 0


def cmd_backfill(settings: IndexerSettings, args) -> int:
    config, networks = _load_networks(settings, args)
    abis = load_abis(config)
    engine = _connect(settings)
    backfill_timestamps(engine, {n.chain_id: LogSource(n, settings, abis) for n in networks})
    return 0


def cmd_status(settings: IndexerSettings, args) -> int:
    cursors = CursorStore(_connect(settings)).list_cursors()
    if not cursors:
        print("No contracts indexed yet")
        return 0
    print(f"{'chain':>6}  {'contract':<12} {'address':<42}  {'last block':>12}")
    for cursor in cursors:
        print(f"{cursor['chain_id']:>6}  {cursor['contract_name'] or '-':<12} "
              f"{cursor['contract_address']:<42}  {cursor['last_indexed_block']:>12}")
    return 0


COMMANDS = {
    'run': cmd_run,
    'init-db': cmd_init_db,
    'backfill-timestamps': cmd_backfill,
    'status': cmd_status,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Molt agent and marketplace indexer')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--config', '-c',
                        help='Path to contract table (default: bundled config.yaml)',
                        default=None)
    parser.add_argument('--log-level', dest='log_level', default=None,
                        help='Override LOG_LEVEL')
    subparsers = parser.add_subparsers(dest='command')

    run = subparsers.add_parser('run', help='Index all enabled networks (default)')
    run.add_argument('--network', '-n',
                     help='Comma-separated list of networks to index (default: all)',
                     default=None)
    run.add_argument('--once', action='store_true',
                     help='Run a single poll of every contract and exit')

    subparsers.add_parser('init-db', help='Create database tables')

    backfill = subparsers.add_parser('backfill-timestamps', help='Fill missing block timestamps')
    backfill.add_argument('--network', '-n', default=None,
                          help='Comma-separated list of networks (default: all)')

    subparsers.add_parser('status', help='Show indexing cursors')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    try:
        settings = IndexerSettings()
    except ValidationError as e:
        configure_logging()
        logger.error(f"❌ Invalid settings: {e}")
        return 2

    configure_logging((args.log_level or settings.log_level).upper())
    command = args.command or 'run'

    try:
        return COMMANDS[command](settings, args)
    except ConfigError as e:
        logger.error(f"❌ Configuration error: {e}")
        return 2
    except IndexerError as e:
        logger.error(f"❌ {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
