#!/usr/bin/env python3
"""
Block timestamp backfill.

Rows written while the node could not serve a block's timestamp keep a NULL
block_timestamp. This job finds them across the projection tables, fetches
the timestamps once per (chain, block) and fills them in. Running it again is
harmless: only NULL timestamps are ever touched.
"""

import logging
from typing import Dict, Mapping, Set

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .db.schema import TIMESTAMPED_TABLES
from .errors import StoreError
from .log_source import LogSource

logger = logging.getLogger(__name__)


def find_missing_blocks(engine: Engine) -> Dict[int, Set[int]]:
    """chain_id -> block numbers referenced by rows with no timestamp"""
    missing: Dict[int, Set[int]] = {}
    try:
        with engine.connect() as conn:
            for table in TIMESTAMPED_TABLES:
                rows = conn.execute(
                    select(table.c.chain_id, table.c.block_number)
                    .where(table.c.block_timestamp.is_(None), table.c.block_number.is_not(None))
                    .distinct()
                ).all()
                for chain_id, block_number in rows:
                    missing.setdefault(int(chain_id), set()).add(int(block_number))
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to scan for missing timestamps: {e}") from e
    return missing


def fill_timestamps(engine: Engine, chain_id: int, timestamps: Mapping[int, int]) -> int:
    """Write known timestamps into every table; returns the number of rows updated"""
    updated = 0
    try:
        with engine.begin() as conn:
            for table in TIMESTAMPED_TABLES:
                for block_number, timestamp in timestamps.items():
                    result = conn.execute(
                        update(table)
                        .where(
                            table.c.chain_id == chain_id,
                            table.c.block_number == block_number,
                            table.c.block_timestamp.is_(None),
                        )
                        .values(block_timestamp=timestamp)
                    )
                    updated += result.rowcount
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to fill timestamps on chain {chain_id}: {e}") from e
    return updated


def backfill_timestamps(engine: Engine, sources: Mapping[int, LogSource]) -> int:
    """Fill NULL block timestamps for every chain we have a log source for"""
    logger.info("🚀 Starting block timestamp backfill")
    missing = find_missing_blocks(engine)
    if not missing:
        logger.info("✅ No rows are missing block timestamps")
        return 0

    total = 0
    for chain_id, blocks in sorted(missing.items()):
        source = sources.get(chain_id)
        if source is None:
            logger.warning(f"⚠️ {len(blocks)} blocks on chain {chain_id} need timestamps but the chain is not configured")
            continue

        logger.info(f"🔄 Fetching {len(blocks)} block timestamps on chain {chain_id}")
        timestamps = source.block_timestamps(blocks)
        if len(timestamps) < len(blocks):
            logger.warning(f"⚠️ {len(blocks) - len(timestamps)} blocks on chain {chain_id} still have no timestamp")

        updated = fill_timestamps(engine, chain_id, timestamps)
        total += updated
        logger.info(f"✅ Updated {updated} rows on chain {chain_id}")

    logger.info(f"🏁 Backfill completed: {total} rows updated")
    return total
