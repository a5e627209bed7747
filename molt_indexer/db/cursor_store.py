#!/usr/bin/env python3
"""
Durable per-(chain, contract) cursor: the last block fully ingested.
"""

import logging
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..errors import CursorRegressionError, StoreError
from .schema import indexer_state

logger = logging.getLogger(__name__)


class CursorStore:
    """Monotonic cursor per (chain_id, contract_address)"""

    def __init__(self, engine: Engine):
        self.engine = engine

    @staticmethod
    def _key(contract_address: str) -> str:
        return contract_address.lower()

    def read(self, chain_id: int, contract_address: str, default: int = 0) -> int:
        """Last indexed block, or `default` when the contract was never indexed"""
        try:
            with self.engine.connect() as conn:
                value = conn.execute(
                    select(indexer_state.c.last_indexed_block).where(
                        indexer_state.c.chain_id == chain_id,
                        indexer_state.c.contract_address == self._key(contract_address),
                    )
                ).scalar()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read cursor for {contract_address} on chain {chain_id}: {e}") from e
        return default if value is None else int(value)

    def advance(self, chain_id: int, contract_address: str, new_last_block: int,
                contract_name: Optional[str] = None) -> None:
        """Move the cursor forward; moving it backwards raises CursorRegressionError"""
        address = self._key(contract_address)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(indexer_state)
                    .where(
                        indexer_state.c.chain_id == chain_id,
                        indexer_state.c.contract_address == address,
                        indexer_state.c.last_indexed_block <= new_last_block,
                    )
                    .values(last_indexed_block=new_last_block)
                )
                if result.rowcount:
                    return

                stored = conn.execute(
                    select(indexer_state.c.last_indexed_block).where(
                        indexer_state.c.chain_id == chain_id,
                        indexer_state.c.contract_address == address,
                    )
                ).scalar()
                if stored is not None:
                    raise CursorRegressionError(chain_id, address, int(stored), new_last_block)

                conn.execute(indexer_state.insert().values(
                    chain_id=chain_id,
                    contract_address=address,
                    contract_name=contract_name,
                    last_indexed_block=new_last_block,
                ))
                logger.info(f"Initialized cursor for {address[:6]}..{address[-4:]} on chain {chain_id} at block {new_last_block}")
        except IntegrityError:
            # Another writer created the row first; retry as a plain update
            return self.advance(chain_id, contract_address, new_last_block, contract_name)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to advance cursor for {address} on chain {chain_id}: {e}") from e

    def list_cursors(self) -> List[Dict]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(indexer_state).order_by(indexer_state.c.chain_id, indexer_state.c.contract_name)
                ).mappings().all()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list cursors: {e}") from e
        return [dict(row) for row in rows]
