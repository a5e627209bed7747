#!/usr/bin/env python3
"""
Error kinds raised by the indexer pipeline.

Each kind maps to one recovery policy in the poll loop:
transient fetch failures and store failures retry the same range next tick,
decode errors and logic violations skip one log and let the batch commit,
enrichment errors never leave the metadata worker.
"""

from typing import Optional


class IndexerError(Exception):
    """Base class for all indexer errors"""


class ConfigError(IndexerError):
    """Invalid or unusable configuration (fatal at startup)"""


class TransientFetchError(IndexerError):
    """RPC or network failure, safe to retry"""


class DecodeError(IndexerError):
    """A log with a known signature could not be decoded"""

    def __init__(self, message: str, block_number: Optional[int] = None, log_index: Optional[int] = None):
        super().__init__(message)
        self.block_number = block_number
        self.log_index = log_index


class LogicViolation(IndexerError):
    """Event is well-formed but illegal for the entity's current state"""


class StoreError(IndexerError):
    """Database write or read failure"""


class CursorRegressionError(StoreError):
    """Attempt to move a cursor backwards"""

    def __init__(self, chain_id: int, contract_address: str, stored: int, requested: int):
        super().__init__(
            f"Cursor for {contract_address} on chain {chain_id} is at {stored}, "
            f"refusing to move it back to {requested}"
        )
        self.chain_id = chain_id
        self.contract_address = contract_address
        self.stored = stored
        self.requested = requested


class EnrichmentError(IndexerError):
    """Agent metadata could not be fetched or parsed"""
