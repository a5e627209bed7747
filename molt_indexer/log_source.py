#!/usr/bin/env python3
"""
Log source adapter: one web3 HTTP connection per chain.

All node access goes through here so that timeouts, retries with backoff and
adaptive range splitting are handled in one place. Failures that survive the
retries surface as TransientFetchError; the poll loop retries the same range
on its next tick.
"""

import time
import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from .config import IndexerSettings, NetworkConfig, normalize_address
from .errors import TransientFetchError
from .events import ContractFamily

logger = logging.getLogger(__name__)

# Provider errors that usually go away with a smaller block range
SPLIT_ERRORS = (
    'too many results',
    'response size',
    'limit',
    'timeout',
    'timed out',
    'gateway',
    'internal error',
    'server error',
)

# Log index used for provenance of values read from contract state at a block;
# it sorts after every real log in that block
STATE_READ_LOG_INDEX = 2 ** 31 - 1

# Node and transport failures worth retrying. Older web3 releases raise JSON-RPC
# errors as ValueError; anything else is a bug and propagates unchanged
NODE_ERRORS = (Web3Exception, requests.exceptions.RequestException, OSError, ValueError)


class LogSource:
    """Fetches heads, logs, timestamps and contract state for one chain"""

    def __init__(self, network: NetworkConfig, settings: IndexerSettings,
                 abis: Optional[Dict[ContractFamily, List[Dict]]] = None, w3: Optional[Web3] = None):
        self.chain_id = network.chain_id
        self.network_name = network.name
        self.w3 = w3 or Web3(Web3.HTTPProvider(
            network.rpc_url, request_kwargs={'timeout': settings.rpc_timeout}
        ))
        self.chunk_size = settings.log_chunk_blocks
        self.max_retries = settings.rpc_max_retries
        self.backoff = settings.rpc_backoff
        self.max_block_cache = settings.block_cache_size
        self.abis = abis or {}
        self.block_cache: "OrderedDict[int, int]" = OrderedDict()

    def _call(self, description: str, fn: Callable, *args, **kwargs):
        """Run a node call with bounded retries and exponential backoff"""
        attempt = 0
        while True:
            try:
                return fn(*args, **kwargs)
            except NODE_ERRORS as e:
                if attempt >= self.max_retries:
                    raise TransientFetchError(
                        f"{description} on chain {self.chain_id} failed after {attempt + 1} attempts: {e}"
                    ) from e
                delay = self.backoff * (2 ** attempt)
                logger.debug(f"{description} on chain {self.chain_id} failed ({e}), retrying in {delay:.1f}s")
                time.sleep(delay)
                attempt += 1

    def head(self) -> int:
        return int(self._call("eth_blockNumber", lambda: self.w3.eth.block_number))

    def get_logs(self, address: str, from_block: int, to_block: int,
                 topics: Optional[Iterable[str]] = None) -> List:
        """Logs for `address` in [from_block, to_block], fetched in node-sized chunks"""
        topic_filter = list(topics) if topics else None
        logs = []
        start = from_block
        while start <= to_block:
            end = min(start + self.chunk_size - 1, to_block)
            logs.extend(self._call(
                f"eth_getLogs {start}-{end}",
                self._get_logs_with_split, address, start, end, topic_filter,
            ))
            start = end + 1
        return logs

    def _get_logs_with_split(self, address: str, from_block: int, to_block: int,
                             topics: Optional[List[str]]) -> List:
        """eth_getLogs with adaptive range splitting on provider size/limit errors"""
        params = {
            'address': Web3.to_checksum_address(address),
            'fromBlock': from_block,
            'toBlock': to_block,
        }
        if topics:
            params['topics'] = [topics]
        try:
            return list(self.w3.eth.get_logs(params))
        except NODE_ERRORS as e:
            span = to_block - from_block
            msg = str(e).lower()
            if span > 0 and any(x in msg for x in SPLIT_ERRORS):
                mid = from_block + span // 2
                logger.debug(f"Splitting eth_getLogs {from_block}-{to_block} on chain {self.chain_id}: {e}")
                left = self._get_logs_with_split(address, from_block, mid, topics)
                right = self._get_logs_with_split(address, mid + 1, to_block, topics)
                return left + right
            raise

    def block_timestamp(self, block_number: int) -> Optional[int]:
        """Block timestamp with caching; None when the node cannot serve it"""
        if block_number in self.block_cache:
            self.block_cache.move_to_end(block_number)
            return self.block_cache[block_number]

        try:
            block = self.w3.eth.get_block(block_number)
        except NODE_ERRORS as e:
            logger.warning(f"Failed to fetch timestamp for block {block_number} on chain {self.chain_id}: {e}")
            return None

        timestamp = int(block['timestamp'])
        self.block_cache[block_number] = timestamp
        if len(self.block_cache) > self.max_block_cache:
            evicted, _ = self.block_cache.popitem(last=False)
            logger.debug(f"Evicted block {evicted} from cache for chain {self.chain_id}")
        return timestamp

    def block_timestamps(self, block_numbers: Iterable[int]) -> Dict[int, int]:
        timestamps = {}
        for number in sorted(set(block_numbers)):
            ts = self.block_timestamp(number)
            if ts is not None:
                timestamps[number] = ts
        return timestamps

    def _marketplace(self, address: str):
        abi = self.abis.get(ContractFamily.MARKETPLACE)
        if not abi:
            raise TransientFetchError("Marketplace ABI not loaded")
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def read_bundle_items(self, marketplace_address: str, bundle_id: int) -> Tuple[Tuple[str, ...], Tuple[Decimal, ...]]:
        """NFT contracts and token ids of a bundle, read from contract state (empty on failure)"""
        try:
            result = self._call(
                f"getBundleListing({bundle_id})",
                lambda: self._marketplace(marketplace_address).functions.getBundleListing(bundle_id).call(),
            )
        except TransientFetchError as e:
            logger.warning(f"Failed to read bundle {bundle_id} from contract: {e}")
            return (), ()

        try:
            nft_contracts, token_ids = result[1], result[2]
            return (
                tuple(normalize_address(a) for a in nft_contracts),
                tuple(Decimal(int(t)) for t in token_ids),
            )
        except (IndexError, TypeError, ValueError) as e:
            logger.warning(f"Failed to decode bundle {bundle_id} response: {e}")
            return (), ()

    def read_marketplace_config(self, marketplace_address: str) -> Tuple[Optional[int], Optional[str]]:
        """Current platformFeeBps and feeRecipient; None for values that could not be read"""
        contract = self._marketplace(marketplace_address)
        fee_bps, recipient = None, None
        try:
            fee_bps = int(self._call("platformFeeBps()", lambda: contract.functions.platformFeeBps().call()))
        except TransientFetchError as e:
            logger.warning(f"Failed to read platformFeeBps on chain {self.chain_id}: {e}")
        try:
            recipient = normalize_address(self._call("feeRecipient()", lambda: contract.functions.feeRecipient().call()))
        except TransientFetchError as e:
            logger.warning(f"Failed to read feeRecipient on chain {self.chain_id}: {e}")
        return fee_bps, recipient
