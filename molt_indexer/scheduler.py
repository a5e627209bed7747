#!/usr/bin/env python3
"""
Poll scheduler: one ingestion loop per (chain, contract).

Each loop repeatedly fetches the next bounded block range behind the
confirmation lag, decodes it, applies it and only then advances its cursor.
Loops share nothing but the database, so a stalled RPC or a failing batch on
one contract never holds up another.
"""

import signal
import logging
import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from sqlalchemy.engine import Engine

from .applier import ApplyResult, ProjectionApplier
from .config import ContractConfig, IndexerSettings, NetworkConfig
from .db.cursor_store import CursorStore
from .db.projections import ProjectionStore
from .decoder import EventDecoder
from .errors import StoreError, TransientFetchError
from .events import BundleListed, ContractFamily, DomainEvent, Provenance
from .log_source import STATE_READ_LOG_INDEX, LogSource
from .metadata import MetadataEnricher

logger = logging.getLogger(__name__)


def _short(address: str) -> str:
    return f"{address[:6]}..{address[-4:]}"


class ContractPoller:
    """Ingestion loop for a single contract on a single chain"""

    def __init__(self, network: NetworkConfig, contract: ContractConfig, source: LogSource,
                 decoder: EventDecoder, applier: ProjectionApplier, cursors: CursorStore,
                 enricher: Optional[MetadataEnricher], settings: IndexerSettings,
                 stop_event: Optional[threading.Event] = None):
        self.network = network
        self.contract = contract
        self.chain_id = network.chain_id
        self.address = contract.address
        self.family = contract.family
        self.source = source
        self.decoder = decoder
        self.applier = applier
        self.cursors = cursors
        self.enricher = enricher
        self.poll_interval = settings.poll_interval
        self.max_batch_blocks = settings.max_batch_blocks
        self.confirmations = settings.confirmations
        self.stop_event = stop_event or threading.Event()
        self.name = f"{network.name}-{self.family.value}"

    def tick(self) -> int:
        """Process the next block range. Returns how many safe blocks remain behind afterwards."""
        last = self.cursors.read(self.chain_id, self.address, default=self.contract.start_block - 1)
        head = self.source.head()
        safe_head = head - self.confirmations
        from_block = last + 1
        if from_block > safe_head:
            logger.debug(f"{self.family.value} {_short(self.address)} on chain {self.chain_id} up to date at block {last}")
            return 0

        to_block = min(last + self.max_batch_blocks, safe_head)
        logs = self.source.get_logs(self.address, from_block, to_block, self.decoder.topics_for(self.family))
        timestamps = self.source.block_timestamps(int(log['blockNumber']) for log in logs)
        events, skipped = self.decoder.decode_batch(self.family, self.chain_id, logs, timestamps)
        events = [self._resolve(event) for event in events]

        self.applier.apply_batch(events, on_result=self._enqueue_enrichment)
        self.cursors.advance(self.chain_id, self.address, to_block, self.family.value)

        remaining = safe_head - to_block
        if events or skipped:
            logger.info(f"[{to_block}, -{remaining}] {self.family.value} {_short(self.address)} on chain "
                        f"{self.chain_id}: {len(events)} events in blocks {from_block}-{to_block}"
                        + (f", {len(skipped)} skipped" if skipped else ""))
        else:
            logger.debug(f"[{to_block}, -{remaining}] {self.family.value} {_short(self.address)} on chain "
                         f"{self.chain_id}: no events in blocks {from_block}-{to_block}")
        return remaining

    def _enqueue_enrichment(self, result: ApplyResult) -> None:
        if self.enricher is not None and result.enrich:
            agent_id, chain_id, uri = result.enrich
            self.enricher.submit(agent_id, chain_id, uri)

    def _resolve(self, event: DomainEvent) -> DomainEvent:
        """Fill in event data that only lives in contract state"""
        if isinstance(event, BundleListed) and not event.nft_contracts:
            nft_contracts, token_ids = self.source.read_bundle_items(self.address, event.bundle_id)
            return replace(event, nft_contracts=nft_contracts, token_ids=token_ids)
        return event

    def safe_tick(self) -> int:
        """tick() with failures logged; the same range is retried on the next tick"""
        try:
            return self.tick()
        except (TransientFetchError, StoreError) as e:
            logger.error(f"{self.family.value} {_short(self.address)} on chain {self.chain_id}: {e}")
        except Exception as e:
            logger.exception(f"Unexpected error in {self.name} loop: {e}")
        return 0

    def run(self) -> None:
        logger.info(f"▶️ Starting {self.family.value} loop for {_short(self.address)} on chain {self.chain_id}")
        while not self.stop_event.is_set():
            remaining = self.safe_tick()
            # Keep going without sleeping while catching up
            if remaining <= 0:
                self.stop_event.wait(self.poll_interval)
        logger.info(f"⏹️ Stopped {self.family.value} loop on chain {self.chain_id}")


class PollScheduler:
    """Owns the loops for all enabled networks and their shared collaborators"""

    def __init__(self, networks: List[NetworkConfig], settings: IndexerSettings, engine: Engine,
                 abis: Dict[ContractFamily, List[Dict]],
                 source_factory: Optional[Callable[[NetworkConfig], LogSource]] = None,
                 enricher: Optional[MetadataEnricher] = None):
        self.networks = networks
        self.settings = settings
        self.engine = engine
        self.store = ProjectionStore(engine)
        self.cursors = CursorStore(engine)
        self.decoder = EventDecoder(abis)
        self.applier = ProjectionApplier(self.store, {
            n.chain_id: n.identity_address for n in networks if n.identity_address
        })
        self.enricher = enricher or MetadataEnricher(self.store, settings)
        self.source_factory = source_factory or (lambda network: LogSource(network, settings, abis))
        self.stop_event = threading.Event()
        self.threads: List[threading.Thread] = []

        # Each loop gets its own connection
        self.pollers: List[ContractPoller] = []
        for network in networks:
            for contract in network.contracts:
                self.pollers.append(ContractPoller(
                    network, contract, self.source_factory(network), self.decoder, self.applier,
                    self.cursors, self.enricher, settings, self.stop_event,
                ))

    def sync_marketplace_config(self) -> None:
        """Seed fee settings from contract state; the initializer emits no events for them"""
        for network in self.networks:
            marketplace = network.contract(ContractFamily.MARKETPLACE)
            if marketplace is None:
                continue
            source = self.source_factory(network)
            try:
                head = source.head()
                fee_bps, recipient = source.read_marketplace_config(marketplace.address)
            except TransientFetchError as e:
                logger.warning(f"Could not read marketplace config on chain {network.chain_id}: {e}")
                continue

            # Sorts after every log in the head block, so only later events override it
            provenance = Provenance(head, STATE_READ_LOG_INDEX)
            try:
                with self.store.transaction() as conn:
                    if fee_bps is not None:
                        self.store.set_config_field(conn, network.chain_id, 'platform_fee_bps', 'fee',
                                                    fee_bps, provenance)
                    if recipient is not None:
                        self.store.set_config_field(conn, network.chain_id, 'fee_recipient', 'recipient',
                                                    recipient, provenance)
            except StoreError as e:
                logger.error(f"Failed to store marketplace config for chain {network.chain_id}: {e}")
                continue
            logger.info(f"⚙️ Marketplace config on chain {network.chain_id}: fee {fee_bps} bps, recipient {recipient}")

    def run_once(self) -> Dict[str, int]:
        """One tick of every loop, in order; returns blocks still behind per loop"""
        return {poller.name: poller.safe_tick() for poller in self.pollers}

    def start(self) -> None:
        for poller in self.pollers:
            thread = threading.Thread(target=poller.run, name=poller.name, daemon=True)
            thread.start()
            self.threads.append(thread)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal loops to exit after their in-flight batch and release the enricher"""
        self.stop_event.set()
        for thread in self.threads:
            thread.join(timeout)
        self.enricher.shutdown(wait=False)

    def _handle_signal(self, signum, frame) -> None:
        logger.info(f"Received signal {signum}, shutting down...")
        self.stop_event.set()

    def run(self) -> None:
        """Run all loops until interrupted"""
        if not self.pollers:
            logger.warning("No contracts configured, nothing to index")
            return

        names = ', '.join(sorted({n.name for n in self.networks}))
        logger.info(f"🚀 Starting indexer for networks: {names} ({len(self.pollers)} loops)")

        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, self._handle_signal)

        self.sync_marketplace_config()
        self.start()
        try:
            while not self.stop_event.is_set():
                self.stop_event.wait(1.0)
        except KeyboardInterrupt:
            logger.info("Indexer stopped by user")
        finally:
            self.stop()
