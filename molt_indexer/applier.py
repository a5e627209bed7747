#!/usr/bin/env python3
"""
Projection applier: turns decoded events into idempotent, order-respecting
writes on the projection tables and drives each marketplace entity's status
state machine.

Ordering rule: for any entity, a write carrying provenance at or before the
entity's stored provenance is stale and discarded (last writer wins by
(block_number, log_index), not by arrival time). Transition events for an
entity not seen yet create a placeholder row that the creating event fills in
later, so arrival order does not change the final state.
"""

import logging
from dataclasses import dataclass, field, fields
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import Table
from sqlalchemy.engine import Connection

from .db.projections import ProjectionStore, ZERO_ADDRESS, creation_provenance, field_provenance
from .db.schema import (
    agents, feedbacks, marketplace_auctions, marketplace_bundles,
    marketplace_collection_offers, marketplace_dutch_auctions, marketplace_listings,
    marketplace_offers,
)
from .errors import LogicViolation, StoreError
from .events import (
    ALL_EVENTS, AgentTransferred, AuctionBuyNow, AuctionCancelled, AuctionCreated,
    AuctionExtended, AuctionReserveNotMet, AuctionSettled, BidPlaced, BundleBought,
    BundleListed, BundleListingCancelled, CollectionOfferAccepted, CollectionOfferCancelled,
    CollectionOfferMade, DomainEvent, DutchAuctionBought, DutchAuctionCancelled,
    DutchAuctionCreated, FeeRecipientUpdated, FeedbackRevoked, Listed, ListingBought,
    ListingCancelled, ListingPriceUpdated, MetadataSet, NewFeedback, OfferAccepted,
    OfferCancelled, OfferMade, PaymentTokenAdded, PaymentTokenRemoved, PlatformFeeUpdated,
    Registered, ResponseAppended, URIUpdated,
)
from .status import AuctionStatus, OfferStatus, SaleStatus, check_transition, is_terminal, parse_status

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    APPLIED = "applied"
    STALE = "stale"          # already applied, or superseded by a newer write
    IGNORED = "ignored"      # carries no projection change (e.g. mint transfers)
    EXPIRED = "expired"      # mutation arrived after the entity's expiry; Expired was recorded instead
    VIOLATION = "violation"  # illegal for the entity's state; nothing written


@dataclass
class ApplyResult:
    event: DomainEvent
    outcome: Outcome
    agent_id: Optional[int] = None
    detail: str = ""
    # (agent_id, chain_id, uri) to hand to the metadata enricher
    enrich: Optional[Tuple[int, int, str]] = None


@dataclass
class BatchSummary:
    results: List[ApplyResult] = field(default_factory=list)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)


@dataclass(frozen=True)
class EntityKind:
    """How a marketplace entity maps onto its table"""
    name: str
    table: Table
    id_column: str
    status_cls: type
    expiry_column: Optional[str] = None


LISTING = EntityKind("listing", marketplace_listings, "listing_id", SaleStatus, "expiry")
OFFER = EntityKind("offer", marketplace_offers, "offer_id", OfferStatus, "expiry")
COLLECTION_OFFER = EntityKind("collection offer", marketplace_collection_offers, "offer_id", OfferStatus, "expiry")
AUCTION = EntityKind("auction", marketplace_auctions, "auction_id", AuctionStatus)
DUTCH_AUCTION = EntityKind("dutch auction", marketplace_dutch_auctions, "auction_id", SaleStatus, "end_time")
BUNDLE = EntityKind("bundle", marketplace_bundles, "bundle_id", SaleStatus, "expiry")


def event_payload(event: DomainEvent) -> Dict[str, Any]:
    """JSON-safe event fields for the activity log"""
    payload = {}
    for f in fields(event):
        if f.name in ('chain_id', 'provenance'):
            continue
        value = getattr(event, f.name)
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, tuple):
            value = [str(v) if isinstance(v, Decimal) else v for v in value]
        payload[f.name] = value
    return payload


class ProjectionApplier:
    """Applies decoded events to the projection tables"""

    MAX_CAS_ATTEMPTS = 3

    def __init__(self, store: ProjectionStore, identity_addresses: Optional[Dict[int, str]] = None):
        self.store = store
        # chain_id -> identity registry address; marketplace events on that NFT belong to an agent
        self.identity_addresses = {chain: addr.lower() for chain, addr in (identity_addresses or {}).items()}

        self._handlers: Dict[type, Callable[[Connection, Any], ApplyResult]] = {
            Registered: self._apply_registered,
            URIUpdated: self._apply_uri_updated,
            MetadataSet: self._apply_metadata_set,
            AgentTransferred: self._apply_transfer,
            NewFeedback: self._apply_new_feedback,
            FeedbackRevoked: self._apply_feedback_revoked,
            ResponseAppended: self._apply_response,
            Listed: self._apply_listed,
            ListingBought: lambda c, e: self._transition(c, LISTING, e, e.listing_id, SaleStatus.SOLD,
                                                         {'buyer': e.buyer, 'sold_price': e.price}),
            ListingCancelled: lambda c, e: self._transition(c, LISTING, e, e.listing_id, SaleStatus.CANCELLED),
            ListingPriceUpdated: lambda c, e: self._mutate(c, LISTING, e, e.listing_id, 'price',
                                                           {'price': e.new_price}),
            OfferMade: self._apply_offer_made,
            OfferAccepted: lambda c, e: self._transition(c, OFFER, e, e.offer_id, OfferStatus.ACCEPTED,
                                                         {'accepted_by': e.seller}),
            OfferCancelled: lambda c, e: self._transition(c, OFFER, e, e.offer_id, OfferStatus.CANCELLED),
            CollectionOfferMade: self._apply_collection_offer_made,
            CollectionOfferAccepted: lambda c, e: self._transition(
                c, COLLECTION_OFFER, e, e.offer_id, OfferStatus.ACCEPTED,
                {'accepted_by': e.seller, 'accepted_token_id': e.token_id}),
            CollectionOfferCancelled: lambda c, e: self._transition(c, COLLECTION_OFFER, e, e.offer_id,
                                                                    OfferStatus.CANCELLED),
            AuctionCreated: self._apply_auction_created,
            BidPlaced: self._apply_bid,
            AuctionSettled: lambda c, e: self._transition(c, AUCTION, e, e.auction_id, AuctionStatus.SETTLED,
                                                          {'winner': e.winner, 'settled_price': e.amount}),
            AuctionBuyNow: lambda c, e: self._transition(c, AUCTION, e, e.auction_id, AuctionStatus.SETTLED,
                                                         {'winner': e.buyer, 'settled_price': e.price}),
            AuctionCancelled: lambda c, e: self._transition(c, AUCTION, e, e.auction_id, AuctionStatus.CANCELLED),
            AuctionReserveNotMet: lambda c, e: self._transition(c, AUCTION, e, e.auction_id,
                                                                AuctionStatus.RESERVE_NOT_MET),
            AuctionExtended: lambda c, e: self._mutate(c, AUCTION, e, e.auction_id, 'end_time',
                                                       {'end_time': e.new_end_time}),
            DutchAuctionCreated: self._apply_dutch_auction_created,
            DutchAuctionBought: lambda c, e: self._transition(c, DUTCH_AUCTION, e, e.auction_id, SaleStatus.SOLD,
                                                              {'buyer': e.buyer, 'sold_price': e.price}),
            DutchAuctionCancelled: lambda c, e: self._transition(c, DUTCH_AUCTION, e, e.auction_id,
                                                                 SaleStatus.CANCELLED),
            BundleListed: self._apply_bundle_listed,
            BundleBought: lambda c, e: self._transition(c, BUNDLE, e, e.bundle_id, SaleStatus.SOLD,
                                                        {'buyer': e.buyer, 'sold_price': e.price}),
            BundleListingCancelled: lambda c, e: self._transition(c, BUNDLE, e, e.bundle_id, SaleStatus.CANCELLED),
            PlatformFeeUpdated: lambda c, e: self._config_field(c, e, 'platform_fee_bps', 'fee', e.new_fee_bps),
            FeeRecipientUpdated: lambda c, e: self._config_field(c, e, 'fee_recipient', 'recipient',
                                                                 e.new_recipient),
            PaymentTokenAdded: lambda c, e: self._payment_token(c, e, True),
            PaymentTokenRemoved: lambda c, e: self._payment_token(c, e, False),
        }

        missing = [cls.__name__ for cls in ALL_EVENTS if cls not in self._handlers]
        if missing:
            raise TypeError(f"No projection handler for: {', '.join(missing)}")

    # ─── Entry points ───────────────────────────────────────────────────────

    def apply(self, event: DomainEvent) -> ApplyResult:
        """Apply one event and record it in the activity log.

        The entity write and the activity row are independent writes: a failure
        of either does not undo the other. StoreError from the entity write is
        re-raised after the activity row has been attempted.
        """
        handler = self._handlers[type(event)]
        try:
            with self.store.transaction() as conn:
                result = handler(conn, event)
        except LogicViolation as e:
            logger.warning(f"[{event.provenance.block_number}] ⚠️ Discarding {event.event_type} on chain "
                           f"{event.chain_id} (log {event.provenance.log_index}): {e}")
            return ApplyResult(event, Outcome.VIOLATION, detail=str(e))
        except StoreError:
            self._record_activity(event, self._agent_from_event(event))
            raise

        if result.outcome in (Outcome.APPLIED, Outcome.STALE):
            self._record_activity(event, result.agent_id)
        return result

    def apply_batch(self, events: Iterable[DomainEvent],
                    on_result: Optional[Callable[[ApplyResult], None]] = None) -> BatchSummary:
        """Apply events in (block_number, log_index) order; StoreError aborts the batch.

        `on_result` is called as soon as each event's writes have committed, so
        work triggered by an event is not lost if a later event fails.
        """
        summary = BatchSummary()
        for event in sorted(events, key=lambda e: e.provenance.key):
            result = self.apply(event)
            summary.results.append(result)
            logger.debug(f"[{event.provenance.block_number}] {event.event_type} -> {result.outcome.value}")
            if on_result is not None:
                on_result(result)
        return summary

    def _record_activity(self, event: DomainEvent, agent_id: Optional[int]) -> None:
        try:
            with self.store.transaction() as conn:
                self.store.insert_activity(conn, event.chain_id, agent_id, event.event_type,
                                           event_payload(event), event.provenance)
        except StoreError as e:
            logger.error(f"Failed to record {event.event_type} activity at block "
                         f"{event.provenance.block_number} log {event.provenance.log_index}: {e}")

    # ─── Agent resolution ───────────────────────────────────────────────────

    def _agent_for(self, chain_id: int, nft_contract: Optional[str], token_id) -> Optional[int]:
        """Agent id when the NFT is the chain's identity registry token"""
        identity = self.identity_addresses.get(chain_id)
        if not identity or not nft_contract or token_id is None:
            return None
        if nft_contract.lower() != identity:
            return None
        try:
            return int(token_id)
        except (TypeError, ValueError):
            return None

    def _agent_from_event(self, event: DomainEvent) -> Optional[int]:
        agent_id = getattr(event, 'agent_id', None)
        if agent_id is not None:
            return agent_id
        return self._agent_for(event.chain_id, getattr(event, 'nft_contract', None), getattr(event, 'token_id', None))

    # ─── Identity ───────────────────────────────────────────────────────────

    def _apply_registered(self, conn: Connection, event: Registered) -> ApplyResult:
        key = {'agent_id': event.agent_id, 'chain_id': event.chain_id}
        existing = self.store.fetch(conn, agents, key)
        self.store.register_agent(conn, event)
        if existing is not None and existing['block_number'] is not None:
            return ApplyResult(event, Outcome.STALE, agent_id=event.agent_id,
                               enrich=self._pending_enrichment(existing, event))
        logger.info(f"[{event.provenance.block_number}] 🤖 Registered agent #{event.agent_id} on chain {event.chain_id}")
        enrich = (event.agent_id, event.chain_id, event.uri) if event.uri else None
        if existing is not None and existing['uri'] is not None and existing['uri'] != event.uri:
            # A newer URIUpdated already replaced the registration URI
            enrich = None
        return ApplyResult(event, Outcome.APPLIED, agent_id=event.agent_id, enrich=enrich)

    def _apply_uri_updated(self, conn: Connection, event: URIUpdated) -> ApplyResult:
        if not self.store.update_agent_uri(conn, event):
            row = self.store.fetch(conn, agents, {'agent_id': event.agent_id, 'chain_id': event.chain_id})
            return ApplyResult(event, Outcome.STALE, agent_id=event.agent_id,
                               enrich=self._pending_enrichment(row, event))
        enrich = (event.agent_id, event.chain_id, event.uri) if event.uri else None
        return ApplyResult(event, Outcome.APPLIED, agent_id=event.agent_id, enrich=enrich)

    @staticmethod
    def _pending_enrichment(row: Optional[Dict], event) -> Optional[Tuple[int, int, str]]:
        """Re-request a fetch on replay while the agent's current URI was never fetched"""
        if row is None or not event.uri or row['uri'] != event.uri or row['metadata_uri'] == event.uri:
            return None
        return event.agent_id, event.chain_id, event.uri

    def _apply_metadata_set(self, conn: Connection, event: MetadataSet) -> ApplyResult:
        applied = self.store.set_agent_metadata_entry(conn, event)
        return ApplyResult(event, Outcome.APPLIED if applied else Outcome.STALE, agent_id=event.agent_id)

    def _apply_transfer(self, conn: Connection, event: AgentTransferred) -> ApplyResult:
        if event.from_address == ZERO_ADDRESS:
            # Mint; ownership is recorded by Registered
            return ApplyResult(event, Outcome.IGNORED, agent_id=event.agent_id)
        applied = self.store.transfer_agent(conn, event)
        if applied and event.to_address == ZERO_ADDRESS:
            logger.info(f"[{event.provenance.block_number}] 🔥 Agent #{event.agent_id} burned on chain {event.chain_id}")
        return ApplyResult(event, Outcome.APPLIED if applied else Outcome.STALE, agent_id=event.agent_id)

    # ─── Reputation ─────────────────────────────────────────────────────────

    def _apply_new_feedback(self, conn: Connection, event: NewFeedback) -> ApplyResult:
        key = {'agent_id': event.agent_id, 'chain_id': event.chain_id, 'feedback_index': event.feedback_index}
        existing = self.store.fetch(conn, feedbacks, key)
        self.store.upsert_feedback(conn, event)
        stale = existing is not None and existing['block_number'] is not None
        return ApplyResult(event, Outcome.STALE if stale else Outcome.APPLIED, agent_id=event.agent_id)

    def _apply_feedback_revoked(self, conn: Connection, event: FeedbackRevoked) -> ApplyResult:
        key = {'agent_id': event.agent_id, 'chain_id': event.chain_id, 'feedback_index': event.feedback_index}
        existing = self.store.fetch(conn, feedbacks, key)
        if existing is not None and existing['revoked'] and not event.provenance.is_newer_than(
                existing['last_block_number'], existing['last_log_index']):
            return ApplyResult(event, Outcome.STALE, agent_id=event.agent_id)
        self.store.revoke_feedback(conn, event)
        return ApplyResult(event, Outcome.APPLIED, agent_id=event.agent_id)

    def _apply_response(self, conn: Connection, event: ResponseAppended) -> ApplyResult:
        inserted = self.store.insert_response(conn, event)
        return ApplyResult(event, Outcome.APPLIED if inserted else Outcome.STALE, agent_id=event.agent_id)

    # ─── Marketplace: creation ──────────────────────────────────────────────

    def _create(self, conn: Connection, kind: EntityKind, event: DomainEvent, entity_id: int,
                values: Dict[str, Any], agent_id: Optional[int] = None) -> ApplyResult:
        key = {kind.id_column: entity_id, 'chain_id': event.chain_id}
        prov = event.provenance
        existing = self.store.fetch(conn, kind.table, key)
        self.store.upsert_creation(conn, kind.table, key, {
            **values,
            **creation_provenance(prov),
            'last_block_number': prov.block_number,
            'last_log_index': prov.log_index,
        })
        if existing is not None and existing['block_number'] is not None:
            return ApplyResult(event, Outcome.STALE, agent_id=agent_id)
        logger.info(f"[{prov.block_number}] 🏷️ {event.abi_name} {kind.name} #{entity_id} on chain {event.chain_id}")
        return ApplyResult(event, Outcome.APPLIED, agent_id=agent_id)

    def _apply_listed(self, conn: Connection, e: Listed) -> ApplyResult:
        return self._create(conn, LISTING, e, e.listing_id, {
            'seller': e.seller, 'nft_contract': e.nft_contract, 'token_id': e.token_id,
            'payment_token': e.payment_token, 'price': e.price, 'expiry': e.expiry,
            **field_provenance('price', e.provenance),
        }, self._agent_for(e.chain_id, e.nft_contract, e.token_id))

    def _apply_offer_made(self, conn: Connection, e: OfferMade) -> ApplyResult:
        return self._create(conn, OFFER, e, e.offer_id, {
            'offerer': e.offerer, 'nft_contract': e.nft_contract, 'token_id': e.token_id,
            'payment_token': e.payment_token, 'amount': e.amount, 'expiry': e.expiry,
        }, self._agent_for(e.chain_id, e.nft_contract, e.token_id))

    def _apply_collection_offer_made(self, conn: Connection, e: CollectionOfferMade) -> ApplyResult:
        return self._create(conn, COLLECTION_OFFER, e, e.offer_id, {
            'offerer': e.offerer, 'nft_contract': e.nft_contract,
            'payment_token': e.payment_token, 'amount': e.amount, 'expiry': e.expiry,
        })

    def _apply_auction_created(self, conn: Connection, e: AuctionCreated) -> ApplyResult:
        return self._create(conn, AUCTION, e, e.auction_id, {
            'seller': e.seller, 'nft_contract': e.nft_contract, 'token_id': e.token_id,
            'payment_token': e.payment_token, 'start_price': e.start_price,
            'reserve_price': e.reserve_price, 'buy_now_price': e.buy_now_price,
            'start_time': e.start_time, 'end_time': e.end_time,
            **field_provenance('end_time', e.provenance),
        }, self._agent_for(e.chain_id, e.nft_contract, e.token_id))

    def _apply_dutch_auction_created(self, conn: Connection, e: DutchAuctionCreated) -> ApplyResult:
        return self._create(conn, DUTCH_AUCTION, e, e.auction_id, {
            'seller': e.seller, 'nft_contract': e.nft_contract, 'token_id': e.token_id,
            'payment_token': e.payment_token, 'start_price': e.start_price, 'end_price': e.end_price,
            'start_time': e.start_time, 'end_time': e.end_time,
        }, self._agent_for(e.chain_id, e.nft_contract, e.token_id))

    def _apply_bundle_listed(self, conn: Connection, e: BundleListed) -> ApplyResult:
        values = {
            'seller': e.seller, 'item_count': e.item_count, 'payment_token': e.payment_token,
            'price': e.price, 'expiry': e.expiry,
        }
        if e.nft_contracts:
            values['nft_contracts'] = list(e.nft_contracts)
            values['token_ids'] = [str(t) for t in e.token_ids]
        return self._create(conn, BUNDLE, e, e.bundle_id, values)

    # ─── Marketplace: state machine ─────────────────────────────────────────

    def _transition(self, conn: Connection, kind: EntityKind, event: DomainEvent, entity_id: int,
                    target: Enum, values: Optional[Dict[str, Any]] = None) -> ApplyResult:
        """Move an entity to `target` status, guarded by provenance and the transition table"""
        key = {kind.id_column: entity_id, 'chain_id': event.chain_id}
        prov = event.provenance
        update = {
            **(values or {}),
            'status': target.value,
            'last_block_number': prov.block_number,
            'last_log_index': prov.log_index,
        }

        for _ in range(self.MAX_CAS_ATTEMPTS):
            row = self.store.fetch(conn, kind.table, key)
            if row is None:
                if self.store.insert_placeholder(conn, kind.table, key, update):
                    logger.info(f"[{prov.block_number}] {event.abi_name}: {kind.name} #{entity_id} -> "
                                f"{target.value} (creation not indexed yet)")
                    return ApplyResult(event, Outcome.APPLIED)
                continue

            agent_id = self._agent_for(event.chain_id, row.get('nft_contract'), row.get('token_id'))
            if not prov.is_newer_than(row['last_block_number'], row['last_log_index']):
                return ApplyResult(event, Outcome.STALE, agent_id=agent_id)

            current = parse_status(kind.status_cls, row['status'])
            check_transition(current, target)

            expected = {'last_block_number': row['last_block_number'], 'last_log_index': row['last_log_index']}
            if self.store.compare_and_set(conn, kind.table, key, expected, update):
                logger.info(f"[{prov.block_number}] {event.abi_name}: {kind.name} #{entity_id} "
                            f"{current.value} -> {target.value}")
                return ApplyResult(event, Outcome.APPLIED, agent_id=agent_id)

        raise StoreError(f"{kind.name} #{entity_id} on chain {event.chain_id} kept changing during {event.abi_name}")

    def _mutate(self, conn: Connection, kind: EntityKind, event: DomainEvent, entity_id: int,
                prefix: str, values: Dict[str, Any]) -> ApplyResult:
        """Update a non-status field that carries its own provenance (price, end time)"""
        key = {kind.id_column: entity_id, 'chain_id': event.chain_id}
        prov = event.provenance
        update = {**values, **field_provenance(prefix, prov)}
        block_col, log_col = f'{prefix}_block_number', f'{prefix}_log_index'

        for _ in range(self.MAX_CAS_ATTEMPTS):
            row = self.store.fetch(conn, kind.table, key)
            if row is None:
                if self.store.insert_placeholder(conn, kind.table, key, update):
                    return ApplyResult(event, Outcome.APPLIED)
                continue

            agent_id = self._agent_for(event.chain_id, row.get('nft_contract'), row.get('token_id'))
            if not prov.is_newer_than(row[block_col], row[log_col]):
                return ApplyResult(event, Outcome.STALE, agent_id=agent_id)

            current = parse_status(kind.status_cls, row['status'])
            after_status_change = prov.is_newer_than(row['last_block_number'], row['last_log_index'])
            expected = {
                'last_block_number': row['last_block_number'], 'last_log_index': row['last_log_index'],
                block_col: row[block_col], log_col: row[log_col],
            }

            if is_terminal(current) and after_status_change:
                raise LogicViolation(f"{kind.name} #{entity_id} is {current.value}, cannot apply {event.abi_name}")

            if not is_terminal(current) and self._expired(kind, row, prov):
                expired = kind.status_cls("Expired")
                if self.store.compare_and_set(conn, kind.table, key, expected, {
                    'status': expired.value,
                    'last_block_number': prov.block_number,
                    'last_log_index': prov.log_index,
                }):
                    logger.warning(f"[{prov.block_number}] {kind.name} #{entity_id} expired before "
                                   f"{event.abi_name}; recorded as {expired.value}")
                    return ApplyResult(event, Outcome.EXPIRED, agent_id=agent_id)
                continue

            if self.store.compare_and_set(conn, kind.table, key, expected, update):
                return ApplyResult(event, Outcome.APPLIED, agent_id=agent_id)

        raise StoreError(f"{kind.name} #{entity_id} on chain {event.chain_id} kept changing during {event.abi_name}")

    @staticmethod
    def _expired(kind: EntityKind, row: Dict, provenance) -> bool:
        if kind.expiry_column is None or provenance.block_timestamp is None:
            return False
        if "EXPIRED" not in kind.status_cls.__members__:
            return False
        expiry = row.get(kind.expiry_column)
        return bool(expiry) and provenance.block_timestamp > expiry

    def _apply_bid(self, conn: Connection, event: BidPlaced) -> ApplyResult:
        key = {'auction_id': event.auction_id, 'chain_id': event.chain_id}
        prov = event.provenance
        row = self.store.fetch(conn, marketplace_auctions, key)
        agent_id = None
        if row is not None:
            agent_id = self._agent_for(event.chain_id, row.get('nft_contract'), row.get('token_id'))
            current = parse_status(AuctionStatus, row['status'])
            if is_terminal(current) and prov.is_newer_than(row['last_block_number'], row['last_log_index']):
                raise LogicViolation(f"auction #{event.auction_id} is {current.value}, bid rejected")

        previous = self.store.latest_bid_before(conn, event.chain_id, event.auction_id, prov)
        if previous is not None and event.amount <= previous['amount']:
            raise LogicViolation(
                f"bid {event.amount} on auction #{event.auction_id} does not exceed highest bid {previous['amount']}"
            )
        following = self.store.earliest_bid_after(conn, event.chain_id, event.auction_id, prov)
        if following is not None and event.amount >= following['amount']:
            raise LogicViolation(
                f"bid {event.amount} on auction #{event.auction_id} is not below later bid {following['amount']}"
            )

        inserted = self.store.insert_bid(conn, event)
        self.store.refresh_bid_summary(conn, event.chain_id, event.auction_id)
        if inserted:
            logger.info(f"[{prov.block_number}] 💸 Bid {event.amount} on auction #{event.auction_id} by {event.bidder}")
        return ApplyResult(event, Outcome.APPLIED if inserted else Outcome.STALE, agent_id=agent_id)

    # ─── Marketplace: config ────────────────────────────────────────────────

    def _config_field(self, conn: Connection, event: DomainEvent, column: str, prefix: str, value) -> ApplyResult:
        applied = self.store.set_config_field(conn, event.chain_id, column, prefix, value, event.provenance)
        if applied:
            logger.info(f"[{event.provenance.block_number}] ⚙️ {column} = {value} on chain {event.chain_id}")
        return ApplyResult(event, Outcome.APPLIED if applied else Outcome.STALE)

    def _payment_token(self, conn: Connection, event, active: bool) -> ApplyResult:
        applied = self.store.set_payment_token(conn, event.chain_id, event.token, active, event.provenance)
        return ApplyResult(event, Outcome.APPLIED if applied else Outcome.STALE)
