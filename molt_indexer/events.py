#!/usr/bin/env python3
"""
Typed domain events decoded from contract logs.

The set of event classes is closed: one class per (contract family, event
signature). Events group under a family base class so the applier can route
on the family and then on the concrete class.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional, Tuple


class ContractFamily(str, Enum):
    """Contract families listed in the network table"""
    IDENTITY = "identity"
    REPUTATION = "reputation"
    MARKETPLACE = "marketplace"


@dataclass(frozen=True, order=True)
class Provenance:
    """On-chain origin of an event. Orders by (block_number, log_index)."""
    block_number: int
    log_index: int
    tx_hash: str = field(default="", compare=False)
    block_timestamp: Optional[int] = field(default=None, compare=False)

    @property
    def key(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)

    def is_newer_than(self, block_number: Optional[int], log_index: Optional[int]) -> bool:
        """True when this provenance is strictly after the stored one (None means never written)"""
        if block_number is None:
            return True
        return self.key > (block_number, log_index if log_index is not None else -1)


@dataclass(frozen=True)
class DomainEvent:
    chain_id: int
    provenance: Provenance

    # Solidity event name, also the ABI lookup key
    abi_name: ClassVar[str] = ""
    # ABI argument names in dataclass field order (after chain_id and provenance)
    abi_fields: ClassVar[Tuple[str, ...]] = ()
    family: ClassVar[ContractFamily] = ContractFamily.IDENTITY

    @property
    def event_type(self) -> str:
        """Label stored in the activity log"""
        if self.family == ContractFamily.MARKETPLACE:
            return f"marketplace:{self.abi_name}"
        return self.abi_name


# ─── Identity ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class IdentityEvent(DomainEvent):
    family: ClassVar[ContractFamily] = ContractFamily.IDENTITY


@dataclass(frozen=True)
class Registered(IdentityEvent):
    agent_id: int
    uri: str
    owner: str
    abi_name: ClassVar[str] = "Registered"
    abi_fields: ClassVar[Tuple[str, ...]] = ("agentId", "agentURI", "owner")


@dataclass(frozen=True)
class URIUpdated(IdentityEvent):
    agent_id: int
    uri: str
    updated_by: str
    abi_name: ClassVar[str] = "URIUpdated"
    abi_fields: ClassVar[Tuple[str, ...]] = ("agentId", "newURI", "updatedBy")


@dataclass(frozen=True)
class MetadataSet(IdentityEvent):
    agent_id: int
    key: str
    value: str
    abi_name: ClassVar[str] = "MetadataSet"
    abi_fields: ClassVar[Tuple[str, ...]] = ("agentId", "metadataKey", "metadataValue")


@dataclass(frozen=True)
class AgentTransferred(IdentityEvent):
    from_address: str
    to_address: str
    agent_id: int
    abi_name: ClassVar[str] = "Transfer"
    abi_fields: ClassVar[Tuple[str, ...]] = ("from", "to", "tokenId")


# ─── Reputation ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ReputationEvent(DomainEvent):
    family: ClassVar[ContractFamily] = ContractFamily.REPUTATION


@dataclass(frozen=True)
class NewFeedback(ReputationEvent):
    agent_id: int
    client_address: str
    feedback_index: int
    value: Decimal
    value_decimals: int
    tag1: str
    tag2: str
    endpoint: str
    feedback_uri: str
    feedback_hash: str
    abi_name: ClassVar[str] = "NewFeedback"
    abi_fields: ClassVar[Tuple[str, ...]] = (
        "agentId", "clientAddress", "feedbackIndex", "value", "valueDecimals",
        "tag1", "tag2", "endpoint", "feedbackURI", "feedbackHash",
    )

    @property
    def normalized_value(self) -> Decimal:
        return self.value.scaleb(-self.value_decimals)


@dataclass(frozen=True)
class FeedbackRevoked(ReputationEvent):
    agent_id: int
    client_address: str
    feedback_index: int
    abi_name: ClassVar[str] = "FeedbackRevoked"
    abi_fields: ClassVar[Tuple[str, ...]] = ("agentId", "clientAddress", "feedbackIndex")


@dataclass(frozen=True)
class ResponseAppended(ReputationEvent):
    agent_id: int
    client_address: str
    feedback_index: int
    responder: str
    response_uri: str
    response_hash: str
    abi_name: ClassVar[str] = "ResponseAppended"
    abi_fields: ClassVar[Tuple[str, ...]] = (
        "agentId", "clientAddress", "feedbackIndex", "responder", "responseURI", "responseHash",
    )


# ─── Marketplace ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MarketplaceEvent(DomainEvent):
    family: ClassVar[ContractFamily] = ContractFamily.MARKETPLACE


@dataclass(frozen=True)
class ListingEvent(MarketplaceEvent):
    pass


@dataclass(frozen=True)
class Listed(ListingEvent):
    listing_id: int
    seller: str
    nft_contract: str
    token_id: Decimal
    payment_token: str
    price: Decimal
    expiry: int
    abi_name: ClassVar[str] = "Listed"
    abi_fields: ClassVar[Tuple[str, ...]] = (
        "listingId", "seller", "nftContract", "tokenId", "paymentToken", "price", "expiry",
    )


@dataclass(frozen=True)
class ListingBought(ListingEvent):
    listing_id: int
    buyer: str
    price: Decimal
    abi_name: ClassVar[str] = "Bought"
    abi_fields: ClassVar[Tuple[str, ...]] = ("listingId", "buyer", "price")


@dataclass(frozen=True)
class ListingCancelled(ListingEvent):
    listing_id: int
    abi_name: ClassVar[str] = "ListingCancelled"
    abi_fields: ClassVar[Tuple[str, ...]] = ("listingId",)


@dataclass(frozen=True)
class ListingPriceUpdated(ListingEvent):
    listing_id: int
    new_price: Decimal
    abi_name: ClassVar[str] = "ListingPriceUpdated"
    abi_fields: ClassVar[Tuple[str, ...]] = ("listingId", "newPrice")


@dataclass(frozen=True)
class OfferEvent(MarketplaceEvent):
    pass


@dataclass(frozen=True)
class OfferMade(OfferEvent):
    offer_id: int
    offerer: str
    nft_contract: str
    token_id: Decimal
    payment_token: str
    amount: Decimal
    expiry: int
    abi_name: ClassVar[str] = "OfferMade"
    abi_fields: ClassVar[Tuple[str, ...]] = (
        "offerId", "offerer", "nftContract", "tokenId", "paymentToken", "amount", "expiry",
    )


@dataclass(frozen=True)
class OfferAccepted(OfferEvent):
    offer_id: int
    seller: str
    abi_name: ClassVar[str] = "OfferAccepted"
    abi_fields: ClassVar[Tuple[str, ...]] = ("offerId", "seller")


@dataclass(frozen=True)
class OfferCancelled(OfferEvent):
    offer_id: int
    abi_name: ClassVar[str] = "OfferCancelled"
    abi_fields: ClassVar[Tuple[str, ...]] = ("offerId",)


@dataclass(frozen=True)
class CollectionOfferEvent(MarketplaceEvent):
    pass


@dataclass(frozen=True)
class CollectionOfferMade(CollectionOfferEvent):
    offer_id: int
    offerer: str
    nft_contract: str
    payment_token: str
    amount: Decimal
    expiry: int
    abi_name: ClassVar[str] = "CollectionOfferMade"
    abi_fields: ClassVar[Tuple[str, ...]] = (
        "offerId", "offerer", "nftContract", "paymentToken", "amount", "expiry",
    )


@dataclass(frozen=True)
class CollectionOfferAccepted(CollectionOfferEvent):
    offer_id: int
    seller: str
    token_id: Decimal
    abi_name: ClassVar[str] = "CollectionOfferAccepted"
    abi_fields: ClassVar[Tuple[str, ...]] = ("offerId", "seller", "tokenId")


@dataclass(frozen=True)
class CollectionOfferCancelled(CollectionOfferEvent):
    offer_id: int
    abi_name: ClassVar[str] = "CollectionOfferCancelled"
    abi_fields: ClassVar[Tuple[str, ...]] = ("offerId",)


@dataclass(frozen=True)
class AuctionEvent(MarketplaceEvent):
    pass


@dataclass(frozen=True)
class AuctionCreated(AuctionEvent):
    auction_id: int
    seller: str
    nft_contract: str
    token_id: Decimal
    payment_token: str
    start_price: Decimal
    reserve_price: Decimal
    buy_now_price: Decimal
    start_time: int
    end_time: int
    abi_name: ClassVar[str] = "AuctionCreated"
    abi_fields: ClassVar[Tuple[str, ...]] = (
        "auctionId", "seller", "nftContract", "tokenId", "paymentToken",
        "startPrice", "reservePrice", "buyNowPrice", "startTime", "endTime",
    )


@dataclass(frozen=True)
class BidPlaced(AuctionEvent):
    auction_id: int
    bidder: str
    amount: Decimal
    abi_name: ClassVar[str] = "BidPlaced"
    abi_fields: ClassVar[Tuple[str, ...]] = ("auctionId", "bidder", "amount")


@dataclass(frozen=True)
class AuctionSettled(AuctionEvent):
    auction_id: int
    winner: str
    amount: Decimal
    abi_name: ClassVar[str] = "AuctionSettled"
    abi_fields: ClassVar[Tuple[str, ...]] = ("auctionId", "winner", "amount")


@dataclass(frozen=True)
class AuctionCancelled(AuctionEvent):
    auction_id: int
    abi_name: ClassVar[str] = "AuctionCancelled"
    abi_fields: ClassVar[Tuple[str, ...]] = ("auctionId",)


@dataclass(frozen=True)
class AuctionExtended(AuctionEvent):
    auction_id: int
    new_end_time: int
    abi_name: ClassVar[str] = "AuctionExtended"
    abi_fields: ClassVar[Tuple[str, ...]] = ("auctionId", "newEndTime")


@dataclass(frozen=True)
class AuctionBuyNow(AuctionEvent):
    auction_id: int
    buyer: str
    price: Decimal
    abi_name: ClassVar[str] = "AuctionBuyNow"
    abi_fields: ClassVar[Tuple[str, ...]] = ("auctionId", "buyer", "price")


@dataclass(frozen=True)
class AuctionReserveNotMet(AuctionEvent):
    auction_id: int
    abi_name: ClassVar[str] = "AuctionReserveNotMet"
    abi_fields: ClassVar[Tuple[str, ...]] = ("auctionId",)


@dataclass(frozen=True)
class DutchAuctionEvent(MarketplaceEvent):
    pass


@dataclass(frozen=True)
class DutchAuctionCreated(DutchAuctionEvent):
    auction_id: int
    seller: str
    nft_contract: str
    token_id: Decimal
    payment_token: str
    start_price: Decimal
    end_price: Decimal
    start_time: int
    end_time: int
    abi_name: ClassVar[str] = "DutchAuctionCreated"
    abi_fields: ClassVar[Tuple[str, ...]] = (
        "auctionId", "seller", "nftContract", "tokenId", "paymentToken",
        "startPrice", "endPrice", "startTime", "endTime",
    )


@dataclass(frozen=True)
class DutchAuctionBought(DutchAuctionEvent):
    auction_id: int
    buyer: str
    price: Decimal
    abi_name: ClassVar[str] = "DutchAuctionBought"
    abi_fields: ClassVar[Tuple[str, ...]] = ("auctionId", "buyer", "price")


@dataclass(frozen=True)
class DutchAuctionCancelled(DutchAuctionEvent):
    auction_id: int
    abi_name: ClassVar[str] = "DutchAuctionCancelled"
    abi_fields: ClassVar[Tuple[str, ...]] = ("auctionId",)


@dataclass(frozen=True)
class BundleEvent(MarketplaceEvent):
    pass


@dataclass(frozen=True)
class BundleListed(BundleEvent):
    bundle_id: int
    seller: str
    item_count: int
    payment_token: str
    price: Decimal
    expiry: int
    # Not part of the log; resolved from contract state by the poller
    nft_contracts: Tuple[str, ...] = ()
    token_ids: Tuple[Decimal, ...] = ()
    abi_name: ClassVar[str] = "BundleListed"
    abi_fields: ClassVar[Tuple[str, ...]] = (
        "bundleId", "seller", "itemCount", "paymentToken", "price", "expiry",
    )


@dataclass(frozen=True)
class BundleBought(BundleEvent):
    bundle_id: int
    buyer: str
    price: Decimal
    abi_name: ClassVar[str] = "BundleBought"
    abi_fields: ClassVar[Tuple[str, ...]] = ("bundleId", "buyer", "price")


@dataclass(frozen=True)
class BundleListingCancelled(BundleEvent):
    bundle_id: int
    abi_name: ClassVar[str] = "BundleListingCancelled"
    abi_fields: ClassVar[Tuple[str, ...]] = ("bundleId",)


@dataclass(frozen=True)
class ConfigEvent(MarketplaceEvent):
    pass


@dataclass(frozen=True)
class PlatformFeeUpdated(ConfigEvent):
    new_fee_bps: int
    abi_name: ClassVar[str] = "PlatformFeeUpdated"
    abi_fields: ClassVar[Tuple[str, ...]] = ("newFee",)


@dataclass(frozen=True)
class FeeRecipientUpdated(ConfigEvent):
    new_recipient: str
    abi_name: ClassVar[str] = "FeeRecipientUpdated"
    abi_fields: ClassVar[Tuple[str, ...]] = ("newRecipient",)


@dataclass(frozen=True)
class PaymentTokenAdded(ConfigEvent):
    token: str
    abi_name: ClassVar[str] = "PaymentTokenAdded"
    abi_fields: ClassVar[Tuple[str, ...]] = ("token",)


@dataclass(frozen=True)
class PaymentTokenRemoved(ConfigEvent):
    token: str
    abi_name: ClassVar[str] = "PaymentTokenRemoved"
    abi_fields: ClassVar[Tuple[str, ...]] = ("token",)


EVENTS_BY_FAMILY = {
    ContractFamily.IDENTITY: (Registered, URIUpdated, MetadataSet, AgentTransferred),
    ContractFamily.REPUTATION: (NewFeedback, FeedbackRevoked, ResponseAppended),
    ContractFamily.MARKETPLACE: (
        Listed, ListingBought, ListingCancelled, ListingPriceUpdated,
        OfferMade, OfferAccepted, OfferCancelled,
        CollectionOfferMade, CollectionOfferAccepted, CollectionOfferCancelled,
        AuctionCreated, BidPlaced, AuctionSettled, AuctionCancelled,
        AuctionExtended, AuctionBuyNow, AuctionReserveNotMet,
        DutchAuctionCreated, DutchAuctionBought, DutchAuctionCancelled,
        BundleListed, BundleBought, BundleListingCancelled,
        PlatformFeeUpdated, FeeRecipientUpdated, PaymentTokenAdded, PaymentTokenRemoved,
    ),
}

ALL_EVENTS = tuple(cls for classes in EVENTS_BY_FAMILY.values() for cls in classes)
