#!/usr/bin/env python3
"""
Table definitions for the projection store.

Token amounts, prices and token ids are unbounded integers on chain, so they
are stored as NUMERIC on PostgreSQL and as exact decimal text elsewhere.
Block timestamps are Unix seconds.

Projection rows carry the provenance of their creating event
(block_number, block_timestamp, tx_hash) and of the last status change
(last_block_number, last_log_index). Fields mutated independently of status
carry their own *_block_number / *_log_index pair.
"""

import logging
from decimal import Decimal

from sqlalchemy import (
    JSON, BigInteger, Boolean, Column, DateTime, Index, Integer, MetaData,
    Numeric, String, Table, Text, UniqueConstraint, create_engine, func,
)
from sqlalchemy.dialects.postgresql import JSONB, NUMERIC
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeDecorator

from ..errors import ConfigError

logger = logging.getLogger(__name__)


class ChainNumeric(TypeDecorator):
    """Arbitrary precision integer/decimal that round-trips exactly as Decimal"""

    impl = Numeric
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(NUMERIC())
        # SQLite NUMERIC affinity would coerce large values to REAL
        return dialect.type_descriptor(String(96))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        value = Decimal(value)
        if dialect.name == 'postgresql':
            return value
        return format(value, 'f')

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, Decimal):
            return value
        return Decimal(str(value))


JSONType = JSON().with_variant(JSONB(), 'postgresql')

metadata = MetaData()


def _address(name: str, nullable: bool = True) -> Column:
    return Column(name, String(42), nullable=nullable)


def _creation_provenance():
    return [
        Column('block_number', BigInteger),
        Column('block_timestamp', BigInteger),
        Column('tx_hash', String(66)),
    ]


def _status_provenance():
    return [
        Column('last_block_number', BigInteger),
        Column('last_log_index', Integer),
    ]


def _field_provenance(prefix: str):
    return [
        Column(f'{prefix}_block_number', BigInteger),
        Column(f'{prefix}_log_index', Integer),
    ]


indexer_state = Table(
    'indexer_state', metadata,
    Column('chain_id', Integer, primary_key=True),
    Column('contract_address', String(42), primary_key=True),
    Column('contract_name', String(32)),
    Column('last_indexed_block', BigInteger, nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
)

agents = Table(
    'agents', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('agent_id', BigInteger, nullable=False),
    Column('chain_id', Integer, nullable=False),
    _address('owner'),
    Column('uri', Text),
    Column('name', Text),
    Column('description', Text),
    Column('image', Text),
    Column('categories', JSONType),
    Column('x402_support', Boolean),
    Column('metadata', JSONType),
    Column('metadata_uri', Text),
    Column('active', Boolean),
    *_creation_provenance(),
    *_field_provenance('owner'),
    *_field_provenance('uri'),
    UniqueConstraint('agent_id', 'chain_id', name='uq_agents_agent_chain'),
)
Index('idx_agents_chain', agents.c.chain_id)
Index('idx_agents_owner', agents.c.owner)
Index('idx_agents_active', agents.c.active)
Index('idx_agents_name', agents.c.name)

agent_metadata = Table(
    'agent_metadata', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('agent_id', BigInteger, nullable=False),
    Column('chain_id', Integer, nullable=False),
    Column('key', Text, nullable=False),
    Column('value', Text),
    Column('tx_hash', String(66)),
    *_status_provenance(),
    UniqueConstraint('agent_id', 'chain_id', 'key', name='uq_agent_metadata_key'),
)

feedbacks = Table(
    'feedbacks', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('agent_id', BigInteger, nullable=False),
    Column('chain_id', Integer, nullable=False),
    Column('feedback_index', BigInteger, nullable=False),
    _address('client_address'),
    Column('value', ChainNumeric),
    Column('value_decimals', Integer),
    Column('normalized_value', ChainNumeric),
    Column('tag1', Text),
    Column('tag2', Text),
    Column('endpoint', Text),
    Column('feedback_uri', Text),
    Column('feedback_hash', String(66)),
    Column('revoked', Boolean, nullable=False, default=False),
    *_creation_provenance(),
    *_status_provenance(),
    UniqueConstraint('agent_id', 'chain_id', 'feedback_index', name='uq_feedbacks_agent_chain_index'),
)
Index('idx_feedbacks_agent', feedbacks.c.agent_id, feedbacks.c.chain_id)
Index('idx_feedbacks_client', feedbacks.c.client_address)

feedback_responses = Table(
    'feedback_responses', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('agent_id', BigInteger, nullable=False),
    Column('chain_id', Integer, nullable=False),
    Column('feedback_index', BigInteger, nullable=False),
    _address('client_address'),
    _address('responder'),
    Column('response_uri', Text),
    Column('response_hash', String(66)),
    Column('block_number', BigInteger, nullable=False),
    Column('block_timestamp', BigInteger),
    Column('tx_hash', String(66), nullable=False),
    Column('log_index', Integer, nullable=False),
    UniqueConstraint('chain_id', 'tx_hash', 'log_index', name='uq_feedback_responses_log'),
)
Index('idx_feedback_responses_feedback', feedback_responses.c.agent_id,
      feedback_responses.c.chain_id, feedback_responses.c.feedback_index)

activity_log = Table(
    'activity_log', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('agent_id', BigInteger),
    Column('chain_id', Integer, nullable=False),
    Column('event_type', String(64), nullable=False),
    Column('event_data', JSONType),
    Column('block_number', BigInteger, nullable=False),
    Column('block_timestamp', BigInteger),
    Column('tx_hash', String(66), nullable=False),
    Column('log_index', Integer, nullable=False),
    UniqueConstraint('chain_id', 'tx_hash', 'log_index', name='uq_activity_log_log'),
)
Index('idx_activity_agent', activity_log.c.agent_id, activity_log.c.chain_id)
Index('idx_activity_type', activity_log.c.event_type)
Index('idx_activity_block', activity_log.c.block_number)

marketplace_listings = Table(
    'marketplace_listings', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('listing_id', BigInteger, nullable=False),
    Column('chain_id', Integer, nullable=False),
    _address('seller'),
    _address('nft_contract'),
    Column('token_id', ChainNumeric),
    _address('payment_token'),
    Column('price', ChainNumeric),
    Column('expiry', BigInteger),
    Column('status', String(16), nullable=False, default='Active'),
    _address('buyer'),
    Column('sold_price', ChainNumeric),
    *_creation_provenance(),
    *_status_provenance(),
    *_field_provenance('price'),
    UniqueConstraint('listing_id', 'chain_id', name='uq_listings_id_chain'),
)
Index('idx_ml_seller', marketplace_listings.c.seller)
Index('idx_ml_nft', marketplace_listings.c.nft_contract, marketplace_listings.c.token_id)
Index('idx_ml_status', marketplace_listings.c.status)

marketplace_offers = Table(
    'marketplace_offers', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('offer_id', BigInteger, nullable=False),
    Column('chain_id', Integer, nullable=False),
    _address('offerer'),
    _address('nft_contract'),
    Column('token_id', ChainNumeric),
    _address('payment_token'),
    Column('amount', ChainNumeric),
    Column('expiry', BigInteger),
    Column('status', String(16), nullable=False, default='Active'),
    _address('accepted_by'),
    *_creation_provenance(),
    *_status_provenance(),
    UniqueConstraint('offer_id', 'chain_id', name='uq_offers_id_chain'),
)
Index('idx_mo_nft', marketplace_offers.c.nft_contract, marketplace_offers.c.token_id)
Index('idx_mo_offerer', marketplace_offers.c.offerer)
Index('idx_mo_status', marketplace_offers.c.status)

marketplace_collection_offers = Table(
    'marketplace_collection_offers', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('offer_id', BigInteger, nullable=False),
    Column('chain_id', Integer, nullable=False),
    _address('offerer'),
    _address('nft_contract'),
    _address('payment_token'),
    Column('amount', ChainNumeric),
    Column('expiry', BigInteger),
    Column('status', String(16), nullable=False, default='Active'),
    _address('accepted_by'),
    Column('accepted_token_id', ChainNumeric),
    *_creation_provenance(),
    *_status_provenance(),
    UniqueConstraint('offer_id', 'chain_id', name='uq_collection_offers_id_chain'),
)
Index('idx_mco_nft', marketplace_collection_offers.c.nft_contract)
Index('idx_mco_status', marketplace_collection_offers.c.status)

marketplace_auctions = Table(
    'marketplace_auctions', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('auction_id', BigInteger, nullable=False),
    Column('chain_id', Integer, nullable=False),
    _address('seller'),
    _address('nft_contract'),
    Column('token_id', ChainNumeric),
    _address('payment_token'),
    Column('start_price', ChainNumeric),
    Column('reserve_price', ChainNumeric),
    Column('buy_now_price', ChainNumeric),
    Column('highest_bid', ChainNumeric),
    _address('highest_bidder'),
    Column('bid_count', Integer, nullable=False, default=0),
    Column('start_time', BigInteger),
    Column('end_time', BigInteger),
    Column('status', String(16), nullable=False, default='Active'),
    _address('winner'),
    Column('settled_price', ChainNumeric),
    *_creation_provenance(),
    *_status_provenance(),
    *_field_provenance('end_time'),
    UniqueConstraint('auction_id', 'chain_id', name='uq_auctions_id_chain'),
)
Index('idx_ma_seller', marketplace_auctions.c.seller)
Index('idx_ma_nft', marketplace_auctions.c.nft_contract, marketplace_auctions.c.token_id)
Index('idx_ma_status', marketplace_auctions.c.status)

marketplace_auction_bids = Table(
    'marketplace_auction_bids', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('auction_id', BigInteger, nullable=False),
    Column('chain_id', Integer, nullable=False),
    _address('bidder', nullable=False),
    Column('amount', ChainNumeric, nullable=False),
    Column('block_number', BigInteger, nullable=False),
    Column('block_timestamp', BigInteger),
    Column('tx_hash', String(66), nullable=False),
    Column('log_index', Integer, nullable=False),
    UniqueConstraint('chain_id', 'tx_hash', 'log_index', name='uq_auction_bids_log'),
)
Index('idx_mab_auction', marketplace_auction_bids.c.auction_id, marketplace_auction_bids.c.chain_id)

marketplace_dutch_auctions = Table(
    'marketplace_dutch_auctions', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('auction_id', BigInteger, nullable=False),
    Column('chain_id', Integer, nullable=False),
    _address('seller'),
    _address('nft_contract'),
    Column('token_id', ChainNumeric),
    _address('payment_token'),
    Column('start_price', ChainNumeric),
    Column('end_price', ChainNumeric),
    Column('start_time', BigInteger),
    Column('end_time', BigInteger),
    Column('status', String(16), nullable=False, default='Active'),
    _address('buyer'),
    Column('sold_price', ChainNumeric),
    *_creation_provenance(),
    *_status_provenance(),
    UniqueConstraint('auction_id', 'chain_id', name='uq_dutch_auctions_id_chain'),
)
Index('idx_mda_nft', marketplace_dutch_auctions.c.nft_contract, marketplace_dutch_auctions.c.token_id)
Index('idx_mda_status', marketplace_dutch_auctions.c.status)

marketplace_bundles = Table(
    'marketplace_bundles', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('bundle_id', BigInteger, nullable=False),
    Column('chain_id', Integer, nullable=False),
    _address('seller'),
    Column('nft_contracts', JSONType),
    Column('token_ids', JSONType),
    Column('item_count', Integer),
    _address('payment_token'),
    Column('price', ChainNumeric),
    Column('expiry', BigInteger),
    Column('status', String(16), nullable=False, default='Active'),
    _address('buyer'),
    Column('sold_price', ChainNumeric),
    *_creation_provenance(),
    *_status_provenance(),
    UniqueConstraint('bundle_id', 'chain_id', name='uq_bundles_id_chain'),
)
Index('idx_mb_seller', marketplace_bundles.c.seller)
Index('idx_mb_status', marketplace_bundles.c.status)

marketplace_config = Table(
    'marketplace_config', metadata,
    Column('chain_id', Integer, primary_key=True),
    Column('platform_fee_bps', Integer),
    *_field_provenance('fee'),
    _address('fee_recipient'),
    *_field_provenance('recipient'),
)

marketplace_payment_tokens = Table(
    'marketplace_payment_tokens', metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('chain_id', Integer, nullable=False),
    _address('token_address', nullable=False),
    Column('active', Boolean, nullable=False),
    *_status_provenance(),
    UniqueConstraint('chain_id', 'token_address', name='uq_payment_tokens_chain_token'),
)

# Tables with a nullable block_timestamp that the backfill job repairs
TIMESTAMPED_TABLES = (
    agents, feedbacks, feedback_responses, activity_log,
    marketplace_listings, marketplace_offers, marketplace_collection_offers,
    marketplace_auctions, marketplace_auction_bids, marketplace_dutch_auctions,
    marketplace_bundles,
)


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """Create a synchronous engine; psycopg2 for PostgreSQL URLs"""
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    try:
        if database_url.startswith("sqlite"):
            return create_engine(database_url, echo=echo, connect_args={"check_same_thread": False})
        return create_engine(
            database_url,
            echo=echo,
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,
            pool_recycle=3600,
        )
    except (SQLAlchemyError, ValueError) as e:
        raise ConfigError(f"Invalid database URL: {e}") from e


def init_db(engine: Engine) -> None:
    """Create all tables that do not exist yet"""
    metadata.create_all(engine)
    logger.info(f"Database schema ready ({len(metadata.tables)} tables)")
