#!/usr/bin/env python3
"""
Idempotent writes for the projection tables.

Every statement is keyed by the table's natural unique key. Creation writes
fill in only what is still empty, mutations are guarded by provenance, and
append-only child rows are inserted with ON CONFLICT DO NOTHING, so applying
the same event twice leaves the same row behind.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from sqlalchemy import Table, and_, case, func, literal, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from ..errors import StoreError
from ..events import (
    AgentTransferred, BidPlaced, FeedbackRevoked, MetadataSet, NewFeedback,
    Provenance, Registered, ResponseAppended, URIUpdated,
)
from .schema import (
    activity_log, agent_metadata, agents, feedback_responses, feedbacks,
    marketplace_auction_bids, marketplace_auctions, marketplace_config,
    marketplace_payment_tokens,
)

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def newer_than_stored(block_col, log_col, provenance: Provenance):
    """SQL predicate: `provenance` is strictly after the stored (block, log) pair"""
    return or_(
        block_col.is_(None),
        block_col < provenance.block_number,
        and_(block_col == provenance.block_number, log_col < provenance.log_index),
    )


def creation_provenance(provenance: Provenance) -> Dict[str, Any]:
    return {
        'block_number': provenance.block_number,
        'block_timestamp': provenance.block_timestamp,
        'tx_hash': provenance.tx_hash,
    }


def field_provenance(prefix: str, provenance: Provenance) -> Dict[str, Any]:
    return {
        f'{prefix}_block_number': provenance.block_number,
        f'{prefix}_log_index': provenance.log_index,
    }


class ProjectionStore:
    """Table-level write and lookup operations used by the projection applier"""

    def __init__(self, engine: Engine):
        self.engine = engine

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """One unit of work; database failures surface as StoreError"""
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise StoreError(f"Database write failed: {e}") from e

    @staticmethod
    def _insert(conn: Connection, table: Table):
        dialect = conn.dialect.name
        if dialect == 'postgresql':
            return pg_insert(table)
        if dialect == 'sqlite':
            return sqlite_insert(table)
        raise StoreError(f"Unsupported database dialect {dialect}")

    # ─── Generic entity operations ──────────────────────────────────────────

    def fetch(self, conn: Connection, table: Table, key: Dict[str, Any]) -> Optional[Dict]:
        row = conn.execute(
            select(table).where(*[table.c[name] == value for name, value in key.items()])
        ).mappings().first()
        return dict(row) if row else None

    def upsert_creation(self, conn: Connection, table: Table, key: Dict[str, Any], values: Dict[str, Any]) -> None:
        """Insert a new entity, or fill the creation attributes a placeholder row is still missing"""
        stmt = self._insert(conn, table).values(**key, **values)
        fill = {name: func.coalesce(table.c[name], stmt.excluded[name]) for name in values}
        conn.execute(stmt.on_conflict_do_update(index_elements=list(key), set_=fill))

    def insert_placeholder(self, conn: Connection, table: Table, key: Dict[str, Any], values: Dict[str, Any]) -> bool:
        """Create a row for an entity whose creating event has not been seen yet"""
        stmt = self._insert(conn, table).values(**key, **values).on_conflict_do_nothing(index_elements=list(key))
        return conn.execute(stmt).rowcount == 1

    def compare_and_set(self, conn: Connection, table: Table, key: Dict[str, Any],
                        expected: Dict[str, Any], values: Dict[str, Any]) -> bool:
        """Update the row only if the `expected` columns still hold the values read earlier"""
        conditions = [table.c[name] == value for name, value in key.items()]
        for name, value in expected.items():
            conditions.append(table.c[name].is_(None) if value is None else table.c[name] == value)
        return conn.execute(update(table).where(*conditions).values(**values)).rowcount == 1

    # ─── Agents ─────────────────────────────────────────────────────────────

    def register_agent(self, conn: Connection, event: Registered) -> None:
        prov = event.provenance
        self.upsert_creation(conn, agents, {'agent_id': event.agent_id, 'chain_id': event.chain_id}, {
            'owner': event.owner,
            'uri': event.uri,
            'active': True,
            **creation_provenance(prov),
            **field_provenance('owner', prov),
            **field_provenance('uri', prov),
        })

    def update_agent_uri(self, conn: Connection, event: URIUpdated) -> bool:
        prov = event.provenance
        stmt = self._insert(conn, agents).values(
            agent_id=event.agent_id, chain_id=event.chain_id, uri=event.uri,
            **field_provenance('uri', prov),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['agent_id', 'chain_id'],
            set_={
                'uri': stmt.excluded.uri,
                'uri_block_number': stmt.excluded.uri_block_number,
                'uri_log_index': stmt.excluded.uri_log_index,
            },
            where=newer_than_stored(agents.c.uri_block_number, agents.c.uri_log_index, prov),
        )
        return conn.execute(stmt).rowcount == 1

    def transfer_agent(self, conn: Connection, event: AgentTransferred) -> bool:
        """Owner change; a transfer to the zero address deactivates the agent"""
        prov = event.provenance
        burned = event.to_address == ZERO_ADDRESS
        values = {'active': not burned, **field_provenance('owner', prov)}
        if not burned:
            values['owner'] = event.to_address

        stmt = self._insert(conn, agents).values(agent_id=event.agent_id, chain_id=event.chain_id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=['agent_id', 'chain_id'],
            set_={name: stmt.excluded[name] for name in values},
            where=newer_than_stored(agents.c.owner_block_number, agents.c.owner_log_index, prov),
        )
        return conn.execute(stmt).rowcount == 1

    def set_agent_metadata_entry(self, conn: Connection, event: MetadataSet) -> bool:
        prov = event.provenance
        stmt = self._insert(conn, agent_metadata).values(
            agent_id=event.agent_id, chain_id=event.chain_id, key=event.key, value=event.value,
            tx_hash=prov.tx_hash, last_block_number=prov.block_number, last_log_index=prov.log_index,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['agent_id', 'chain_id', 'key'],
            set_={
                'value': stmt.excluded.value,
                'tx_hash': stmt.excluded.tx_hash,
                'last_block_number': stmt.excluded.last_block_number,
                'last_log_index': stmt.excluded.last_log_index,
            },
            where=newer_than_stored(agent_metadata.c.last_block_number, agent_metadata.c.last_log_index, prov),
        )
        return conn.execute(stmt).rowcount == 1

    def apply_agent_enrichment(self, conn: Connection, agent_id: int, chain_id: int,
                               uri: str, fields: Dict[str, Any]) -> bool:
        """Write fetched metadata while the agent still points at `uri`; absent fields keep their value"""
        values = {name: value for name, value in fields.items() if value is not None}
        values['metadata_uri'] = uri
        result = conn.execute(
            update(agents)
            .where(agents.c.agent_id == agent_id, agents.c.chain_id == chain_id, agents.c.uri == uri)
            .values(**values)
        )
        return result.rowcount == 1

    # ─── Feedback ───────────────────────────────────────────────────────────

    def upsert_feedback(self, conn: Connection, event: NewFeedback) -> None:
        prov = event.provenance
        self.upsert_creation(conn, feedbacks, {
            'agent_id': event.agent_id, 'chain_id': event.chain_id, 'feedback_index': event.feedback_index,
        }, {
            'client_address': event.client_address,
            'value': event.value,
            'value_decimals': event.value_decimals,
            'normalized_value': event.normalized_value,
            'tag1': event.tag1,
            'tag2': event.tag2,
            'endpoint': event.endpoint,
            'feedback_uri': event.feedback_uri,
            'feedback_hash': event.feedback_hash,
            **creation_provenance(prov),
            'last_block_number': prov.block_number,
            'last_log_index': prov.log_index,
        })

    def revoke_feedback(self, conn: Connection, event: FeedbackRevoked) -> None:
        """Revocation is sticky, so it commutes with the feedback's creation"""
        prov = event.provenance
        stmt = self._insert(conn, feedbacks).values(
            agent_id=event.agent_id, chain_id=event.chain_id, feedback_index=event.feedback_index,
            client_address=event.client_address, revoked=True,
            last_block_number=prov.block_number, last_log_index=prov.log_index,
        )
        newer = newer_than_stored(feedbacks.c.last_block_number, feedbacks.c.last_log_index, prov)
        stmt = stmt.on_conflict_do_update(
            index_elements=['agent_id', 'chain_id', 'feedback_index'],
            set_={
                'revoked': literal(True),
                'client_address': func.coalesce(feedbacks.c.client_address, stmt.excluded.client_address),
                'last_block_number': case((newer, stmt.excluded.last_block_number), else_=feedbacks.c.last_block_number),
                'last_log_index': case((newer, stmt.excluded.last_log_index), else_=feedbacks.c.last_log_index),
            },
        )
        conn.execute(stmt)

    def insert_response(self, conn: Connection, event: ResponseAppended) -> bool:
        prov = event.provenance
        stmt = self._insert(conn, feedback_responses).values(
            agent_id=event.agent_id,
            chain_id=event.chain_id,
            feedback_index=event.feedback_index,
            client_address=event.client_address,
            responder=event.responder,
            response_uri=event.response_uri,
            response_hash=event.response_hash,
            block_number=prov.block_number,
            block_timestamp=prov.block_timestamp,
            tx_hash=prov.tx_hash,
            log_index=prov.log_index,
        ).on_conflict_do_nothing(index_elements=['chain_id', 'tx_hash', 'log_index'])
        return conn.execute(stmt).rowcount == 1

    # ─── Auction bids ───────────────────────────────────────────────────────

    def insert_bid(self, conn: Connection, event: BidPlaced) -> bool:
        prov = event.provenance
        stmt = self._insert(conn, marketplace_auction_bids).values(
            auction_id=event.auction_id,
            chain_id=event.chain_id,
            bidder=event.bidder,
            amount=event.amount,
            block_number=prov.block_number,
            block_timestamp=prov.block_timestamp,
            tx_hash=prov.tx_hash,
            log_index=prov.log_index,
        ).on_conflict_do_nothing(index_elements=['chain_id', 'tx_hash', 'log_index'])
        return conn.execute(stmt).rowcount == 1

    def latest_bid_before(self, conn: Connection, chain_id: int, auction_id: int,
                          provenance: Provenance) -> Optional[Dict]:
        """Most recent bid placed strictly before `provenance`"""
        bids = marketplace_auction_bids
        row = conn.execute(
            select(bids)
            .where(
                bids.c.chain_id == chain_id,
                bids.c.auction_id == auction_id,
                or_(
                    bids.c.block_number < provenance.block_number,
                    and_(bids.c.block_number == provenance.block_number, bids.c.log_index < provenance.log_index),
                ),
            )
            .order_by(bids.c.block_number.desc(), bids.c.log_index.desc())
            .limit(1)
        ).mappings().first()
        return dict(row) if row else None

    def earliest_bid_after(self, conn: Connection, chain_id: int, auction_id: int,
                           provenance: Provenance) -> Optional[Dict]:
        """First bid placed strictly after `provenance`"""
        bids = marketplace_auction_bids
        row = conn.execute(
            select(bids)
            .where(
                bids.c.chain_id == chain_id,
                bids.c.auction_id == auction_id,
                or_(
                    bids.c.block_number > provenance.block_number,
                    and_(bids.c.block_number == provenance.block_number, bids.c.log_index > provenance.log_index),
                ),
            )
            .order_by(bids.c.block_number, bids.c.log_index)
            .limit(1)
        ).mappings().first()
        return dict(row) if row else None

    def refresh_bid_summary(self, conn: Connection, chain_id: int, auction_id: int) -> None:
        """Recompute highest bid, bidder and count from the bid log"""
        bids = marketplace_auction_bids
        rows = conn.execute(
            select(bids.c.amount, bids.c.bidder, bids.c.block_number, bids.c.log_index)
            .where(bids.c.chain_id == chain_id, bids.c.auction_id == auction_id)
        ).mappings().all()
        if not rows:
            return

        # Compared as Decimal; amounts are stored as text on SQLite
        highest = max(rows, key=lambda r: (r['amount'], r['block_number'], r['log_index']))
        values = {'highest_bid': highest['amount'], 'highest_bidder': highest['bidder'], 'bid_count': len(rows)}
        stmt = self._insert(conn, marketplace_auctions).values(auction_id=auction_id, chain_id=chain_id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=['auction_id', 'chain_id'],
            set_={name: stmt.excluded[name] for name in values},
        )
        conn.execute(stmt)

    # ─── Marketplace config ─────────────────────────────────────────────────

    def set_config_field(self, conn: Connection, chain_id: int, column: str, prefix: str,
                         value: Any, provenance: Provenance) -> bool:
        """Last-writer-wins per config field"""
        values = {column: value, **field_provenance(prefix, provenance)}
        stmt = self._insert(conn, marketplace_config).values(chain_id=chain_id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=['chain_id'],
            set_={name: stmt.excluded[name] for name in values},
            where=newer_than_stored(
                marketplace_config.c[f'{prefix}_block_number'],
                marketplace_config.c[f'{prefix}_log_index'],
                provenance,
            ),
        )
        return conn.execute(stmt).rowcount == 1

    def set_payment_token(self, conn: Connection, chain_id: int, token: str, active: bool,
                          provenance: Provenance) -> bool:
        tokens = marketplace_payment_tokens
        stmt = self._insert(conn, tokens).values(
            chain_id=chain_id, token_address=token, active=active,
            last_block_number=provenance.block_number, last_log_index=provenance.log_index,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=['chain_id', 'token_address'],
            set_={
                'active': stmt.excluded.active,
                'last_block_number': stmt.excluded.last_block_number,
                'last_log_index': stmt.excluded.last_log_index,
            },
            where=newer_than_stored(tokens.c.last_block_number, tokens.c.last_log_index, provenance),
        )
        return conn.execute(stmt).rowcount == 1

    # ─── Activity ───────────────────────────────────────────────────────────

    def insert_activity(self, conn: Connection, chain_id: int, agent_id: Optional[int], event_type: str,
                        event_data: Dict[str, Any], provenance: Provenance) -> bool:
        stmt = self._insert(conn, activity_log).values(
            agent_id=agent_id,
            chain_id=chain_id,
            event_type=event_type,
            event_data=event_data,
            block_number=provenance.block_number,
            block_timestamp=provenance.block_timestamp,
            tx_hash=provenance.tx_hash,
            log_index=provenance.log_index,
        ).on_conflict_do_nothing(index_elements=['chain_id', 'tx_hash', 'log_index'])
        return conn.execute(stmt).rowcount == 1
