#!/usr/bin/env python3
"""
Read-only queries over the projection tables.

This module is the read surface for API consumers; the HTTP server that serves
it lives outside this package, so the indexer itself never imports it. Every
function takes an Engine and returns plain dicts; paged listings use the
{items, total, page, per_page, has_next} shape.

Nothing here writes. Expiry is evaluated at read time: an Active listing whose
expiry has passed is reported (and filtered) as Expired even though the row
still says Active.
"""

import time
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import Numeric, String, and_, cast, false, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..errors import StoreError
from ..events import EVENTS_BY_FAMILY, ContractFamily
from ..status import SaleStatus, effective_status, parse_status
from .schema import (
    activity_log, agent_metadata, agents, feedback_responses, feedbacks,
    marketplace_auction_bids, marketplace_auctions, marketplace_bundles,
    marketplace_collection_offers, marketplace_dutch_auctions, marketplace_listings,
    marketplace_offers,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100

ACTIVITY_CATEGORIES = {
    'identity': tuple(cls.abi_name for cls in EVENTS_BY_FAMILY[ContractFamily.IDENTITY]),
    'reputation': tuple(cls.abi_name for cls in EVENTS_BY_FAMILY[ContractFamily.REPUTATION]),
}


def _paging(page: int, limit: int):
    page = max(1, int(page))
    limit = min(max(1, int(limit)), MAX_PAGE_SIZE)
    return page, limit, (page - 1) * limit


def _paginated(items: List[Dict], total: int, page: int, limit: int) -> Dict[str, Any]:
    return {
        'items': items,
        'total': total,
        'page': page,
        'per_page': limit,
        'has_next': (page * limit) < total,
    }


def _score(value) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _reputation():
    """Per-agent score: mean normalized value over feedback that was not revoked"""
    return (
        select(
            feedbacks.c.agent_id,
            feedbacks.c.chain_id,
            func.avg(cast(feedbacks.c.normalized_value, Numeric)).label('reputation_score'),
            func.count().label('feedback_count'),
        )
        .where(feedbacks.c.revoked == false())
        .group_by(feedbacks.c.agent_id, feedbacks.c.chain_id)
        .subquery('reputation')
    )


def _agent_row(row) -> Dict[str, Any]:
    agent = dict(row)
    agent['reputation_score'] = _score(agent.get('reputation_score'))
    agent['feedback_count'] = int(agent.get('feedback_count') or 0)
    return agent


def _agent_select(reputation):
    return (
        select(agents, reputation.c.reputation_score, reputation.c.feedback_count)
        .select_from(agents.outerjoin(reputation, and_(
            reputation.c.agent_id == agents.c.agent_id,
            reputation.c.chain_id == agents.c.chain_id,
        )))
    )


def list_agents(engine: Engine, chain_id: Optional[int] = None, search: Optional[str] = None,
                category: Optional[str] = None, sort: str = 'recent',
                page: int = 1, limit: int = 20) -> Dict[str, Any]:
    """Agents with reputation, filtered and paged"""
    page, limit, offset = _paging(page, limit)
    reputation = _reputation()

    conditions = []
    if chain_id is not None:
        conditions.append(agents.c.chain_id == chain_id)
    if search:
        term = search.strip()
        matches = [agents.c.name.ilike(f'%{term}%'), agents.c.description.ilike(f'%{term}%'),
                   agents.c.owner == term.lower()]
        if term.isdigit():
            matches.append(agents.c.agent_id == int(term))
        conditions.append(or_(*matches))
    if category:
        # categories is a JSON list of strings on every backend
        conditions.append(cast(agents.c.categories, String).ilike(f'%"{category}"%'))

    if sort == 'score':
        order = [reputation.c.reputation_score.desc().nulls_last(), agents.c.agent_id]
    elif sort == 'name':
        order = [agents.c.name.asc().nulls_last(), agents.c.agent_id]
    else:
        order = [agents.c.block_number.desc().nulls_last(), agents.c.agent_id.desc()]

    query = _agent_select(reputation).where(*conditions)
    try:
        with engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(query.subquery())).scalar() or 0
            rows = conn.execute(query.order_by(*order).limit(limit).offset(offset)).mappings().all()
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to list agents: {e}") from e
    return _paginated([_agent_row(r) for r in rows], int(total), page, limit)


def get_agent(engine: Engine, agent_id: int, chain_id: int) -> Optional[Dict[str, Any]]:
    """One agent with reputation, feedback counts and on-chain metadata entries"""
    reputation = _reputation()
    try:
        with engine.connect() as conn:
            row = conn.execute(
                _agent_select(reputation).where(agents.c.agent_id == agent_id, agents.c.chain_id == chain_id)
            ).mappings().first()
            if row is None:
                return None
            revoked = conn.execute(
                select(func.count()).select_from(feedbacks).where(
                    feedbacks.c.agent_id == agent_id, feedbacks.c.chain_id == chain_id,
                    feedbacks.c.revoked.is_(True),
                )
            ).scalar()
            responses = conn.execute(
                select(func.count()).select_from(feedback_responses).where(
                    feedback_responses.c.agent_id == agent_id, feedback_responses.c.chain_id == chain_id,
                )
            ).scalar()
            entries = conn.execute(
                select(agent_metadata.c.key, agent_metadata.c.value)
                .where(agent_metadata.c.agent_id == agent_id, agent_metadata.c.chain_id == chain_id)
                .order_by(agent_metadata.c.key)
            ).all()
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to load agent #{agent_id} on chain {chain_id}: {e}") from e

    agent = _agent_row(row)
    agent['revoked_feedback_count'] = int(revoked or 0)
    agent['response_count'] = int(responses or 0)
    agent['onchain_metadata'] = {key: value for key, value in entries}
    return agent


def _activity_conditions(category: Optional[str], event_type: Optional[str]) -> List:
    conditions = []
    if event_type:
        conditions.append(activity_log.c.event_type == event_type)
    elif category == 'marketplace':
        conditions.append(activity_log.c.event_type.like('marketplace:%'))
    elif category in ACTIVITY_CATEGORIES:
        conditions.append(activity_log.c.event_type.in_(ACTIVITY_CATEGORIES[category]))
    elif category:
        raise ValueError(f"Unknown activity category {category!r}")
    return conditions


def _activity_page(engine: Engine, conditions: List, page: int, limit: int) -> Dict[str, Any]:
    page, limit, offset = _paging(page, limit)
    try:
        with engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(activity_log).where(*conditions)).scalar() or 0
            rows = conn.execute(
                select(activity_log).where(*conditions)
                .order_by(activity_log.c.block_number.desc(), activity_log.c.log_index.desc())
                .limit(limit).offset(offset)
            ).mappings().all()
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to load activity: {e}") from e
    return _paginated([dict(r) for r in rows], int(total), page, limit)


def get_agent_activity(engine: Engine, agent_id: int, chain_id: int, category: Optional[str] = None,
                       event_type: Optional[str] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    """Timeline for one agent; category is identity, reputation or marketplace"""
    conditions = [activity_log.c.agent_id == agent_id, activity_log.c.chain_id == chain_id]
    conditions.extend(_activity_conditions(category, event_type))
    return _activity_page(engine, conditions, page, limit)


def get_global_activity(engine: Engine, chain_id: Optional[int] = None, category: Optional[str] = None,
                        event_type: Optional[str] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    conditions = _activity_conditions(category, event_type)
    if chain_id is not None:
        conditions.append(activity_log.c.chain_id == chain_id)
    return _activity_page(engine, conditions, page, limit)


def get_feedbacks(engine: Engine, agent_id: int, chain_id: int, include_revoked: bool = True,
                  page: int = 1, limit: int = 20) -> Dict[str, Any]:
    """Feedback for an agent, newest first, each with its responses"""
    page, limit, offset = _paging(page, limit)
    conditions = [feedbacks.c.agent_id == agent_id, feedbacks.c.chain_id == chain_id]
    if not include_revoked:
        conditions.append(feedbacks.c.revoked == false())

    try:
        with engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(feedbacks).where(*conditions)).scalar() or 0
            rows = conn.execute(
                select(feedbacks).where(*conditions)
                .order_by(feedbacks.c.feedback_index.desc())
                .limit(limit).offset(offset)
            ).mappings().all()
            indexes = [r['feedback_index'] for r in rows]
            responses = conn.execute(
                select(feedback_responses).where(
                    feedback_responses.c.agent_id == agent_id,
                    feedback_responses.c.chain_id == chain_id,
                    feedback_responses.c.feedback_index.in_(indexes),
                ).order_by(feedback_responses.c.block_number, feedback_responses.c.log_index)
            ).mappings().all() if indexes else []
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to load feedback for agent #{agent_id}: {e}") from e

    by_index: Dict[int, List[Dict]] = {}
    for response in responses:
        by_index.setdefault(response['feedback_index'], []).append(dict(response))
    items = []
    for row in rows:
        item = dict(row)
        item['responses'] = by_index.get(row['feedback_index'], [])
        items.append(item)
    return _paginated(items, int(total), page, limit)


def get_leaderboard(engine: Engine, chain_id: Optional[int] = None, limit: int = 10,
                    min_feedback: int = 1) -> List[Dict[str, Any]]:
    """Active agents ranked by reputation score, then by feedback volume"""
    reputation = _reputation()
    query = (
        _agent_select(reputation)
        .where(agents.c.active.is_(True), reputation.c.feedback_count >= min_feedback)
        .order_by(reputation.c.reputation_score.desc(), reputation.c.feedback_count.desc(), agents.c.agent_id)
        .limit(min(max(1, limit), MAX_PAGE_SIZE))
    )
    if chain_id is not None:
        query = query.where(agents.c.chain_id == chain_id)
    try:
        with engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to load leaderboard: {e}") from e
    return [_agent_row(r) for r in rows]


def _active_condition(table, now: int):
    """Active in the row and not past its expiry"""
    return and_(
        table.c.status == 'Active',
        or_(table.c.expiry.is_(None), table.c.expiry == 0, table.c.expiry >= now),
    )


def _expired_condition(table, now: int):
    return or_(
        table.c.status == 'Expired',
        and_(table.c.status == 'Active', table.c.expiry > 0, table.c.expiry < now),
    )


def get_stats(engine: Engine, chain_id: Optional[int] = None, now: Optional[int] = None) -> Dict[str, Any]:
    """Headline counts across agents, feedback and the marketplace"""
    now = int(time.time()) if now is None else now

    def count(conn, table, *conditions):
        if chain_id is not None:
            conditions = conditions + (table.c.chain_id == chain_id,)
        return int(conn.execute(select(func.count()).select_from(table).where(*conditions)).scalar() or 0)

    try:
        with engine.connect() as conn:
            stats = {
                'total_agents': count(conn, agents),
                'active_agents': count(conn, agents, agents.c.active.is_(True)),
                'total_feedbacks': count(conn, feedbacks),
                'revoked_feedbacks': count(conn, feedbacks, feedbacks.c.revoked.is_(True)),
                'total_responses': count(conn, feedback_responses),
                'active_listings': count(conn, marketplace_listings,
                                         _active_condition(marketplace_listings, now)),
                'active_offers': count(conn, marketplace_offers, _active_condition(marketplace_offers, now)),
                'active_collection_offers': count(conn, marketplace_collection_offers,
                                                  _active_condition(marketplace_collection_offers, now)),
                'active_auctions': count(conn, marketplace_auctions, marketplace_auctions.c.status == 'Active'),
                'active_bundles': count(conn, marketplace_bundles, _active_condition(marketplace_bundles, now)),
                'total_bids': count(conn, marketplace_auction_bids),
                'total_sales': (
                    count(conn, marketplace_listings, marketplace_listings.c.status == 'Sold')
                    + count(conn, marketplace_dutch_auctions, marketplace_dutch_auctions.c.status == 'Sold')
                    + count(conn, marketplace_bundles, marketplace_bundles.c.status == 'Sold')
                    + count(conn, marketplace_auctions, marketplace_auctions.c.status == 'Settled')
                ),
                'total_events': count(conn, activity_log),
            }
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to compute stats: {e}") from e
    return stats


def list_listings(engine: Engine, chain_id: Optional[int] = None, status: Optional[str] = None,
                  seller: Optional[str] = None, nft_contract: Optional[str] = None, sort: str = 'recent',
                  page: int = 1, limit: int = 20, now: Optional[int] = None) -> Dict[str, Any]:
    """Fixed-price listings; status filtering and the reported status account for expiry"""
    page, limit, offset = _paging(page, limit)
    now = int(time.time()) if now is None else now
    table = marketplace_listings

    conditions = []
    if chain_id is not None:
        conditions.append(table.c.chain_id == chain_id)
    if seller:
        conditions.append(table.c.seller == seller.lower())
    if nft_contract:
        conditions.append(table.c.nft_contract == nft_contract.lower())
    if status:
        wanted = parse_status(SaleStatus, status)
        if wanted == SaleStatus.ACTIVE:
            conditions.append(_active_condition(table, now))
        elif wanted == SaleStatus.EXPIRED:
            conditions.append(_expired_condition(table, now))
        else:
            conditions.append(table.c.status == wanted.value)

    price = cast(table.c.price, Numeric)
    if sort == 'price_asc':
        order = [price.asc().nulls_last(), table.c.listing_id]
    elif sort == 'price_desc':
        order = [price.desc().nulls_last(), table.c.listing_id]
    else:
        order = [table.c.block_number.desc().nulls_last(), table.c.listing_id.desc()]

    try:
        with engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(table).where(*conditions)).scalar() or 0
            rows = conn.execute(
                select(table).where(*conditions).order_by(*order).limit(limit).offset(offset)
            ).mappings().all()
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to list listings: {e}") from e

    items = []
    for row in rows:
        item = dict(row)
        item['status'] = effective_status(parse_status(SaleStatus, row['status']), row['expiry'], now).value
        items.append(item)
    return _paginated(items, int(total), page, limit)


def get_auction(engine: Engine, auction_id: int, chain_id: int) -> Optional[Dict[str, Any]]:
    """English auction with its bids in chain order"""
    try:
        with engine.connect() as conn:
            row = conn.execute(
                select(marketplace_auctions).where(
                    marketplace_auctions.c.auction_id == auction_id,
                    marketplace_auctions.c.chain_id == chain_id,
                )
            ).mappings().first()
            if row is None:
                return None
            bids = conn.execute(
                select(marketplace_auction_bids).where(
                    marketplace_auction_bids.c.auction_id == auction_id,
                    marketplace_auction_bids.c.chain_id == chain_id,
                ).order_by(marketplace_auction_bids.c.block_number, marketplace_auction_bids.c.log_index)
            ).mappings().all()
    except SQLAlchemyError as e:
        raise StoreError(f"Failed to load auction #{auction_id} on chain {chain_id}: {e}") from e

    auction = dict(row)
    auction['bids'] = [dict(b) for b in bids]
    return auction
