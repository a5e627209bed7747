#!/usr/bin/env python3
"""
Status enumerations and transition tables for marketplace entities.

Stored status text is mapped back to an enum only through parse_status,
so an unexpected value in the database surfaces as a LogicViolation
instead of silently passing through the state machine.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Type, TypeVar

from .errors import LogicViolation


class SaleStatus(str, Enum):
    """Listings, Dutch auctions and bundles"""
    ACTIVE = "Active"
    SOLD = "Sold"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


class OfferStatus(str, Enum):
    """Offers and collection offers"""
    ACTIVE = "Active"
    ACCEPTED = "Accepted"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


class AuctionStatus(str, Enum):
    """English auctions"""
    ACTIVE = "Active"
    SETTLED = "Settled"
    CANCELLED = "Cancelled"
    RESERVE_NOT_MET = "ReserveNotMet"


# Keyed per enum class: str-valued members of different enums compare equal
TRANSITIONS: Dict[type, Dict[Enum, FrozenSet[Enum]]] = {
    SaleStatus: {
        SaleStatus.ACTIVE: frozenset({SaleStatus.SOLD, SaleStatus.CANCELLED, SaleStatus.EXPIRED}),
        SaleStatus.SOLD: frozenset(),
        SaleStatus.CANCELLED: frozenset(),
        SaleStatus.EXPIRED: frozenset(),
    },
    OfferStatus: {
        OfferStatus.ACTIVE: frozenset({OfferStatus.ACCEPTED, OfferStatus.CANCELLED, OfferStatus.EXPIRED}),
        OfferStatus.ACCEPTED: frozenset(),
        OfferStatus.CANCELLED: frozenset(),
        OfferStatus.EXPIRED: frozenset(),
    },
    AuctionStatus: {
        AuctionStatus.ACTIVE: frozenset({
            AuctionStatus.SETTLED, AuctionStatus.CANCELLED, AuctionStatus.RESERVE_NOT_MET,
        }),
        AuctionStatus.SETTLED: frozenset(),
        AuctionStatus.CANCELLED: frozenset(),
        AuctionStatus.RESERVE_NOT_MET: frozenset(),
    },
}

S = TypeVar("S", SaleStatus, OfferStatus, AuctionStatus)


def parse_status(status_cls: Type[S], text: Optional[str]) -> S:
    """Map stored status text to its enum; unknown text is a data-integrity violation"""
    if text is None:
        return status_cls("Active")
    try:
        return status_cls(text)
    except ValueError:
        raise LogicViolation(f"Unknown {status_cls.__name__} value {text!r}") from None


def is_terminal(status: Enum) -> bool:
    return not TRANSITIONS[type(status)][status]


def check_transition(current: Enum, target: Enum) -> None:
    """Raise LogicViolation unless current -> target is a legal move"""
    if target not in TRANSITIONS[type(current)][current]:
        if is_terminal(current):
            raise LogicViolation(f"{type(current).__name__} is terminal ({current.value}), cannot move to {target.value}")
        raise LogicViolation(f"Illegal transition {current.value} -> {target.value}")


def effective_status(status: Enum, expiry: Optional[int], now: Optional[int]) -> Enum:
    """Status as seen at time `now`: an Active entity past its expiry reads as Expired"""
    if status.value != "Active" or not expiry or now is None or now <= expiry:
        return status
    expired = type(status).__members__.get("EXPIRED")
    return expired if expired is not None else status
