"""
Domain types for the bid synchronization engine.

Bid lifecycle:

    PENDING ──────> ACTIVE ──────┬──────> CANCELLED
       │                         ├──────> INVALID   (invalidated on the marketplace)
       │                         └──────> EXPIRED   (expiration time passed)
       └──────> (dropped, never written to the ledger)

Only PENDING and ACTIVE count as live. At most one live bid exists per
(collection, marketplace) key.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Marketplace(str, Enum):
    OPENSEA = "opensea"
    BLUR = "blur"

    @classmethod
    def parse(cls, value: str) -> "Marketplace":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"unknown marketplace: {value!r}") from None


class BidStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    INVALID = "invalid"
    EXPIRED = "expired"

    @property
    def is_live(self) -> bool:
        return self in (BidStatus.PENDING, BidStatus.ACTIVE)


class OperationType(str, Enum):
    SUBMIT = "submit"
    CANCEL = "cancel"
    RECALC = "recalc"


BidKey = Tuple[str, Marketplace]

# Smallest price step a marketplace accepts; a configured tick must be a whole multiple of it
MARKET_PRICE_TICK: Dict[Marketplace, Decimal] = {Marketplace.BLUR: Decimal("0.01")}


def tick_fits_market(marketplace: Marketplace, tick: Decimal) -> bool:
    step = MARKET_PRICE_TICK.get(marketplace)
    return step is None or (tick > 0 and tick % step == 0)


@dataclass(frozen=True)
class MarketParams:
    """Per-marketplace bidding parameters for one collection."""
    min_bid: Decimal
    max_bid: Decimal
    margin: Decimal
    tick_size: Decimal
    outbid_increment: Decimal
    fee_rate: Decimal = Decimal("0")
    # Marketplace whose price bounds profitability; None selects single-market pricing.
    reference: Optional[Marketplace] = None
    supports_cancel: bool = True


@dataclass(frozen=True)
class Collection:
    contract_address: str
    slug: str
    markets: Dict[Marketplace, MarketParams] = field(default_factory=dict)

    def params(self, marketplace: Marketplace) -> Optional[MarketParams]:
        return self.markets.get(marketplace)


@dataclass(frozen=True)
class BestOffer:
    """Best competing offer as fetched from a marketplace. price is None when there is none."""
    raw: str
    price: Optional[Decimal] = None
    order_id: Optional[str] = None

    @classmethod
    def empty(cls) -> "BestOffer":
        return cls(raw="")


@dataclass(frozen=True)
class PriceSignal:
    marketplace: Marketplace
    collection: str
    raw_value: str
    parsed_price: Optional[Decimal]
    order_id: Optional[str] = None
    observed_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "marketplace": self.marketplace.value,
            "collection": self.collection,
            "raw": self.raw_value,
            "price": str(self.parsed_price) if self.parsed_price is not None else None,
            "order_id": self.order_id,
            "observed_at": self.observed_at,
        }


@dataclass(frozen=True)
class ChangeEvent:
    collection: str
    marketplace: Marketplace
    new_parsed_price: Optional[Decimal]


@dataclass(frozen=True)
class InvalidationEvent:
    collection: str
    marketplace: Marketplace
    order_id: str


@dataclass
class Bid:
    collection: str
    marketplace: Marketplace
    amount: Decimal
    expiration_time: int
    quote_id: Optional[str] = None
    status: BidStatus = BidStatus.PENDING
    signature: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @property
    def key(self) -> BidKey:
        return (self.collection, self.marketplace)

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return self.expiration_time <= now

    def is_live(self, now: Optional[float] = None) -> bool:
        return self.status.is_live and not self.is_expired(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "marketplace": self.marketplace.value,
            "amount": str(self.amount),
            "expiration_time": self.expiration_time,
            "quote_id": self.quote_id,
            "status": self.status.value,
            "signature": self.signature,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Bid":
        return cls(
            collection=data["collection"],
            marketplace=Marketplace.parse(data["marketplace"]),
            amount=Decimal(str(data["amount"])),
            expiration_time=int(data["expiration_time"]),
            quote_id=data.get("quote_id"),
            status=BidStatus(data.get("status", BidStatus.ACTIVE.value)),
            signature=data.get("signature"),
            created_at=float(data.get("created_at") or time.time()),
        )


@dataclass
class Operation:
    type: OperationType
    collection: str
    marketplace: Marketplace
    payload: Dict[str, Any] = field(default_factory=dict)
    enqueued_at: float = field(default_factory=time.time)

    @property
    def key(self) -> BidKey:
        return (self.collection, self.marketplace)

    def describe(self) -> Dict[str, Any]:
        return {
            "op": self.type.value,
            "collection": self.collection,
            "marketplace": self.marketplace.value,
        }


@dataclass(frozen=True)
class BidDescriptor:
    """What we want to bid, before any marketplace formatting."""
    collection: Collection
    amount: Decimal
    expiration_time: int
    quantity: int = 1


@dataclass
class FormattedBid:
    """Marketplace format response: EIP-712 typed data to sign plus opaque side data for submit."""
    typed_data: Dict[str, Any]
    side_data: Dict[str, Any] = field(default_factory=dict)
