"""
Pytest configuration and shared fakes.
Adds the repo root to sys.path so tests can import bidsync without installing it.
"""

import sys
import time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from bidsync.core.errors import SubmissionError  # noqa: E402
from bidsync.core.models import (  # noqa: E402
    BestOffer,
    Bid,
    BidStatus,
    Collection,
    FormattedBid,
    Marketplace,
    MarketParams,
    PriceSignal,
)
from bidsync.infra.state_store import MemoryStateStore  # noqa: E402
from bidsync.state.order_ledger import OrderLedger  # noqa: E402

D = Decimal

OPENSEA_PARAMS = MarketParams(
    min_bid=D("0.01"),
    max_bid=D("100"),
    margin=D("0.005"),
    tick_size=D("0.00001"),
    outbid_increment=D("0.00001"),
    reference=Marketplace.BLUR,
    supports_cancel=True,
)
BLUR_PARAMS = MarketParams(
    min_bid=D("0.01"),
    max_bid=D("100"),
    margin=D("0.005"),
    tick_size=D("0.01"),
    outbid_increment=D("0.01"),
    reference=Marketplace.OPENSEA,
    supports_cancel=False,
)

BLUR_TYPED_DATA = {
    "domain": {"name": "Blur Exchange", "version": "1.0", "chainId": 1,
               "verifyingContract": "0x000000000000ad05ccc4f10045630fb830b95127"},
    "types": {
        "Order": [
            {"name": "trader", "type": "address"},
            {"name": "price", "type": "uint256"},
            {"name": "expirationTime", "type": "uint256"},
            {"name": "salt", "type": "uint256"},
        ]
    },
    "message": {
        "trader": "0x8619ad8b126cc45d78c9d1f04c9cb2451d3e5d52",
        "price": {"type": "BigNumber", "hex": "0x02a303fe4b530000"},
        "expirationTime": {"type": "BigNumber", "hex": "0x6553f100"},
        "salt": "12345",
    },
}


def make_collection(contract: str = "0xaaa", slug: str = "alpha", markets: Optional[Dict] = None) -> Collection:
    if markets is None:
        markets = {Marketplace.OPENSEA: OPENSEA_PARAMS, Marketplace.BLUR: BLUR_PARAMS}
    return Collection(contract_address=contract, slug=slug, markets=markets)


def make_signal(marketplace: Marketplace, contract: str, price: Optional[str], order_id: Optional[str] = None) -> PriceSignal:
    return PriceSignal(
        marketplace=marketplace,
        collection=contract,
        raw_value=price or "",
        parsed_price=D(price) if price is not None else None,
        order_id=order_id,
    )


def make_bid(
    contract: str = "0xaaa",
    marketplace: Marketplace = Marketplace.OPENSEA,
    amount: str = "0.1",
    quote_id: Optional[str] = "q-old",
    expires_in: float = 3600,
    status: BidStatus = BidStatus.ACTIVE,
) -> Bid:
    return Bid(
        collection=contract,
        marketplace=marketplace,
        amount=D(amount),
        expiration_time=int(time.time() + expires_in),
        quote_id=quote_id,
        status=status,
    )


class FakeMarketplaceClient:
    """In-memory marketplace: canned best offers, counted submits and cancels."""

    def __init__(self, marketplace: Marketplace, supports_cancel: bool = True):
        self.marketplace = marketplace
        self.supports_cancel = supports_cancel
        self.offers: Dict[str, Any] = {}
        self.fetches: List[str] = []
        self.format_fail: set = set()
        self.cancel_fail = False
        self.submitted: List[Dict[str, Any]] = []
        self.cancelled: List[Optional[str]] = []
        self.closed = False
        self._seq = 0

    async def best_offer(self, collection: Collection) -> BestOffer:
        self.fetches.append(collection.contract_address)
        offer = self.offers.get(collection.contract_address, BestOffer.empty())
        if isinstance(offer, Exception):
            raise offer
        return offer

    async def format_bid(self, descriptor) -> FormattedBid:
        if descriptor.collection.contract_address in self.format_fail:
            raise SubmissionError("format rejected", step="format",
                                  collection=descriptor.collection.contract_address,
                                  marketplace=self.marketplace.value)
        return FormattedBid(typed_data=BLUR_TYPED_DATA, side_data={"contract": descriptor.collection.contract_address})

    async def submit_bid(self, descriptor, side_data, signature) -> str:
        self._seq += 1
        self.submitted.append({"amount": descriptor.amount, "side_data": side_data, "signature": signature})
        return f"{self.marketplace.value}-q{self._seq}"

    async def cancel_bid(self, collection, bid) -> None:
        if self.cancel_fail:
            raise SubmissionError("cancel rejected", step="cancel")
        self.cancelled.append(bid.quote_id)

    async def close(self) -> None:
        self.closed = True


class FakeSigner:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.payloads: List[Dict[str, Any]] = []

    async def sign(self, typed_data):
        if self.fail:
            raise RuntimeError("hardware wallet unplugged")
        self.payloads.append(typed_data)
        return "0x" + "ab" * 65


class FakeProtocol:
    """Stands in for SigningSubmissionProtocol inside controller tests."""

    def __init__(self):
        self.cancel_support = {Marketplace.OPENSEA: True, Marketplace.BLUR: False}
        self.submit_fail: set = set()
        self.cancel_fail = False
        self.submits: List[tuple] = []
        self.cancels: List[tuple] = []
        self._seq = 0

    def supports_cancel(self, marketplace: Marketplace) -> bool:
        return self.cancel_support.get(marketplace, False)

    async def submit(self, collection, marketplace, amount, expiration_time) -> Bid:
        if collection.contract_address in self.submit_fail:
            raise SubmissionError("format rejected", step="format",
                                  collection=collection.contract_address, marketplace=marketplace.value)
        self._seq += 1
        self.submits.append((collection.contract_address, marketplace, amount))
        return Bid(
            collection=collection.contract_address,
            marketplace=marketplace,
            amount=amount,
            expiration_time=expiration_time,
            quote_id=f"q-{self._seq}",
            status=BidStatus.ACTIVE,
        )

    async def cancel(self, collection, marketplace, bid) -> bool:
        if self.cancel_fail:
            raise SubmissionError("cancel rejected", step="cancel",
                                  collection=collection.contract_address, marketplace=marketplace.value)
        self.cancels.append((collection.contract_address, marketplace, bid.quote_id))
        return True


class RecordingQueue:
    """Captures enqueued operations without running them."""

    def __init__(self):
        self.ops = []

    def enqueue(self, op) -> None:
        self.ops.append(op)

    def enqueue_many(self, ops) -> None:
        self.ops.extend(ops)


class EventLog:
    """log_event stand-in that keeps every structured event."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    def __call__(self, event: str, level: int = 0, **kwargs) -> None:
        self.events.append({"event": event, **kwargs})

    def named(self, name: str) -> List[Dict[str, Any]]:
        return [e for e in self.events if e["event"] == name]


@pytest.fixture
def store():
    return MemoryStateStore()


@pytest.fixture
def ledger(store):
    return OrderLedger(store)


@pytest.fixture
def event_log():
    return EventLog()


@pytest.fixture
def fakes():
    """Namespace of fake classes and builders for tests."""
    class _Fakes:
        Client = FakeMarketplaceClient
        Signer = FakeSigner
        Protocol = FakeProtocol
        Queue = RecordingQueue
        collection = staticmethod(make_collection)
        signal = staticmethod(make_signal)
        bid = staticmethod(make_bid)
        opensea_params = OPENSEA_PARAMS
        blur_params = BLUR_PARAMS
        blur_typed_data = BLUR_TYPED_DATA
    return _Fakes
