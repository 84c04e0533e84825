"""
OrderLedger: authoritative current bid per (collection, marketplace).

Backed by the shared state store under `bid:<marketplace>:<collection>`.
Every put and every remove of an existing entry publishes
`{collection, marketplace, bid}` on the `bid_update` channel so other
processes see the change.

The ledger performs no locking. All mutation must happen from an operation
running in the OperationQueue slot; reads may happen anywhere and may be
stale.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, List, Optional

from bidsync.core import json_utils
from bidsync.core.models import Bid, BidStatus, Marketplace
from bidsync.infra.state_store import SharedStateStore

log = logging.getLogger("bidsync")

BID_PREFIX = "bid:"
BID_UPDATE_CHANNEL = "bid_update"


def bid_key(collection: str, marketplace: Marketplace) -> str:
    return f"{BID_PREFIX}{marketplace.value}:{collection}"


class OrderLedger:
    def __init__(
        self,
        store: SharedStateStore,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._store = store
        self._log = log_event or self._default_log
        self._stats = {"puts": 0, "removes": 0, "corrupt_entries": 0}

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(json_utils.dumps({"event": event, **kwargs}))

    @property
    def stats(self) -> dict:
        return dict(self._stats)

    async def get(self, collection: str, marketplace: Marketplace) -> Optional[Bid]:
        raw = await self._store.get(bid_key(collection, marketplace))
        if not raw:
            return None
        try:
            return Bid.from_dict(json_utils.loads(raw))
        except (ValueError, KeyError, TypeError, ArithmeticError) as exc:
            # Another writer left something we cannot read; treat the key as empty
            self._stats["corrupt_entries"] += 1
            self._log("ledger_corrupt_entry", collection=collection, marketplace=marketplace.value, err=str(exc))
            return None

    async def put(self, collection: str, marketplace: Marketplace, bid: Bid) -> None:
        if bid.collection != collection or bid.marketplace is not marketplace:
            raise ValueError(
                f"bid for {bid.marketplace.value}:{bid.collection} cannot be stored under "
                f"{marketplace.value}:{collection}"
            )
        data = bid.to_dict()
        await self._store.set(bid_key(collection, marketplace), json_utils.dumps(data))
        self._stats["puts"] += 1
        await self._publish(collection, marketplace, data)
        self._log(
            "ledger_put",
            collection=collection,
            marketplace=marketplace.value,
            amount=str(bid.amount),
            status=bid.status.value,
            quote_id=bid.quote_id,
        )

    async def remove(
        self,
        collection: str,
        marketplace: Marketplace,
        status: BidStatus = BidStatus.CANCELLED,
    ) -> Optional[Bid]:
        """Drop the entry, recording the terminal status it left with. Returns the removed bid."""
        previous = await self.get(collection, marketplace)
        await self._store.delete(bid_key(collection, marketplace))
        if previous is None:
            return None
        previous.status = status
        self._stats["removes"] += 1
        await self._publish(collection, marketplace, None)
        self._log(
            "ledger_remove",
            collection=collection,
            marketplace=marketplace.value,
            status=status.value,
            amount=str(previous.amount),
        )
        return previous

    async def all_bids(self) -> List[Bid]:
        """Rehydrate every ledger entry from the store."""
        bids: List[Bid] = []
        for key in await self._store.keys(BID_PREFIX):
            try:
                _, market_raw, collection = key.split(":", 2)
                marketplace = Marketplace.parse(market_raw)
            except ValueError:
                continue
            bid = await self.get(collection, marketplace)
            if bid is not None:
                bids.append(bid)
        return bids

    async def expired(self, now: Optional[float] = None) -> List[Bid]:
        now = time.time() if now is None else now
        return [b for b in await self.all_bids() if b.is_expired(now)]

    async def _publish(self, collection: str, marketplace: Marketplace, bid: Optional[dict]) -> None:
        message = json_utils.dumps({"collection": collection, "marketplace": marketplace.value, "bid": bid})
        await self._store.publish(BID_UPDATE_CHANNEL, message)
