"""
PriceSignalMonitor: turns noisy marketplace reads into ChangeEvents.

Change detection is exact string equality on the raw value each marketplace
returns. Any byte difference is a change; a repeat is never one. Parsed
prices ride along on the event but are never compared.

Startup:
    prime() takes one snapshot of every key. For baseline-only marketplaces
    the snapshot is recorded and not acted on; every other key's first
    observation is a change. Keys first seen after prime() always act.

Push invalidations:
    handle_invalidation() refetches a key only when the invalidated order id
    is the competing order currently recorded for it. An id matching our own
    ledger bid is forwarded to on_own_bid_invalidated instead.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from bidsync.core import json_utils
from bidsync.core.errors import BidSyncError, TransientFetchError, ValidationError
from bidsync.core.models import (
    BestOffer,
    BidKey,
    ChangeEvent,
    Collection,
    InvalidationEvent,
    Marketplace,
    PriceSignal,
)
from bidsync.infra.state_store import SharedStateStore

log = logging.getLogger("bidsync")

PRICE_PREFIX = "price:"

ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]
InvalidationHandler = Callable[[InvalidationEvent], Awaitable[None]]


def price_key(collection: str, marketplace: Marketplace) -> str:
    return f"{PRICE_PREFIX}{marketplace.value}:{collection}"


class PriceSignalMonitor:
    def __init__(
        self,
        clients: Mapping[Marketplace, Any],
        collections: Iterable[Collection],
        store: SharedStateStore,
        on_change: ChangeHandler,
        on_own_bid_invalidated: Optional[InvalidationHandler] = None,
        ledger: Any = None,
        baseline_only: FrozenSet[Marketplace] = frozenset(),
        max_signal_price: Decimal = Decimal("1000"),
        fetch_timeout: float = 10.0,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._clients = dict(clients)
        self._collections: Dict[str, Collection] = {c.contract_address: c for c in collections}
        self._store = store
        self._on_change = on_change
        self._on_own_bid_invalidated = on_own_bid_invalidated
        self._ledger = ledger
        self._baseline_only = frozenset(baseline_only)
        self._max_price = max_signal_price
        self._fetch_timeout = fetch_timeout
        self._metrics = metrics
        self._log = log_event or self._default_log

        self._last_raw: Dict[BidKey, str] = {}
        self._signals: Dict[BidKey, PriceSignal] = {}
        self._primed = False

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json_utils.dumps({"event": event, **kwargs}))

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def watched(self, marketplace: Optional[Marketplace] = None) -> List[Tuple[Collection, Marketplace]]:
        """Every (collection, marketplace) pair that is configured and has a client."""
        out = []
        for collection in self._collections.values():
            for mp in collection.markets:
                if mp in self._clients and (marketplace is None or mp is marketplace):
                    out.append((collection, mp))
        return out

    def collection(self, contract_address: str) -> Optional[Collection]:
        return self._collections.get(contract_address.lower())

    def latest_signal(self, collection: str, marketplace: Marketplace) -> Optional[PriceSignal]:
        return self._signals.get((collection, marketplace))

    def latest_price(self, collection: str, marketplace: Marketplace) -> Optional[Decimal]:
        signal = self._signals.get((collection, marketplace))
        return signal.parsed_price if signal else None

    @property
    def primed(self) -> bool:
        return self._primed

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def prime(self) -> List[ChangeEvent]:
        """Startup snapshot. Baseline-only marketplaces are recorded without acting."""
        events: List[ChangeEvent] = []
        # Baselines first so acting keys see their reference price on the first evaluation
        pairs = sorted(self.watched(), key=lambda pair: pair[1] not in self._baseline_only)
        offers = await asyncio.gather(*(self._fetch(c, mp) for c, mp in pairs), return_exceptions=True)
        for (collection, mp), offer in zip(pairs, offers):
            act = mp not in self._baseline_only
            event = await self._process(collection, mp, offer, act=act)
            if event is not None:
                events.append(event)
        self._primed = True
        self._log(
            "monitor_primed",
            keys=len(self._last_raw),
            baseline_only=sorted(m.value for m in self._baseline_only),
            changes=len(events),
        )
        return events

    async def poll_once(self, marketplace: Optional[Marketplace] = None) -> List[ChangeEvent]:
        """One fetch of every watched key (optionally one marketplace). Returns emitted events."""
        pairs = self.watched(marketplace)
        offers = await asyncio.gather(*(self._fetch(c, mp) for c, mp in pairs), return_exceptions=True)
        events: List[ChangeEvent] = []
        for (collection, mp), offer in zip(pairs, offers):
            event = await self._process(collection, mp, offer)
            if event is not None:
                events.append(event)
        return events

    async def refresh(self, collection: Collection, marketplace: Marketplace) -> Optional[ChangeEvent]:
        """Refetch a single key out of band."""
        try:
            offer: Any = await self._fetch(collection, marketplace)
        except BidSyncError as exc:
            offer = exc
        return await self._process(collection, marketplace, offer)

    async def run(self, marketplace: Marketplace, interval: float, stop: Optional[asyncio.Event] = None) -> None:
        """Poll loop for one marketplace until stop is set."""
        stop = stop or asyncio.Event()
        self._log("poll_loop_started", marketplace=marketplace.value, interval_sec=interval)
        while not stop.is_set():
            await self.poll_once(marketplace)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        self._log("poll_loop_stopped", marketplace=marketplace.value)

    async def _fetch(self, collection: Collection, marketplace: Marketplace) -> BestOffer:
        client = self._clients[marketplace]
        try:
            return await asyncio.wait_for(client.best_offer(collection), timeout=self._fetch_timeout)
        except asyncio.TimeoutError:
            raise TransientFetchError(
                f"best offer fetch timed out after {self._fetch_timeout}s",
                collection=collection.contract_address,
                marketplace=marketplace.value,
            ) from None

    async def _process(
        self,
        collection: Collection,
        marketplace: Marketplace,
        offer: Any,
        act: bool = True,
    ) -> Optional[ChangeEvent]:
        """Observe one fetch result; every failure stays inside this key."""
        ctx = {"collection": collection.contract_address, "marketplace": marketplace.value}
        if isinstance(offer, BaseException):
            if not isinstance(offer, Exception):
                raise offer
            if self._metrics is not None:
                self._metrics.fetch_errors.labels(marketplace=marketplace.value).inc()
            details = offer.to_log() if isinstance(offer, BidSyncError) else {"err": str(offer), **ctx}
            self._log("fetch_error", level=logging.WARNING, **{**details, **ctx})
            return None
        try:
            return await self.observe(collection, marketplace, offer, act=act)
        except ValidationError as exc:
            if self._metrics is not None:
                self._metrics.signal_validation_errors.labels(marketplace=marketplace.value).inc()
            self._log("signal_invalid", level=logging.WARNING, **exc.to_log())
        except Exception as exc:
            log.exception(json_utils.dumps({"event": "signal_handler_error", "err": str(exc), **ctx}))
        return None

    # -------------------------------------------------------------------------
    # Change detection
    # -------------------------------------------------------------------------

    def validate(self, collection: Collection, marketplace: Marketplace, offer: BestOffer) -> Optional[Decimal]:
        """Parsed price for offer, None for "no competing offer". Raises ValidationError."""
        ctx = {"collection": collection.contract_address, "marketplace": marketplace.value}
        if offer.raw == "":
            return None
        price = offer.price
        if price is None:
            raise ValidationError("unparseable price in non-empty offer", raw=offer.raw[:200], **ctx)
        if not price.is_finite() or price <= 0:
            raise ValidationError(f"non-positive price {price}", **ctx)
        if price > self._max_price:
            raise ValidationError(f"price {price} above sanity ceiling {self._max_price}", **ctx)
        return price

    async def observe(
        self,
        collection: Collection,
        marketplace: Marketplace,
        offer: BestOffer,
        act: bool = True,
    ) -> Optional[ChangeEvent]:
        key: BidKey = (collection.contract_address, marketplace)
        if self._metrics is not None:
            self._metrics.signals_observed.labels(marketplace=marketplace.value).inc()

        previous = self._last_raw.get(key)
        if previous is not None and previous == offer.raw:
            return None

        # Raises before the last-seen raw is advanced, so the next tick re-checks
        price = self.validate(collection, marketplace, offer)
        signal = PriceSignal(
            marketplace=marketplace,
            collection=collection.contract_address,
            raw_value=offer.raw,
            parsed_price=price,
            order_id=offer.order_id,
        )
        previous_signal = self._signals.get(key)
        self._last_raw[key] = offer.raw
        self._signals[key] = signal
        try:
            return await self._publish_signal(collection, marketplace, signal, act=act, first=previous is None)
        except BaseException:
            # Forget this raw so the next tick treats it as a change again
            self._restore(key, previous, previous_signal)
            raise

    async def _publish_signal(
        self,
        collection: Collection,
        marketplace: Marketplace,
        signal: PriceSignal,
        act: bool,
        first: bool,
    ) -> Optional[ChangeEvent]:
        ctx = {"collection": collection.contract_address, "marketplace": marketplace.value}
        price = signal.parsed_price
        await self._store.set(price_key(collection.contract_address, marketplace), json_utils.dumps(signal.to_dict()))

        if not act:
            self._log("signal_baseline", price=str(price) if price is not None else None, **ctx)
            return None

        self._log(
            "signal_first_seen" if first else "signal_changed",
            price=str(price) if price is not None else None,
            order_id=signal.order_id,
            **ctx,
        )

        if await self._is_own_bid(signal):
            self._log("signal_own_bid", order_id=signal.order_id, price=str(price), **ctx)
            return None

        event = ChangeEvent(collection=collection.contract_address, marketplace=marketplace, new_parsed_price=price)
        await self._dispatch(self._on_change, event)
        if self._metrics is not None:
            self._metrics.change_events.labels(marketplace=marketplace.value).inc()
        return event

    def _restore(self, key: BidKey, raw: Optional[str], signal: Optional[PriceSignal]) -> None:
        if raw is None:
            self._last_raw.pop(key, None)
        else:
            self._last_raw[key] = raw
        if signal is None:
            self._signals.pop(key, None)
        else:
            self._signals[key] = signal

    async def _is_own_bid(self, signal: PriceSignal) -> bool:
        """True when the top competing offer is our own live ledger bid.

        Marketplaces that expose order ids are matched by id. Pooled books
        without ids (Blur bid levels) are matched by price: a top level equal
        to our live amount is treated as ours.
        """
        if self._ledger is None or signal.parsed_price is None:
            return False
        bid = await self._ledger.get(signal.collection, signal.marketplace)
        if bid is None or not bid.is_live():
            return False
        if signal.order_id:
            return bid.quote_id == signal.order_id
        return bid.amount == signal.parsed_price

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    async def handle_invalidation(self, event: InvalidationEvent) -> str:
        """Returns the outcome: unknown_collection, own_bid, stale or refetched."""
        ctx = {
            "collection": event.collection,
            "marketplace": event.marketplace.value,
            "order_id": event.order_id,
        }
        outcome = await self._handle_invalidation(event)
        if self._metrics is not None:
            self._metrics.invalidations.labels(marketplace=event.marketplace.value, outcome=outcome).inc()
        self._log("invalidation", level=logging.DEBUG if outcome == "stale" else logging.INFO, outcome=outcome, **ctx)
        return outcome

    async def _handle_invalidation(self, event: InvalidationEvent) -> str:
        collection = self.collection(event.collection)
        if collection is None or event.marketplace not in collection.markets:
            return "unknown_collection"

        if self._ledger is not None:
            own = await self._ledger.get(collection.contract_address, event.marketplace)
            if own is not None and own.quote_id and own.quote_id == event.order_id:
                if self._on_own_bid_invalidated is not None:
                    await self._dispatch(self._on_own_bid_invalidated, event)
                return "own_bid"

        signal = self._signals.get((collection.contract_address, event.marketplace))
        if signal is None or signal.order_id != event.order_id:
            return "stale"

        await self.refresh(collection, event.marketplace)
        return "refetched"

    async def _dispatch(self, handler: Callable[[Any], Any], event: Any) -> None:
        result = handler(event)
        if inspect.isawaitable(result):
            await result
