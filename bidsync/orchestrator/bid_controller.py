"""
BidLifecycleController: decides what to do about each (collection, marketplace) bid.

Per-key states:

    IDLE ──ChangeEvent──> EVALUATING ──target unchanged / none──> IDLE
                              │
                              └──target differs──> PENDING_UPDATE ──submit done──> IDLE

Decisions are made outside the queue; every ledger mutation happens inside
an operation run by the OperationQueue. Only the controller enqueues.

A ChangeEvent for a key that is not IDLE does not evaluate again: it
schedules at most one RECALC for the key, which runs after the pending
submit in queue order and evaluates from scratch against the ledger as it
stands by then. A RECALC requested while the key is EVALUATING is held back
until that evaluation has enqueued its own operations.
"""

from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from bidsync.core import json_utils
from bidsync.core.errors import InvariantViolation
from bidsync.core.models import (
    Bid,
    BidKey,
    BidStatus,
    ChangeEvent,
    Collection,
    InvalidationEvent,
    Marketplace,
    Operation,
    OperationType,
    PriceSignal,
)
from bidsync.strategy.bid_calculator import decide_target_bid

log = logging.getLogger("bidsync")

PriceSource = Callable[[str, Marketplace], Optional[PriceSignal]]


class KeyState(str, Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    PENDING_UPDATE = "pending_update"


class BidLifecycleController:
    def __init__(
        self,
        collections: Iterable[Collection],
        ledger: Any,
        queue: Any,
        protocol: Any,
        price_source: Optional[PriceSource] = None,
        bid_expiration_sec: int = 86400,
        gas_estimate_eth: Decimal = Decimal("0"),
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._collections: Dict[str, Collection] = {c.contract_address: c for c in collections}
        self._ledger = ledger
        self._queue = queue
        self._protocol = protocol
        self._price_source = price_source
        self._bid_expiration_sec = bid_expiration_sec
        self._gas = gas_estimate_eth
        self._metrics = metrics
        self._log = log_event or self._default_log
        self._clock = clock

        self._states: Dict[BidKey, KeyState] = {}
        self._pending_recalc: Dict[BidKey, Operation] = {}
        self._deferred_recalc: Dict[BidKey, Dict[str, Any]] = {}

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json_utils.dumps({"event": event, **kwargs}))

    def bind_price_source(self, price_source: PriceSource) -> None:
        self._price_source = price_source

    def state(self, collection: str, marketplace: Marketplace) -> KeyState:
        return self._states.get((collection, marketplace), KeyState.IDLE)

    def _set_state(self, key: BidKey, state: KeyState) -> None:
        if state is KeyState.IDLE:
            self._states.pop(key, None)
        else:
            self._states[key] = state

    # -------------------------------------------------------------------------
    # Inputs
    # -------------------------------------------------------------------------

    def affected_keys(self, collection: str, marketplace: Marketplace) -> List[Tuple[Collection, Marketplace]]:
        """The key that changed plus every key of the same collection priced against it."""
        coll = self._collections.get(collection)
        if coll is None:
            return []
        keys = []
        if marketplace in coll.markets:
            keys.append((coll, marketplace))
        for mp, params in coll.markets.items():
            if mp is not marketplace and params.reference is marketplace:
                keys.append((coll, mp))
        return keys

    async def on_change(self, event: ChangeEvent) -> None:
        """Evaluate every affected key. A failing key does not stop the others; the first
        failure is re-raised afterwards so the monitor retries the change."""
        first_error: Optional[Exception] = None
        for collection, marketplace in self.affected_keys(event.collection, event.marketplace):
            try:
                await self.evaluate(collection, marketplace, trigger=event.marketplace)
            except Exception as exc:
                self._log(
                    "evaluate_error",
                    level=logging.ERROR,
                    collection=collection.contract_address,
                    marketplace=marketplace.value,
                    trigger=event.marketplace.value,
                    err=str(exc),
                )
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    async def on_own_bid_invalidated(self, event: InvalidationEvent) -> None:
        coll = self._collections.get(event.collection)
        if coll is None or event.marketplace not in coll.markets:
            return
        self._log(
            "own_bid_invalidated",
            level=logging.WARNING,
            collection=event.collection,
            marketplace=event.marketplace.value,
            order_id=event.order_id,
        )
        self._schedule_recalc(coll, event.marketplace, retire=BidStatus.INVALID, quote_id=event.order_id)

    async def sweep_expired(self, now: Optional[float] = None) -> int:
        """Schedule a retiring recalc for every ledger bid past its expiration."""
        now = self._clock() if now is None else now
        scheduled = 0
        for bid in await self._ledger.expired(now):
            coll = self._collections.get(bid.collection)
            if coll is None or bid.marketplace not in coll.markets:
                continue
            self._log("bid_expired", collection=bid.collection, marketplace=bid.marketplace.value,
                      amount=str(bid.amount), expiration_time=bid.expiration_time)
            if self._schedule_recalc(coll, bid.marketplace, retire=BidStatus.EXPIRED, quote_id=bid.quote_id):
                scheduled += 1
        return scheduled

    async def run_expiry_sweep(self, interval: float, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.sweep_expired()
            except Exception as exc:
                log.exception(json_utils.dumps({"event": "expiry_sweep_error", "err": str(exc)}))
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    async def evaluate(
        self,
        collection: Collection,
        marketplace: Marketplace,
        trigger: Optional[Marketplace] = None,
    ) -> List[Operation]:
        key: BidKey = (collection.contract_address, marketplace)
        if self.state(*key) is not KeyState.IDLE:
            self._schedule_recalc(collection, marketplace)
            return []

        self._set_state(key, KeyState.EVALUATING)
        ops: List[Operation] = []
        try:
            ops = await self._plan(collection, marketplace, trigger=trigger)
        finally:
            if key in self._pending_recalc or any(op.type is OperationType.SUBMIT for op in ops):
                self._set_state(key, KeyState.PENDING_UPDATE)
            else:
                self._set_state(key, KeyState.IDLE)
            if ops:
                self._queue.enqueue_many(ops)
            deferred = self._deferred_recalc.pop(key, None)
            if deferred is not None:
                self._schedule_recalc(collection, marketplace, **deferred)
        return ops

    async def _plan(
        self,
        collection: Collection,
        marketplace: Marketplace,
        trigger: Optional[Marketplace] = None,
    ) -> List[Operation]:
        """Compare the calculator's target with the ledger and return the operations to run."""
        params = collection.params(marketplace)
        if params is None:
            return []
        contract = collection.contract_address
        ctx = {"collection": contract, "marketplace": marketplace.value}
        if trigger is not None:
            ctx["trigger"] = trigger.value
        now = self._clock()

        own = await self._ledger.get(contract, marketplace)
        live = own if own is not None and own.is_live(now) else None

        competitor_signal = self._signal(contract, marketplace)
        if competitor_signal is None:
            self._log("competitor_unknown", level=logging.DEBUG, **ctx)
            return []
        competitor = competitor_signal.parsed_price
        if live is not None and self._is_own_top(competitor_signal, live):
            # We are top of book; price against ourselves so the target holds instead of climbing
            competitor = live.amount - params.outbid_increment

        reference: Optional[Decimal] = None
        if params.reference is not None:
            reference_signal = self._signal(contract, params.reference)
            if reference_signal is None:
                self._log("reference_missing", level=logging.WARNING, reference=params.reference.value, **ctx)
                return []
            reference = reference_signal.parsed_price

        decision = decide_target_bid(marketplace, competitor, reference, params)
        target = decision.target
        self._log(
            "bid_decision",
            competitor=str(competitor) if competitor is not None else None,
            reference=str(reference) if reference is not None else None,
            cap=str(decision.cap) if decision.cap is not None else None,
            target=str(target) if target is not None else None,
            reason=decision.reason,
            total_cost=str(target + self._gas) if target is not None else None,
            gas_estimate=str(self._gas),
            current=str(own.amount) if own is not None else None,
            **ctx,
        )

        if target is None:
            if own is None:
                return []
            return [self._op(OperationType.CANCEL, contract, marketplace, reason=decision.reason)]

        if live is not None and live.amount == target:
            self._log("bid_unchanged", amount=str(target), **ctx)
            return []

        ops = []
        if own is not None:
            reason = "superseded" if live is not None else "stale"
            ops.append(self._op(OperationType.CANCEL, contract, marketplace, reason=reason))
        ops.append(self._op(OperationType.SUBMIT, contract, marketplace, amount=str(target)))
        return ops

    @staticmethod
    def _is_own_top(signal: PriceSignal, live: Bid) -> bool:
        # Pooled books carry no order id; an equal price is taken to be ours
        if signal.order_id:
            return signal.order_id == live.quote_id
        return signal.parsed_price is not None and signal.parsed_price == live.amount

    def _signal(self, collection: str, marketplace: Marketplace) -> Optional[PriceSignal]:
        if self._price_source is None:
            return None
        return self._price_source(collection, marketplace)

    def _op(self, op_type: OperationType, collection: str, marketplace: Marketplace, **payload: Any) -> Operation:
        return Operation(type=op_type, collection=collection, marketplace=marketplace, payload=payload)

    def _schedule_recalc(
        self,
        collection: Collection,
        marketplace: Marketplace,
        retire: Optional[BidStatus] = None,
        quote_id: Optional[str] = None,
    ) -> bool:
        """Enqueue one RECALC for the key unless one is already waiting. Returns True if enqueued."""
        key: BidKey = (collection.contract_address, marketplace)
        ctx = {"collection": collection.contract_address, "marketplace": marketplace.value}
        waiting = self._pending_recalc.get(key)
        if waiting is not None:
            if retire is not None:
                waiting.payload.update(retire=retire.value, quote_id=quote_id)
            self._log("recalc_coalesced", level=logging.DEBUG, **ctx)
            return False
        if self.state(*key) is KeyState.EVALUATING:
            deferred = self._deferred_recalc.setdefault(key, {})
            if retire is not None:
                deferred.update(retire=retire, quote_id=quote_id)
            self._log("recalc_deferred", level=logging.DEBUG, **ctx)
            return True
        payload: Dict[str, Any] = {}
        if retire is not None:
            payload.update(retire=retire.value, quote_id=quote_id)
        op = self._op(OperationType.RECALC, collection.contract_address, marketplace, **payload)
        self._pending_recalc[key] = op
        if self.state(*key) is KeyState.IDLE:
            self._set_state(key, KeyState.PENDING_UPDATE)
        self._queue.enqueue(op)
        self._log("recalc_scheduled", retire=payload.get("retire"), **ctx)
        return True

    # -------------------------------------------------------------------------
    # Execution (called by the OperationQueue worker, one at a time)
    # -------------------------------------------------------------------------

    async def execute(self, op: Operation) -> None:
        if op.type is OperationType.CANCEL:
            await self._run_cancel(op)
        elif op.type is OperationType.SUBMIT:
            await self._run_submit(op)
        elif op.type is OperationType.RECALC:
            await self._run_recalc(op)
        else:
            raise ValueError(f"unknown operation type: {op.type}")

    async def _run_cancel(self, op: Operation) -> None:
        ctx = op.describe()
        bid = await self._ledger.get(op.collection, op.marketplace)
        if bid is None:
            self._log("cancel_noop", level=logging.DEBUG, **ctx)
            return
        collection = self._collections[op.collection]
        reason = op.payload.get("reason", "cancel")

        if bid.is_expired(self._clock()):
            await self._retire(op.collection, op.marketplace, BidStatus.EXPIRED, "expired")
            return
        if not self._protocol.supports_cancel(op.marketplace):
            # No cancel endpoint: forget the bid and let it lapse at its expiration
            await self._retire(op.collection, op.marketplace, BidStatus.CANCELLED, "superseded")
            self._log("bid_left_to_expire", amount=str(bid.amount), expiration_time=bid.expiration_time, **ctx)
            return

        # SubmissionError propagates with the ledger entry intact
        await self._protocol.cancel(collection, op.marketplace, bid)
        await self._retire(op.collection, op.marketplace, BidStatus.CANCELLED, reason)

    async def _run_submit(self, op: Operation) -> None:
        key = op.key
        ctx = op.describe()
        try:
            now = self._clock()
            existing = await self._ledger.get(op.collection, op.marketplace)
            if existing is not None and existing.is_live(now):
                if self._metrics is not None:
                    self._metrics.invariant_violations.labels(marketplace=op.marketplace.value).inc()
                raise InvariantViolation(
                    "live bid already exists for key",
                    collection=op.collection,
                    marketplace=op.marketplace.value,
                    existing_amount=str(existing.amount),
                    existing_quote_id=existing.quote_id,
                )
            if existing is not None:
                await self._retire(op.collection, op.marketplace, BidStatus.EXPIRED, "expired")

            amount = Decimal(str(op.payload["amount"]))
            expiration = int(now) + self._bid_expiration_sec
            bid: Bid = await self._protocol.submit(self._collections[op.collection], op.marketplace, amount, expiration)
            await self._ledger.put(op.collection, op.marketplace, bid)
            if self._metrics is not None:
                self._metrics.active_bid_amount.labels(collection=op.collection, marketplace=op.marketplace.value).set(
                    float(bid.amount)
                )
            self._log(
                "bid_placed",
                amount=str(bid.amount),
                total_cost=str(bid.amount + self._gas),
                quote_id=bid.quote_id,
                expiration_time=bid.expiration_time,
                **ctx,
            )
        finally:
            self._set_state(key, KeyState.PENDING_UPDATE if key in self._pending_recalc else KeyState.IDLE)

    async def _run_recalc(self, op: Operation) -> None:
        key = op.key
        if self._pending_recalc.get(key) is op:
            del self._pending_recalc[key]
        collection = self._collections.get(op.collection)
        if collection is None:
            self._set_state(key, KeyState.IDLE)
            return

        retire = op.payload.get("retire")
        if retire:
            bid = await self._ledger.get(op.collection, op.marketplace)
            expected = op.payload.get("quote_id")
            if bid is not None and (expected is None or bid.quote_id == expected):
                await self._retire(op.collection, op.marketplace, BidStatus(retire), retire)

        self._set_state(key, KeyState.IDLE)
        await self.evaluate(collection, op.marketplace)

    async def _retire(self, collection: str, marketplace: Marketplace, status: BidStatus, reason: str) -> None:
        await self._ledger.remove(collection, marketplace, status=status)
        if self._metrics is not None:
            self._metrics.bids_cancelled.labels(marketplace=marketplace.value, reason=reason).inc()
            self._metrics.active_bid_amount.labels(collection=collection, marketplace=marketplace.value).set(0)
