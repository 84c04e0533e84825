"""
Engine wiring: every component is constructed once here and passed by reference.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Mapping, Optional

from bidsync.config.config import Settings
from bidsync.core.models import Collection, Marketplace
from bidsync.execution.operation_queue import OperationQueue
from bidsync.execution.signing import Signer, SigningSubmissionProtocol
from bidsync.infra.state_store import SharedStateStore
from bidsync.market_data.price_monitor import PriceSignalMonitor
from bidsync.market_data.stream import OpenSeaStream
from bidsync.monitoring.metrics import BidMetrics
from bidsync.orchestrator.bid_controller import BidLifecycleController
from bidsync.state.order_ledger import OrderLedger

log = logging.getLogger("bidsync")


class BidEngine:
    def __init__(
        self,
        cfg: Settings,
        collections: List[Collection],
        store: SharedStateStore,
        clients: Mapping[Marketplace, Any],
        signer: Signer,
        metrics: Optional[BidMetrics] = None,
    ) -> None:
        self.cfg = cfg
        self.collections = collections
        self.store = store
        self.clients: Dict[Marketplace, Any] = dict(clients)
        self.metrics = metrics
        self._stop = asyncio.Event()

        self.ledger = OrderLedger(store)
        self.queue = OperationQueue(timeout_sec=cfg.operation_timeout_sec, metrics=metrics)
        self.protocol = SigningSubmissionProtocol(self.clients, signer, metrics=metrics)
        self.controller = BidLifecycleController(
            collections,
            ledger=self.ledger,
            queue=self.queue,
            protocol=self.protocol,
            bid_expiration_sec=cfg.bid_expiration_sec,
            gas_estimate_eth=cfg.gas_estimate_eth,
            metrics=metrics,
        )
        self.queue.bind(self.controller.execute)
        self.monitor = PriceSignalMonitor(
            self.clients,
            collections,
            store,
            on_change=self.controller.on_change,
            on_own_bid_invalidated=self.controller.on_own_bid_invalidated,
            ledger=self.ledger,
            baseline_only=cfg.baseline_only,
            max_signal_price=cfg.max_signal_price,
            fetch_timeout=cfg.fetch_timeout_sec,
            metrics=metrics,
        )
        self.controller.bind_price_source(self.monitor.latest_signal)

        self.stream: Optional[OpenSeaStream] = None
        slugs = {c.slug: c.contract_address for c in collections if Marketplace.OPENSEA in c.markets}
        if cfg.stream_enabled and Marketplace.OPENSEA in self.clients and slugs:
            self.stream = OpenSeaStream(
                cfg.opensea_stream_url,
                cfg.opensea_api_key,
                slugs,
                on_invalidation=self.monitor.handle_invalidation,
                heartbeat_sec=cfg.stream_heartbeat_sec,
                reconnect_sec=cfg.stream_reconnect_sec,
                metrics=metrics,
            )

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def start(self) -> None:
        bids = await self.ledger.all_bids()
        log.info(json.dumps({
            "event": "ledger_rehydrated",
            "bids": len(bids),
            "keys": sorted(f"{b.marketplace.value}:{b.collection}" for b in bids),
        }))
        self.queue.start()
        await self.monitor.prime()

    async def run(self) -> None:
        await self.start()
        try:
            async with asyncio.TaskGroup() as tg:
                for marketplace in sorted({m for c in self.collections for m in c.markets}, key=lambda m: m.value):
                    if marketplace in self.clients:
                        tg.create_task(
                            self.monitor.run(marketplace, self.cfg.poll_interval(marketplace), self._stop),
                            name=f"poll-{marketplace.value}",
                        )
                if self.stream is not None:
                    tg.create_task(self.stream.run(self._stop), name="opensea-stream")
                tg.create_task(self.controller.run_expiry_sweep(self.cfg.expiry_sweep_sec, self._stop), name="expiry-sweep")
        finally:
            # Queued work is dropped; the operation in flight runs to completion
            await self.queue.stop(drain=False)
            log.info(json.dumps({"event": "engine_stopped", "queue": self.queue.stats}))

    async def close(self) -> None:
        for client in self.clients.values():
            try:
                await client.close()
            except Exception as exc:
                log.warning(json.dumps({"event": "client_close_error", "err": str(exc)}))
        await self.store.close()
