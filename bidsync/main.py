"""
Entry point: python -m bidsync.main
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys

from bidsync.app import BidEngine
from bidsync.config.collections import load_collections
from bidsync.config.config import Settings
from bidsync.execution.signing import TypedDataSigner
from bidsync.infra.logging_cfg import build_logger, log_event
from bidsync.infra.state_store import RedisStateStore, build_state_store
from bidsync.market_data.clients import build_clients
from bidsync.monitoring.metrics import BidMetrics, start_metrics_server

log = build_logger("bidsync")


async def main() -> None:
    cfg = Settings.load()
    build_logger("bidsync", level=getattr(logging, cfg.log_level, logging.INFO), file_path=cfg.log_file)

    collections = load_collections(cfg=cfg)
    if not collections:
        log.warning(json.dumps({"event": "no_collections", "file": cfg.collections_file}))
        return

    account = cfg.resolve_signer()
    signer = TypedDataSigner(account)
    store = build_state_store(cfg.store_backend, cfg.redis_url)
    if isinstance(store, RedisStateStore):
        # Fail fast on a bad REDIS_URL instead of on the first ledger write
        await store.ping()
    clients = build_clients(cfg, offerer=account.address)
    metrics = BidMetrics()
    start_metrics_server(metrics, cfg.metrics_port)

    engine = BidEngine(cfg, collections, store, clients, signer, metrics=metrics)
    log_event(log, "settings", **cfg.dump())
    log_event(
        log,
        "startup",
        account=account.address,
        collections=[c.slug for c in collections],
        stream=engine.stream is not None,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, engine.stop)
        except NotImplementedError:
            pass

    try:
        await engine.run()
    finally:
        log.info("Closing clients and state store...")
        await engine.close()
        log.info("Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nBid engine stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
