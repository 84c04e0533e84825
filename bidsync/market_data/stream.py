"""
OpenSea Stream (Phoenix channels over websocket) listener for order invalidations.

Protocol:
    -> {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": 0}    every heartbeat_sec
    -> {"topic": "collection:<slug>", "event": "phx_join", "payload": {}, "ref": n}
    <- {"event": "order_invalidate", "payload": {"payload": {"collection": {"slug": ...}, "order_hash": ...}}}

Disconnects reconnect after a fixed delay. Only order_invalidate is consumed.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode

import websockets

from bidsync.core import json_utils
from bidsync.core.models import InvalidationEvent, Marketplace

log = logging.getLogger("bidsync")

HEARTBEAT = {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": 0}


def parse_stream_message(raw: Any, slug_to_contract: Mapping[str, str]) -> Optional[InvalidationEvent]:
    """Extract an InvalidationEvent from one frame, or None if the frame is anything else."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", "ignore")
    try:
        msg = json_utils.loads(raw)
    except (ValueError, TypeError):
        return None
    if not isinstance(msg, dict):
        return None
    outer = msg.get("payload") if isinstance(msg.get("payload"), dict) else {}
    event_name = msg.get("event") or outer.get("event_type") or ""
    if event_name != "order_invalidate":
        return None

    payload = outer.get("payload") if isinstance(outer.get("payload"), dict) else outer
    collection = payload.get("collection")
    slug = collection.get("slug") if isinstance(collection, dict) else None
    order_hash = payload.get("order_hash")
    if not slug or not order_hash:
        return None
    contract = slug_to_contract.get(str(slug).lower())
    if contract is None:
        return None
    return InvalidationEvent(collection=contract, marketplace=Marketplace.OPENSEA, order_id=str(order_hash))


class OpenSeaStream:
    def __init__(
        self,
        url: str,
        api_key: Optional[str],
        slug_to_contract: Mapping[str, str],
        on_invalidation: Callable[[InvalidationEvent], Awaitable[Any]],
        heartbeat_sec: float = 30.0,
        reconnect_sec: float = 5.0,
        metrics: Any = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._slugs: Dict[str, str] = {s.lower(): c.lower() for s, c in slug_to_contract.items()}
        self._on_invalidation = on_invalidation
        self._heartbeat_sec = heartbeat_sec
        self._reconnect_sec = reconnect_sec
        self._metrics = metrics
        self._log = log_event or self._default_log
        self.connected = False

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json_utils.dumps({"event": event, **kwargs}))

    @property
    def endpoint(self) -> str:
        if not self._api_key:
            return self._url
        sep = "&" if "?" in self._url else "?"
        return f"{self._url}{sep}{urlencode({'token': self._api_key})}"

    def join_messages(self) -> list:
        return [
            {"topic": f"collection:{slug}", "event": "phx_join", "payload": {}, "ref": idx + 1}
            for idx, slug in enumerate(sorted(self._slugs))
        ]

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self._session(stop)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log("stream_error", level=logging.WARNING, marketplace="opensea", err=str(exc))
            finally:
                self.connected = False
            if stop.is_set():
                break
            if self._metrics is not None:
                self._metrics.stream_reconnects.labels(marketplace="opensea").inc()
            self._log("stream_reconnect", level=logging.WARNING, marketplace="opensea", delay_sec=self._reconnect_sec)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._reconnect_sec)
            except asyncio.TimeoutError:
                pass

    async def _session(self, stop: asyncio.Event) -> None:
        async with websockets.connect(self.endpoint, ping_interval=None) as ws:
            self.connected = True
            await ws.send(json_utils.dumps(HEARTBEAT))
            for join in self.join_messages():
                await ws.send(json_utils.dumps(join))
            self._log("stream_connected", marketplace="opensea", topics=len(self._slugs))

            async def pinger() -> None:
                while True:
                    await asyncio.sleep(self._heartbeat_sec)
                    await ws.send(json_utils.dumps(HEARTBEAT))

            pinger_task = asyncio.create_task(pinger())
            stop_task = asyncio.create_task(stop.wait())
            try:
                while not stop.is_set():
                    recv_task = asyncio.create_task(ws.recv())
                    done, _ = await asyncio.wait(
                        {recv_task, stop_task, pinger_task}, return_when=asyncio.FIRST_COMPLETED
                    )
                    if recv_task not in done:
                        recv_task.cancel()
                        if pinger_task in done:
                            # Surfaces the send failure that ended the heartbeat
                            pinger_task.result()
                        break
                    await self.handle_frame(recv_task.result())
            finally:
                pinger_task.cancel()
                stop_task.cancel()

    async def handle_frame(self, raw: Any) -> Optional[InvalidationEvent]:
        event = parse_stream_message(raw, self._slugs)
        if event is None:
            return None
        try:
            result = self._on_invalidation(event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            log.exception(json_utils.dumps({
                "event": "invalidation_handler_error",
                "collection": event.collection,
                "marketplace": event.marketplace.value,
                "order_id": event.order_id,
                "err": str(exc),
            }))
        return event
