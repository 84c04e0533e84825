"""
Tests for the OpenSea Stream listener - frame parsing, joins and reconnects.
"""

import asyncio
import json

import pytest

from bidsync.core.models import InvalidationEvent, Marketplace
from bidsync.market_data import stream as stream_mod
from bidsync.market_data.stream import HEARTBEAT, OpenSeaStream, parse_stream_message

SLUGS = {"alpha": "0xaaa", "beta": "0xbbb"}


def frame(slug="alpha", order_hash="0xh1", event="order_invalidate", nested=True):
    inner = {"collection": {"slug": slug}, "order_hash": order_hash}
    if nested:
        return json.dumps({"event": event, "payload": {"event_type": event, "payload": inner}})
    return json.dumps({"event": event, "payload": inner})


class TestParse:
    def test_nested_payload(self):
        event = parse_stream_message(frame(), SLUGS)
        assert event == InvalidationEvent("0xaaa", Marketplace.OPENSEA, "0xh1")

    def test_flat_payload_and_bytes(self):
        event = parse_stream_message(frame(nested=False).encode(), SLUGS)
        assert event.order_id == "0xh1"

    def test_event_type_only_in_payload(self):
        raw = json.dumps({"payload": {"event_type": "order_invalidate",
                                      "payload": {"collection": {"slug": "beta"}, "order_hash": "h2"}}})
        assert parse_stream_message(raw, SLUGS).collection == "0xbbb"

    @pytest.mark.parametrize("raw", [
        "not json",
        "[]",
        frame(event="item_listed"),
        frame(slug="unknown"),
        frame(order_hash=""),
        json.dumps({"event": "order_invalidate", "payload": {"payload": {"order_hash": "h"}}}),
        json.dumps({"event": "phx_reply", "payload": {"status": "ok"}}),
    ])
    def test_other_frames_ignored(self, raw):
        assert parse_stream_message(raw, SLUGS) is None


class TestOpenSeaStream:
    def test_endpoint_carries_token(self):
        s = OpenSeaStream("wss://stream.openseabeta.com/socket/websocket", "k1", SLUGS, lambda e: None)
        assert s.endpoint == "wss://stream.openseabeta.com/socket/websocket?token=k1"
        s = OpenSeaStream("wss://x/socket?vsn=2.0.0", "k1", SLUGS, lambda e: None)
        assert s.endpoint == "wss://x/socket?vsn=2.0.0&token=k1"
        assert OpenSeaStream("wss://x", None, SLUGS, lambda e: None).endpoint == "wss://x"

    def test_join_messages(self):
        s = OpenSeaStream("wss://x", None, {"Beta": "0xBBB", "alpha": "0xaaa"}, lambda e: None)
        assert s.join_messages() == [
            {"topic": "collection:alpha", "event": "phx_join", "payload": {}, "ref": 1},
            {"topic": "collection:beta", "event": "phx_join", "payload": {}, "ref": 2},
        ]

    @pytest.mark.asyncio
    async def test_handle_frame_dispatches(self):
        seen = []

        async def on_invalidation(event):
            seen.append(event)

        s = OpenSeaStream("wss://x", None, SLUGS, on_invalidation)
        assert await s.handle_frame(frame()) is not None
        assert await s.handle_frame('{"event":"heartbeat"}') is None
        assert [e.collection for e in seen] == ["0xaaa"]

    @pytest.mark.asyncio
    async def test_handler_error_is_contained(self):
        def explode(event):
            raise RuntimeError("boom")

        s = OpenSeaStream("wss://x", None, SLUGS, explode)
        event = await s.handle_frame(frame())
        assert event.order_id == "0xh1"


class FakeSocket:
    def __init__(self, frames):
        self.sent = []
        self._frames = asyncio.Queue()
        for f in frames:
            self._frames.put_nowait(f)

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def recv(self):
        return await self._frames.get()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_reconnects_after_failure_then_joins(self, monkeypatch, event_log):
        socket = FakeSocket([frame()])
        attempts = []

        def connect(url, **kwargs):
            attempts.append(url)
            if len(attempts) == 1:
                raise OSError("connection refused")
            return socket

        monkeypatch.setattr(stream_mod.websockets, "connect", connect)
        stop = asyncio.Event()
        seen = []

        async def on_invalidation(event):
            seen.append(event)
            stop.set()

        s = OpenSeaStream("wss://x", "k", SLUGS, on_invalidation, reconnect_sec=0.01, log_event=event_log)
        await asyncio.wait_for(s.run(stop), timeout=2)

        assert len(attempts) == 2
        assert socket.sent[0] == HEARTBEAT
        assert [m["topic"] for m in socket.sent[1:]] == ["collection:alpha", "collection:beta"]
        assert [e.order_id for e in seen] == ["0xh1"]
        assert event_log.named("stream_error")[0]["err"] == "connection refused"
        assert len(event_log.named("stream_reconnect")) == 1
        assert not s.connected
