from bidsync.market_data.clients import BlurClient, MarketplaceClient, OpenSeaClient, build_clients
from bidsync.market_data.price_monitor import PRICE_PREFIX, PriceSignalMonitor, price_key
from bidsync.market_data.stream import OpenSeaStream, parse_stream_message

__all__ = [
    "BlurClient",
    "MarketplaceClient",
    "OpenSeaClient",
    "OpenSeaStream",
    "PRICE_PREFIX",
    "PriceSignalMonitor",
    "build_clients",
    "parse_stream_message",
    "price_key",
]
