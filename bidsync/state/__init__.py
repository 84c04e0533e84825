"""
State package: the order ledger over the shared state store.
"""

from bidsync.state.order_ledger import BID_UPDATE_CHANNEL, OrderLedger, bid_key

__all__ = ["BID_UPDATE_CHANNEL", "OrderLedger", "bid_key"]
