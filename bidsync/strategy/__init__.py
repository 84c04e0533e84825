"""
Pricing strategy: pure bid target computation.
"""

from bidsync.strategy.bid_calculator import BidDecision, compute_target_bid, decide_target_bid

__all__ = ["BidDecision", "compute_target_bid", "decide_target_bid"]
