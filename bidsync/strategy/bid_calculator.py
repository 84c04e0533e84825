"""
BidCalculator - target bid computation.

Pure calculation module with no I/O. Two pricing variants, selected by
MarketParams.reference:

Cross-market capped outbid (reference configured):
    cap    = reference - margin - reference * fee_rate
    target = cap                          if competitor >= cap
           = competitor + outbid_increment otherwise
    result = floor(target, tick)

Single-market (no reference):
    result = floor(price - margin - price * fee_rate, tick)

None means no profitable bid exists; an existing bid for the key should be
cancelled, not replaced.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from bidsync.core.models import Marketplace, MarketParams
from bidsync.core.rounding import floor_to_tick


@dataclass(frozen=True)
class BidDecision:
    """Calculator output with the intermediate values, for logging."""
    target: Optional[Decimal]
    cap: Optional[Decimal]
    reason: str


def _positive(value: Optional[Decimal]) -> bool:
    return value is not None and value.is_finite() and value > 0


def _apply_bounds(target: Decimal, params: MarketParams) -> Optional[Decimal]:
    if target > params.max_bid:
        target = floor_to_tick(params.max_bid, params.tick_size)
    if target <= 0 or target < params.min_bid:
        return None
    return target


def decide_target_bid(
    marketplace: Marketplace,
    competitor_price: Optional[Decimal],
    reference_price: Optional[Decimal],
    params: MarketParams,
) -> BidDecision:
    if not _positive(competitor_price):
        return BidDecision(None, None, "no_competitor_price")

    if params.reference is None:
        # Single-market: the one available price is both competitor and reference
        base = competitor_price
        cap = base - params.margin - base * params.fee_rate
        if cap <= 0:
            return BidDecision(None, cap, "margin_exceeds_price")
        target = _apply_bounds(floor_to_tick(cap, params.tick_size), params)
        return BidDecision(target, cap, "single_market" if target is not None else "below_min_bid")

    if not _positive(reference_price):
        return BidDecision(None, None, "no_reference_price")

    cap = reference_price - params.margin - reference_price * params.fee_rate
    if cap <= 0:
        return BidDecision(None, cap, "margin_exceeds_reference")

    if competitor_price >= cap:
        raw, reason = cap, "capped"
    else:
        raw, reason = competitor_price + params.outbid_increment, "outbid"
    target = _apply_bounds(floor_to_tick(raw, params.tick_size), params)
    return BidDecision(target, cap, reason if target is not None else "below_min_bid")


def compute_target_bid(
    marketplace: Marketplace,
    competitor_price: Optional[Decimal],
    reference_price: Optional[Decimal],
    params: MarketParams,
) -> Optional[Decimal]:
    """Target bid amount for marketplace, or None when no profitable bid exists."""
    return decide_target_bid(marketplace, competitor_price, reference_price, params).target
