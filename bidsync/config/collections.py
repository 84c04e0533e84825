"""Load tracked collections from YAML.

Path via env `BIDSYNC_COLLECTIONS_FILE`, default `configs/collections.yaml`:

    collections:
      - contract_address: "0xb6a37b5d14d502c3ab0ae6f3a0e058bc9517786e"
        slug: azukielementals
        markets:
          opensea: { margin: "0.006" }
          blur: { tick_size: "0.01", supports_cancel: false }

Omitting `markets` enables every marketplace with its defaults; setting a
marketplace to `false` disables bidding there.
"""

from __future__ import annotations

import os
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from bidsync.config.config import Settings, default_market_params
from bidsync.core.models import MARKET_PRICE_TICK, Collection, Marketplace, MarketParams, tick_fits_market

_DECIMAL_FIELDS = ("min_bid", "max_bid", "margin", "tick_size", "outbid_increment", "fee_rate")


def _apply_overrides(base: MarketParams, overrides: Dict[str, Any], where: str) -> MarketParams:
    changes: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key in _DECIMAL_FIELDS:
            try:
                changes[key] = Decimal(str(value))
            except InvalidOperation:
                raise ValueError(f"{where}.{key}: not a number: {value!r}") from None
        elif key == "reference":
            changes[key] = None if value in (None, "", "none", "single") else Marketplace.parse(str(value))
        elif key == "supports_cancel":
            changes[key] = bool(value)
        else:
            raise ValueError(f"{where}: unknown market parameter {key!r}")
    return replace(base, **changes)


def parse_collections(data: Any, cfg: Optional[Settings] = None) -> List[Collection]:
    if not isinstance(data, dict) or not isinstance(data.get("collections"), list):
        raise ValueError('collections file must have a top-level "collections" list')

    out: List[Collection] = []
    for idx, entry in enumerate(data["collections"]):
        where = f"collections[{idx}]"
        if not isinstance(entry, dict) or not entry.get("contract_address") or not entry.get("slug"):
            raise ValueError(f'{where}: needs both "contract_address" and "slug"')
        markets_raw = entry.get("markets")
        if markets_raw is None:
            markets_raw = {m.value: {} for m in Marketplace}
        if not isinstance(markets_raw, dict):
            raise ValueError(f"{where}.markets must be a mapping")

        markets: Dict[Marketplace, MarketParams] = {}
        for name, overrides in markets_raw.items():
            marketplace = Marketplace.parse(str(name))
            if overrides is False:
                continue
            overrides = overrides or {}
            if not isinstance(overrides, dict):
                raise ValueError(f"{where}.markets.{name} must be a mapping or false")
            base = default_market_params(marketplace, cfg)
            params = _apply_overrides(base, overrides, f"{where}.markets.{name}")
            if not tick_fits_market(marketplace, params.tick_size):
                raise ValueError(
                    f"{where}.markets.{name}.tick_size must be a multiple of {MARKET_PRICE_TICK[marketplace]}"
                )
            markets[marketplace] = params

        out.append(
            Collection(
                contract_address=str(entry["contract_address"]).lower(),
                slug=str(entry["slug"]).lower(),
                markets=markets,
            )
        )
    return out


def load_collections(path: str | None = None, cfg: Optional[Settings] = None) -> List[Collection]:
    if path is None:
        path = cfg.collections_file if cfg else os.getenv("BIDSYNC_COLLECTIONS_FILE", "configs/collections.yaml")
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"collections file not found: {p}")
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    return parse_collections(data, cfg)
