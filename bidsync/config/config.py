"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, FrozenSet, Optional

from dotenv import load_dotenv

from bidsync.core.models import MARKET_PRICE_TICK, Marketplace, MarketParams, tick_fits_market

load_dotenv()

PREFIX = "BIDSYNC_"

# Defaults carried over from the production bidder scripts
MARKET_DEFAULTS: Dict[Marketplace, Dict[str, str]] = {
    Marketplace.OPENSEA: {
        "MIN_BID": "0.01",
        "MAX_BID": "100",
        "MARGIN": "0.005",
        "TICK": "0.00001",
        "OUTBID": "0.00001",
        "FEE_RATE": "0",
        "REFERENCE": "blur",
        "SUPPORTS_CANCEL": "true",
    },
    Marketplace.BLUR: {
        "MIN_BID": "0.01",
        "MAX_BID": "100",
        "MARGIN": "0.005",
        "TICK": "0.01",
        "OUTBID": "0.01",
        "FEE_RATE": "0",
        "REFERENCE": "opensea",
        "SUPPORTS_CANCEL": "false",
    },
}


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return int(raw)


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    return float(raw)


def _decimal_env(key: str, default: str) -> Decimal:
    raw = os.getenv(key)
    if raw is None or raw == "":
        raw = default
    return Decimal(raw)


def _market_defaults(marketplace: Marketplace) -> MarketParams:
    defaults = MARKET_DEFAULTS[marketplace]
    prefix = f"{PREFIX}{marketplace.value.upper()}_"
    reference_raw = os.getenv(prefix + "REFERENCE", defaults["REFERENCE"]).strip().lower()
    reference = None if reference_raw in {"", "none", "single"} else Marketplace.parse(reference_raw)
    return MarketParams(
        min_bid=_decimal_env(prefix + "MIN_BID", defaults["MIN_BID"]),
        max_bid=_decimal_env(prefix + "MAX_BID", defaults["MAX_BID"]),
        margin=_decimal_env(prefix + "MARGIN", defaults["MARGIN"]),
        tick_size=_decimal_env(prefix + "TICK", defaults["TICK"]),
        outbid_increment=_decimal_env(prefix + "OUTBID", defaults["OUTBID"]),
        fee_rate=_decimal_env(prefix + "FEE_RATE", defaults["FEE_RATE"]),
        reference=reference,
        supports_cancel=env_bool(prefix + "SUPPORTS_CANCEL", defaults["SUPPORTS_CANCEL"] == "true"),
    )


@dataclass(frozen=True)
class Settings:
    store_backend: str
    redis_url: str
    collections_file: str
    opensea_api_url: str
    opensea_api_key: str | None
    opensea_stream_url: str
    opensea_protocol_address: str
    blur_api_url: str
    blur_auth_token: str | None
    nft_api_key: str | None
    private_key: str | None
    wallet_address: str | None
    chain: str
    opensea_poll_sec: float
    blur_poll_sec: float
    http_timeout: float
    fetch_timeout_sec: float
    operation_timeout_sec: float
    bid_expiration_sec: int
    expiry_sweep_sec: float
    stream_enabled: bool
    stream_heartbeat_sec: float
    stream_reconnect_sec: float
    baseline_only: FrozenSet[Marketplace]
    max_signal_price: Decimal
    gas_estimate_eth: Decimal
    metrics_port: int
    log_level: str
    log_file: str | None
    market_defaults: Dict[Marketplace, MarketParams] = field(default_factory=dict)

    def dump(self) -> dict:
        """Settings without secrets, for the startup log line."""
        data = {k: v for k, v in self.__dict__.items() if k not in {"private_key", "opensea_api_key", "blur_auth_token", "nft_api_key"}}
        data["baseline_only"] = sorted(m.value for m in self.baseline_only)
        data["market_defaults"] = {m.value: str(p) for m, p in self.market_defaults.items()}
        return data

    def poll_interval(self, marketplace: Marketplace) -> float:
        return self.opensea_poll_sec if marketplace is Marketplace.OPENSEA else self.blur_poll_sec

    @staticmethod
    def _baseline_only() -> FrozenSet[Marketplace]:
        raw = os.getenv(PREFIX + "BASELINE_ONLY", "blur")
        return frozenset(Marketplace.parse(p) for p in raw.split(",") if p.strip())

    @classmethod
    def load(cls) -> "Settings":
        log_file = os.getenv(PREFIX + "LOG_FILE", "bidsync.log")
        cfg = cls(
            store_backend=os.getenv(PREFIX + "STORE_BACKEND", "redis").lower(),
            redis_url=os.getenv(PREFIX + "REDIS_URL", "redis://127.0.0.1:6379/0"),
            collections_file=os.getenv(PREFIX + "COLLECTIONS_FILE", "configs/collections.yaml"),
            opensea_api_url=os.getenv(PREFIX + "OPENSEA_API_URL", "https://api.opensea.io"),
            opensea_api_key=os.getenv(PREFIX + "OPENSEA_API_KEY"),
            opensea_stream_url=os.getenv(PREFIX + "OPENSEA_STREAM_URL", "wss://stream.openseabeta.com/socket/websocket"),
            opensea_protocol_address=os.getenv(
                PREFIX + "OPENSEA_PROTOCOL_ADDRESS", "0x0000000000000068f116a894984e2db1123eb395"
            ),
            blur_api_url=os.getenv(PREFIX + "BLUR_API_URL", "https://nfttools.pro/blur/v1"),
            blur_auth_token=os.getenv(PREFIX + "BLUR_AUTH_TOKEN"),
            nft_api_key=os.getenv(PREFIX + "NFT_API_KEY"),
            private_key=os.getenv(PREFIX + "PRIVATE_KEY"),
            wallet_address=os.getenv(PREFIX + "WALLET_ADDRESS"),
            chain=os.getenv(PREFIX + "CHAIN", "ethereum"),
            opensea_poll_sec=_float_env(PREFIX + "OPENSEA_POLL_SEC", 0.5),
            blur_poll_sec=_float_env(PREFIX + "BLUR_POLL_SEC", 1.0),
            http_timeout=_float_env(PREFIX + "HTTP_TIMEOUT", 5.0),
            fetch_timeout_sec=_float_env(PREFIX + "FETCH_TIMEOUT_SEC", 10.0),
            operation_timeout_sec=_float_env(PREFIX + "OPERATION_TIMEOUT_SEC", 30.0),
            bid_expiration_sec=_int_env(PREFIX + "BID_EXPIRATION_SEC", 86400),
            expiry_sweep_sec=_float_env(PREFIX + "EXPIRY_SWEEP_SEC", 60.0),
            stream_enabled=env_bool(PREFIX + "STREAM_ENABLED", True),
            stream_heartbeat_sec=_float_env(PREFIX + "STREAM_HEARTBEAT_SEC", 30.0),
            stream_reconnect_sec=_float_env(PREFIX + "STREAM_RECONNECT_SEC", 5.0),
            baseline_only=cls._baseline_only(),
            max_signal_price=_decimal_env(PREFIX + "MAX_SIGNAL_PRICE", "1000"),
            gas_estimate_eth=_decimal_env(PREFIX + "GAS_ESTIMATE_ETH", "0"),
            metrics_port=_int_env(PREFIX + "METRICS_PORT", 0),
            log_level=os.getenv(PREFIX + "LOG_LEVEL", "INFO").upper(),
            log_file=log_file or None,
            market_defaults={m: _market_defaults(m) for m in Marketplace},
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def resolve_signer(self):
        from eth_account import Account

        if not self.private_key:
            raise RuntimeError("Missing credentials: set BIDSYNC_PRIVATE_KEY")
        return Account.from_key(self.private_key)

    def resolve_account(self) -> str:
        if self.private_key:
            return self.resolve_signer().address
        if self.wallet_address:
            return self.wallet_address
        raise RuntimeError("Missing BIDSYNC_WALLET_ADDRESS or BIDSYNC_PRIVATE_KEY")

    def _validate(self) -> None:
        if self.store_backend not in {"redis", "memory"}:
            raise ValueError("BIDSYNC_STORE_BACKEND must be 'redis' or 'memory'")
        if self.opensea_poll_sec <= 0 or self.blur_poll_sec <= 0:
            raise ValueError("Poll intervals must be > 0")
        if self.http_timeout <= 0 or self.fetch_timeout_sec <= 0 or self.operation_timeout_sec <= 0:
            raise ValueError("Timeouts must be > 0")
        if self.bid_expiration_sec <= 0:
            raise ValueError("BIDSYNC_BID_EXPIRATION_SEC must be > 0")
        if self.max_signal_price <= 0:
            raise ValueError("BIDSYNC_MAX_SIGNAL_PRICE must be > 0")
        if self.gas_estimate_eth < 0:
            raise ValueError("BIDSYNC_GAS_ESTIMATE_ETH must be >= 0")
        for marketplace, params in self.market_defaults.items():
            name = marketplace.value.upper()
            if params.tick_size <= 0:
                raise ValueError(f"BIDSYNC_{name}_TICK must be > 0")
            if not tick_fits_market(marketplace, params.tick_size):
                raise ValueError(
                    f"BIDSYNC_{name}_TICK must be a multiple of {MARKET_PRICE_TICK[marketplace]}"
                )
            if params.margin < 0:
                raise ValueError(f"BIDSYNC_{name}_MARGIN must be >= 0")
            if params.min_bid > params.max_bid:
                raise ValueError(f"BIDSYNC_{name}_MIN_BID must be <= BIDSYNC_{name}_MAX_BID")
            if params.reference is marketplace:
                raise ValueError(f"BIDSYNC_{name}_REFERENCE cannot reference itself")

        logger = logging.getLogger("bidsync")
        if self.operation_timeout_sec > 120:
            logger.warning(
                f"WARNING: BIDSYNC_OPERATION_TIMEOUT_SEC={self.operation_timeout_sec} lets one hung "
                "marketplace call stall every queued operation for minutes."
            )
        if self.opensea_poll_sec < 0.1 or self.blur_poll_sec < 0.1:
            logger.warning("WARNING: poll interval below 100ms will likely hit marketplace rate limits.")
        if self.store_backend == "memory":
            logger.warning("WARNING: BIDSYNC_STORE_BACKEND=memory, bids are not persisted across restarts.")


def _sanity_check(cfg: Settings) -> None:
    """Log the effective settings once at startup so overrides are obvious."""
    logger = logging.getLogger("bidsync")
    payload = {
        "event": "config_loaded",
        "store_backend": cfg.store_backend,
        "collections_file": cfg.collections_file,
        "opensea_poll_sec": cfg.opensea_poll_sec,
        "blur_poll_sec": cfg.blur_poll_sec,
        "baseline_only": sorted(m.value for m in cfg.baseline_only),
        "stream_enabled": cfg.stream_enabled,
    }
    logger.info(json.dumps(payload))


def default_market_params(marketplace: Marketplace, cfg: Optional[Settings] = None) -> MarketParams:
    if cfg is not None and marketplace in cfg.market_defaults:
        return cfg.market_defaults[marketplace]
    return _market_defaults(marketplace)
