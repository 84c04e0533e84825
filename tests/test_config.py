"""
Tests for Settings and the collections file loader.
"""

import os
from decimal import Decimal as D

import pytest

from bidsync.config.collections import load_collections, parse_collections
from bidsync.config.config import Settings, default_market_params
from bidsync.core.models import Marketplace


@pytest.fixture
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("BIDSYNC_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("BIDSYNC_LOG_FILE", "")
    return monkeypatch


class TestSettings:
    def test_defaults(self, clean_env):
        cfg = Settings.load()

        assert cfg.store_backend == "redis"
        assert cfg.baseline_only == frozenset({Marketplace.BLUR})
        assert cfg.poll_interval(Marketplace.OPENSEA) == 0.5
        assert cfg.poll_interval(Marketplace.BLUR) == 1.0
        assert cfg.log_file is None
        blur = cfg.market_defaults[Marketplace.BLUR]
        assert blur.tick_size == D("0.01")
        assert blur.reference is Marketplace.OPENSEA
        assert blur.supports_cancel is False
        assert cfg.market_defaults[Marketplace.OPENSEA].supports_cancel is True

    def test_overrides(self, clean_env):
        clean_env.setenv("BIDSYNC_STORE_BACKEND", "Memory")
        clean_env.setenv("BIDSYNC_BASELINE_ONLY", "opensea, blur")
        clean_env.setenv("BIDSYNC_OPENSEA_MARGIN", "0.01")
        clean_env.setenv("BIDSYNC_OPENSEA_REFERENCE", "none")
        clean_env.setenv("BIDSYNC_GAS_ESTIMATE_ETH", "0.003")

        cfg = Settings.load()

        assert cfg.store_backend == "memory"
        assert cfg.baseline_only == frozenset(Marketplace)
        assert cfg.market_defaults[Marketplace.OPENSEA].margin == D("0.01")
        assert cfg.market_defaults[Marketplace.OPENSEA].reference is None
        assert cfg.gas_estimate_eth == D("0.003")
        assert default_market_params(Marketplace.OPENSEA, cfg).margin == D("0.01")

    @pytest.mark.parametrize("key,value", [
        ("BIDSYNC_STORE_BACKEND", "postgres"),
        ("BIDSYNC_OPENSEA_POLL_SEC", "0"),
        ("BIDSYNC_OPERATION_TIMEOUT_SEC", "-1"),
        ("BIDSYNC_BID_EXPIRATION_SEC", "0"),
        ("BIDSYNC_BLUR_TICK", "0"),
        ("BIDSYNC_BLUR_TICK", "0.001"),
        ("BIDSYNC_BLUR_REFERENCE", "blur"),
        ("BIDSYNC_OPENSEA_MIN_BID", "500"),
        ("BIDSYNC_BASELINE_ONLY", "looksrare"),
    ])
    def test_invalid_values_rejected(self, clean_env, key, value):
        clean_env.setenv(key, value)
        with pytest.raises(ValueError):
            Settings.load()

    def test_dump_hides_secrets(self, clean_env):
        clean_env.setenv("BIDSYNC_PRIVATE_KEY", "0x" + "11" * 32)
        clean_env.setenv("BIDSYNC_OPENSEA_API_KEY", "secret")
        dumped = Settings.load().dump()
        assert "private_key" not in dumped
        assert "opensea_api_key" not in dumped
        assert dumped["baseline_only"] == ["blur"]

    def test_resolve_account(self, clean_env):
        clean_env.setenv("BIDSYNC_WALLET_ADDRESS", "0xabc")
        cfg = Settings.load()
        assert cfg.resolve_account() == "0xabc"
        with pytest.raises(RuntimeError):
            cfg.resolve_signer()

        clean_env.setenv("BIDSYNC_PRIVATE_KEY", "0x" + "11" * 32)
        cfg = Settings.load()
        assert cfg.resolve_account() == cfg.resolve_signer().address


class TestCollections:
    def test_missing_markets_enables_all(self, clean_env):
        [c] = parse_collections({"collections": [{"contract_address": "0xABC", "slug": "Alpha"}]})
        assert c.contract_address == "0xabc"
        assert c.slug == "alpha"
        assert set(c.markets) == set(Marketplace)

    def test_overrides_and_disable(self, clean_env):
        data = {"collections": [{
            "contract_address": "0xabc",
            "slug": "alpha",
            "markets": {"opensea": {"margin": "0.006", "reference": None}, "blur": False},
        }]}
        [c] = parse_collections(data)
        assert list(c.markets) == [Marketplace.OPENSEA]
        assert c.params(Marketplace.OPENSEA).margin == D("0.006")
        assert c.params(Marketplace.OPENSEA).reference is None
        assert c.params(Marketplace.OPENSEA).tick_size == D("0.00001")

    @pytest.mark.parametrize("data", [
        None,
        {"collections": {}},
        {"collections": [{"slug": "alpha"}]},
        {"collections": [{"contract_address": "0x1", "slug": "a", "markets": ["opensea"]}]},
        {"collections": [{"contract_address": "0x1", "slug": "a", "markets": {"x2y2": {}}}]},
        {"collections": [{"contract_address": "0x1", "slug": "a", "markets": {"blur": {"margin": "abc"}}}]},
        {"collections": [{"contract_address": "0x1", "slug": "a", "markets": {"blur": {"colour": 1}}}]},
        {"collections": [{"contract_address": "0x1", "slug": "a", "markets": {"blur": {"tick_size": "0.005"}}}]},
    ])
    def test_bad_files_rejected(self, clean_env, data):
        with pytest.raises(ValueError):
            parse_collections(data)

    def test_load_from_yaml(self, clean_env, tmp_path):
        path = tmp_path / "collections.yaml"
        path.write_text(
            "collections:\n"
            "  - contract_address: \"0xAAA\"\n"
            "    slug: alpha\n"
            "    markets:\n"
            "      blur: { tick_size: \"0.05\" }\n",
            encoding="utf-8",
        )
        [c] = load_collections(str(path))
        assert c.params(Marketplace.BLUR).tick_size == D("0.05")

    def test_missing_file(self, clean_env, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_collections(str(tmp_path / "nope.yaml"))
