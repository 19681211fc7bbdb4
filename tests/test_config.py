"""Unit tests for config module."""

import os
from decimal import Decimal
from unittest.mock import patch

import pytest

from ephemeralpay.core.config import Config
from ephemeralpay.core.types import SOL, Network, usdc_for


class TestConfig:
    """Tests for Config class."""

    def test_defaults(self) -> None:
        config = Config()

        assert config.network == Network.SOL_DEVNET
        assert config.auto_approve_ceiling == Decimal("0.01")
        assert config.auto_approve_assets == ("USDC",)
        assert config.sweep_fee_reserve_lamports == 5_000
        assert config.storage_backend == "memory"

    def test_config_is_immutable(self) -> None:
        config = Config()

        with pytest.raises(AttributeError):
            config.network = Network.SOL  # type: ignore

    def test_effective_rpc_url_defaults_per_network(self) -> None:
        assert Config().effective_rpc_url == "https://api.devnet.solana.com"
        assert Config(network=Network.SOL).effective_rpc_url == "https://api.mainnet-beta.solana.com"
        assert Config(rpc_url="http://localhost:8899").effective_rpc_url == "http://localhost:8899"

    def test_assets_follow_network(self) -> None:
        config = Config(network=Network.SOL)

        assert config.fee_asset == SOL
        assert config.payment_asset == usdc_for(Network.SOL)
        assert config.payment_asset.mint == "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

    @pytest.mark.parametrize(
        "field,value",
        [
            ("auto_approve_ceiling", Decimal("-1")),
            ("fee_funding_lamports", -1),
            ("confirmation_timeout", 0),
            ("confirmation_max_polls", 0),
            ("sweep_max_attempts", 0),
            ("inflight_ttl", 0),
        ],
    )
    def test_invalid_values_rejected(self, field, value) -> None:
        with pytest.raises(ValueError):
            Config(**{field: value})

    def test_with_updates(self) -> None:
        config = Config()
        updated = config.with_updates(principal_margin_bps=250)

        assert updated.principal_margin_bps == 250
        assert config.principal_margin_bps == 100


class TestConfigFromEnv:
    """Tests for Config.from_env()."""

    def test_from_env_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            config = Config.from_env()

        assert config.network == Network.SOL_DEVNET
        assert config.rpc_url is None
        assert config.auto_approve_ceiling == Decimal("0.01")

    def test_from_env_reads_variables(self) -> None:
        env = {
            "EPHEMERALPAY_NETWORK": "solana",
            "EPHEMERALPAY_RPC_URL": "https://rpc.example.com",
            "EPHEMERALPAY_AUTO_APPROVE_CEILING": "0.005",
            "EPHEMERALPAY_AUTO_APPROVE_ASSETS": "usdc, sol",
            "EPHEMERALPAY_DUST_THRESHOLD_LAMPORTS": "10000",
            "EPHEMERALPAY_CONFIRMATION_TIMEOUT": "12.5",
            "EPHEMERALPAY_STORAGE_BACKEND": "redis",
            "EPHEMERALPAY_REDIS_URL": "redis://localhost:6379/1",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.network == Network.SOL
        assert config.rpc_url == "https://rpc.example.com"
        assert config.auto_approve_ceiling == Decimal("0.005")
        assert config.auto_approve_assets == ("USDC", "SOL")
        assert config.dust_threshold_lamports == 10_000
        assert config.confirmation_timeout == 12.5
        assert config.storage_backend == "redis"
        assert config.redis_url == "redis://localhost:6379/1"

    def test_overrides_win_over_env(self) -> None:
        with patch.dict(os.environ, {"EPHEMERALPAY_SWEEP_MAX_ATTEMPTS": "5"}, clear=True):
            config = Config.from_env(sweep_max_attempts=1, network=Network.SOL)

        assert config.sweep_max_attempts == 1
        assert config.network == Network.SOL

    def test_unknown_network_raises(self) -> None:
        with patch.dict(os.environ, {"EPHEMERALPAY_NETWORK": "ETH"}, clear=True):
            with pytest.raises(ValueError, match="Unknown network"):
                Config.from_env()
