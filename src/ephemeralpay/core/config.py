"""
Configuration management for ephemeralpay.

Handles loading configuration from environment variables and validation.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any

from ephemeralpay.core.types import SOL, Asset, Network, usdc_for


def _get_env_var(name: str, default: str | None = None, required: bool = False) -> str | None:
    """Get environment variable with optional default."""
    value = os.environ.get(name, default)
    if required and not value:
        raise ValueError(f"Required environment variable {name} is not set")
    return value


@dataclass(frozen=True)
class Config:
    """Payment core configuration."""

    network: Network = Network.SOL_DEVNET
    rpc_url: str | None = None
    custodian_api_url: str | None = None
    log_level: str = "INFO"
    env: str = "development"

    # Auto-approval policy (human-readable units of the payment asset)
    auto_approve_ceiling: Decimal = Decimal("0.01")
    auto_approve_assets: tuple[str, ...] = ("USDC",)

    # Funding plan
    fee_funding_lamports: int = 10_000_000  # 0.01 SOL: token account rent + fees
    principal_margin_bps: int = 100

    # Reclaim
    sweep_fee_reserve_lamports: int = 5_000
    dust_threshold_lamports: int = 5_000
    dust_threshold_token: int = 0
    sweep_max_attempts: int = 2

    # Confirmation polling (seconds)
    confirmation_timeout: float = 30.0
    confirmation_poll_interval: float = 0.5
    confirmation_poll_max_interval: float = 4.0
    confirmation_max_polls: int = 20

    # HTTP
    http_timeout: float = 30.0
    protocol_max_attempts: int = 3

    # In-flight dedup storage
    storage_backend: str = "memory"
    redis_url: str | None = None
    inflight_ttl: int = 300

    def __post_init__(self) -> None:
        if not isinstance(self.network, Network):
            raise ValueError(f"network must be a Network, got {self.network!r}")
        if self.auto_approve_ceiling < 0:
            raise ValueError("auto_approve_ceiling must be non-negative")
        for name in ("fee_funding_lamports", "sweep_fee_reserve_lamports",
                     "dust_threshold_lamports", "dust_threshold_token", "principal_margin_bps"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        for name in ("confirmation_timeout", "confirmation_poll_interval", "http_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in ("confirmation_max_polls", "protocol_max_attempts", "sweep_max_attempts"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.inflight_ttl < 1:
            raise ValueError("inflight_ttl must be >= 1")

    @property
    def effective_rpc_url(self) -> str:
        return self.rpc_url or self.network.default_rpc_url

    @property
    def fee_asset(self) -> Asset:
        return SOL

    @property
    def payment_asset(self) -> Asset:
        return usdc_for(self.network)

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables."""
        network_str = overrides.get("network") or _get_env_var(
            "EPHEMERALPAY_NETWORK", default="SOL-DEVNET"
        )
        network = Network.from_string(network_str) if isinstance(network_str, str) else network_str

        ceiling = overrides.get("auto_approve_ceiling") or _get_env_var(
            "EPHEMERALPAY_AUTO_APPROVE_CEILING", default=str(cls.auto_approve_ceiling)
        )

        assets = overrides.get("auto_approve_assets")
        if assets is None:
            raw_assets = _get_env_var("EPHEMERALPAY_AUTO_APPROVE_ASSETS", default="USDC")
            assets = tuple(a.strip().upper() for a in raw_assets.split(",") if a.strip())  # type: ignore

        def _int(name: str, env_name: str) -> int:
            if name in overrides:
                return int(overrides[name])
            return int(_get_env_var(env_name, default=str(getattr(cls, name))))  # type: ignore

        def _float(name: str, env_name: str) -> float:
            if name in overrides:
                return float(overrides[name])
            return float(_get_env_var(env_name, default=str(getattr(cls, name))))  # type: ignore

        return cls(
            network=network,
            rpc_url=overrides.get("rpc_url") or _get_env_var("EPHEMERALPAY_RPC_URL"),
            custodian_api_url=overrides.get("custodian_api_url")
            or _get_env_var("EPHEMERALPAY_CUSTODIAN_URL"),
            log_level=overrides.get("log_level")
            or _get_env_var("EPHEMERALPAY_LOG_LEVEL", default="INFO"),  # type: ignore
            env=overrides.get("env") or _get_env_var("EPHEMERALPAY_ENV", default="development"),  # type: ignore
            auto_approve_ceiling=Decimal(str(ceiling)),
            auto_approve_assets=tuple(assets),
            fee_funding_lamports=_int("fee_funding_lamports", "EPHEMERALPAY_FEE_FUNDING_LAMPORTS"),
            principal_margin_bps=_int("principal_margin_bps", "EPHEMERALPAY_PRINCIPAL_MARGIN_BPS"),
            sweep_fee_reserve_lamports=_int(
                "sweep_fee_reserve_lamports", "EPHEMERALPAY_SWEEP_FEE_RESERVE_LAMPORTS"
            ),
            dust_threshold_lamports=_int(
                "dust_threshold_lamports", "EPHEMERALPAY_DUST_THRESHOLD_LAMPORTS"
            ),
            dust_threshold_token=_int("dust_threshold_token", "EPHEMERALPAY_DUST_THRESHOLD_TOKEN"),
            sweep_max_attempts=_int("sweep_max_attempts", "EPHEMERALPAY_SWEEP_MAX_ATTEMPTS"),
            confirmation_timeout=_float(
                "confirmation_timeout", "EPHEMERALPAY_CONFIRMATION_TIMEOUT"
            ),
            confirmation_poll_interval=_float(
                "confirmation_poll_interval", "EPHEMERALPAY_CONFIRMATION_POLL_INTERVAL"
            ),
            confirmation_poll_max_interval=_float(
                "confirmation_poll_max_interval", "EPHEMERALPAY_CONFIRMATION_POLL_MAX_INTERVAL"
            ),
            confirmation_max_polls=_int(
                "confirmation_max_polls", "EPHEMERALPAY_CONFIRMATION_MAX_POLLS"
            ),
            http_timeout=_float("http_timeout", "EPHEMERALPAY_HTTP_TIMEOUT"),
            protocol_max_attempts=_int(
                "protocol_max_attempts", "EPHEMERALPAY_PROTOCOL_MAX_ATTEMPTS"
            ),
            storage_backend=overrides.get("storage_backend")
            or _get_env_var("EPHEMERALPAY_STORAGE_BACKEND", default="memory"),  # type: ignore
            redis_url=overrides.get("redis_url") or _get_env_var("EPHEMERALPAY_REDIS_URL"),
            inflight_ttl=_int("inflight_ttl", "EPHEMERALPAY_INFLIGHT_TTL"),
        )

    def with_updates(self, **updates: Any) -> Config:
        """Create a new Config with updated values."""
        current = asdict(self)
        current.update(updates)
        return Config(**current)
