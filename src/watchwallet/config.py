"""
Configuration for the wallet: a validated WalletConfig plus environment-driven
Settings (pydantic-settings) used as CLI defaults.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from watchwallet.constants import (
    DEFAULT_GAP_LIMIT,
    KEEPALIVE_INTERVAL,
    MAX_MESSAGE_SIZE,
    STANDARD_DUST_LIMIT,
)
from watchwallet.models import NetworkType, ScriptType

DEFAULT_PORTS: dict[NetworkType, tuple[int, int]] = {
    # (tcp, ssl)
    NetworkType.MAINNET: (50001, 50002),
    NetworkType.TESTNET: (60001, 60002),
    NetworkType.SIGNET: (60601, 60602),
    NetworkType.REGTEST: (50001, 50002),
}


class WalletConfig(BaseModel):
    """Configuration for one watch-only account."""

    network: NetworkType = NetworkType.MAINNET

    # Electrum server
    electrum_host: str = "127.0.0.1"
    electrum_port: int | None = Field(default=None, ge=1, le=65535)
    use_ssl: bool = True
    verify_ssl: bool = True
    connect_timeout: float = Field(default=30.0, gt=0)
    keepalive_interval: float = Field(default=KEEPALIVE_INTERVAL, gt=0)
    max_message_size: int = Field(default=MAX_MESSAGE_SIZE, ge=1024)

    # Wallet structure
    gap_limit: int = Field(default=DEFAULT_GAP_LIMIT, ge=1)
    script_type: ScriptType = ScriptType.P2SH_P2WPKH

    # Spending
    dust_threshold: int = Field(default=STANDARD_DUST_LIMIT, ge=0)
    fee_target_blocks: int = Field(default=6, ge=1)

    # Reconnect backoff for the watch loop
    reconnect_delay: float = Field(default=1.0, gt=0)
    max_reconnect_delay: float = Field(default=60.0, gt=0)

    @model_validator(mode="after")
    def set_default_port(self) -> WalletConfig:
        """If electrum_port is not set, use the conventional port for network and transport."""
        if self.electrum_port is None:
            tcp, ssl = DEFAULT_PORTS[self.network]
            object.__setattr__(self, "electrum_port", ssl if self.use_ssl else tcp)
        if self.max_reconnect_delay < self.reconnect_delay:
            raise ValueError("max_reconnect_delay must not be below reconnect_delay")
        return self


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WATCHWALLET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    network: NetworkType = NetworkType.MAINNET
    electrum_host: str = "127.0.0.1"
    electrum_port: int | None = None
    use_ssl: bool = True
    verify_ssl: bool = True

    gap_limit: int = DEFAULT_GAP_LIMIT
    script_type: ScriptType = ScriptType.P2SH_P2WPKH

    log_level: str = "INFO"

    def wallet_config(self, **overrides: object) -> WalletConfig:
        """WalletConfig from these settings, with non-None overrides applied."""
        values = self.model_dump(exclude={"log_level"})
        values.update({k: v for k, v in overrides.items() if v is not None})
        return WalletConfig(**values)


def get_settings() -> Settings:
    return Settings()
