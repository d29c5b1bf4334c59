from __future__ import annotations

from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    pool_address: str = Field(default="0x88e6A0c2dDD26FEEb64F039a2c41296FcB3f5640")
    pool_label: str = Field(default="Uniswap V3 ETH / USDC")

    feed_url: str = Field(default="wss://eth.llamarpc.com")

    # exactly one of window_minutes / max_points bounds the series
    window_minutes: int | None = Field(default=10, ge=1)
    max_points: int | None = Field(default=None, ge=1)
    cadence_seconds: int | None = Field(default=None, ge=1)

    token0_decimals: int = Field(default=6, ge=0, le=77)
    token1_decimals: int = Field(default=18, ge=0, le=77)
    quote_in_token0: bool = Field(default=True)
    # minimum significant digits kept by the sqrt price conversion
    price_precision: int = Field(default=18, ge=6, le=36)

    history_mode: Literal["proxy", "subgraph"] = Field(default="proxy")
    history_base_url: str = Field(default="http://localhost:3000")
    history_api_key: SecretStr | None = Field(default=None)
    subgraph_url: str = Field(
        default="https://gateway.thegraph.com/api/subgraphs/id/5zvR82QoaXYFyDEKLZ9t6v9adgnptxYpKpSbxtgVENFV"
    )
    backfill_enabled: bool = Field(default=True)
    backfill_lookback_minutes: int | None = Field(default=None, ge=1)

    rest_timeout_seconds: int = Field(default=20, ge=1)
    rest_max_retries: int = Field(default=3, ge=1)

    reconnect_seconds: float = Field(default=2.0, gt=0)
    max_reconnect_seconds: float = Field(default=30.0, gt=0)
    read_timeout_seconds: float = Field(default=1.0, gt=0)
    subscribe_timeout_seconds: float = Field(default=10.0, gt=0)

    evict_interval_seconds: float = Field(default=1.0, gt=0)

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="PPM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_bounding_policy(self) -> Settings:
        if (self.window_minutes is None) == (self.max_points is None):
            raise ValueError("configure exactly one of window_minutes or max_points")
        if (
            self.cadence_seconds is not None
            and self.window_minutes is not None
            and self.cadence_seconds >= self.window_minutes * 60
        ):
            raise ValueError("cadence_seconds must be shorter than the window")
        if self.max_reconnect_seconds < self.reconnect_seconds:
            raise ValueError("max_reconnect_seconds must be >= reconnect_seconds")
        return self

    @property
    def lookback_minutes(self) -> int:
        if self.backfill_lookback_minutes is not None:
            return self.backfill_lookback_minutes
        if self.window_minutes is not None:
            return self.window_minutes
        return 10
