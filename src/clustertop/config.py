from __future__ import annotations

from datetime import timedelta

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from clustertop.errors import BadParameter
from clustertop.metrics import normalize_address


class Settings(BaseSettings):
    # --- backend ---
    prometheus_address: str = "localhost:9090"  # host:port or URL
    query_timeout: float = Field(10.0, gt=0)  # seconds per request

    # --- poller ---
    poll_interval: float = Field(2.0, gt=0)  # seconds between ticks
    range_width: float = Field(3600.0, ge=0.001)  # seconds of history per tick
    step: float = Field(15.0, gt=0)  # seconds between series samples

    # --- display ---
    history_points: int = Field(140, gt=0)

    # --- logging ---
    log_level: str = "INFO"

    # --- profiling ---
    profile_dir: str | None = None
    profiling_interval: float = Field(60.0, gt=0)

    model_config = {"env_file": ".env", "env_prefix": "CLUSTERTOP_", "extra": "ignore"}

    @field_validator("prometheus_address")
    @classmethod
    def _valid_address(cls, value: str) -> str:
        try:
            normalize_address(value)
        except BadParameter as exc:
            raise ValueError(str(exc)) from exc
        return value

    @field_validator("log_level")
    @classmethod
    def _valid_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @property
    def range_width_delta(self) -> timedelta:
        return timedelta(seconds=self.range_width)

    @property
    def step_delta(self) -> timedelta:
        return timedelta(seconds=self.step)
