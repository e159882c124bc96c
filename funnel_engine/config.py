"""
Engine settings.

Values come from environment variables (``FUNNEL_*``) and are validated with
pydantic so a bad deployment value fails at startup instead of mid-query.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Any, Dict, List

from pydantic import BaseModel, Field, field_validator, model_validator


DEFAULT_PERCENTILES = [25, 50, 75, 90]
# Seconds: 1m, 5m, 15m, 1h, 1d
DEFAULT_HISTOGRAM_EDGES = [0, 60, 300, 900, 3600, 86400]


class EngineSettings(BaseModel):
    worker_pool_size: int = Field(default=4, ge=1, le=64)
    max_pending_queries: int = Field(default=16, ge=1, le=1024)
    query_timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    cache_ttl_seconds: int = Field(default=300, ge=0, le=86400)
    cache_max_entries: int = Field(default=512, ge=1, le=100000)
    live_refresh_seconds: int = Field(default=10, ge=1, le=3600)
    live_window_seconds: int = Field(default=30, ge=1, le=86400)
    live_channel_size: int = Field(default=4, ge=1, le=256)
    expiry_sweep_minutes: int = Field(default=5, ge=1, le=1440)
    confidence_level: float = Field(default=0.95, gt=0.5, lt=1.0)
    min_sample_for_interval: int = Field(default=30, ge=1)
    min_comparison_sample: int = Field(default=100, ge=1)
    minimum_detectable_effect: float = Field(default=0.02, gt=0.0, lt=1.0)
    statistical_power: float = Field(default=0.8, gt=0.0, lt=1.0)
    max_date_range_days: int = Field(default=730, ge=1)
    percentiles: List[float] = Field(default_factory=lambda: list(DEFAULT_PERCENTILES))
    histogram_edges_seconds: List[float] = Field(default_factory=lambda: list(DEFAULT_HISTOGRAM_EDGES))

    @field_validator("percentiles")
    @classmethod
    def _validate_percentiles(cls, value: List[float]) -> List[float]:
        if not value:
            raise ValueError("percentiles must not be empty")
        for p in value:
            if p < 0 or p > 100:
                raise ValueError("percentiles must be within 0..100")
        return sorted(set(float(p) for p in value))

    @field_validator("histogram_edges_seconds")
    @classmethod
    def _validate_edges(cls, value: List[float]) -> List[float]:
        if len(value) < 2:
            raise ValueError("histogram_edges_seconds needs at least two edges")
        if any(b <= a for a, b in zip(value, value[1:])):
            raise ValueError("histogram_edges_seconds must be strictly increasing")
        return [float(v) for v in value]

    @model_validator(mode="after")
    def _validate_pool(self) -> "EngineSettings":
        if self.max_pending_queries < self.worker_pool_size:
            raise ValueError("max_pending_queries must be >= worker_pool_size")
        return self


def _csv_floats(raw: str) -> List[float]:
    return [float(part) for part in raw.split(",") if part.strip()]


def _settings_from_env() -> Dict[str, Any]:
    mapping = {
        "FUNNEL_WORKER_POOL_SIZE": ("worker_pool_size", int),
        "FUNNEL_MAX_PENDING_QUERIES": ("max_pending_queries", int),
        "FUNNEL_QUERY_TIMEOUT_SECONDS": ("query_timeout_seconds", float),
        "FUNNEL_CACHE_TTL_SECONDS": ("cache_ttl_seconds", int),
        "FUNNEL_CACHE_MAX_ENTRIES": ("cache_max_entries", int),
        "FUNNEL_LIVE_REFRESH_SECONDS": ("live_refresh_seconds", int),
        "FUNNEL_LIVE_WINDOW_SECONDS": ("live_window_seconds", int),
        "FUNNEL_LIVE_CHANNEL_SIZE": ("live_channel_size", int),
        "FUNNEL_EXPIRY_SWEEP_MINUTES": ("expiry_sweep_minutes", int),
        "FUNNEL_CONFIDENCE_LEVEL": ("confidence_level", float),
        "FUNNEL_MIN_SAMPLE_FOR_INTERVAL": ("min_sample_for_interval", int),
        "FUNNEL_MIN_COMPARISON_SAMPLE": ("min_comparison_sample", int),
        "FUNNEL_MIN_DETECTABLE_EFFECT": ("minimum_detectable_effect", float),
        "FUNNEL_STATISTICAL_POWER": ("statistical_power", float),
        "FUNNEL_MAX_DATE_RANGE_DAYS": ("max_date_range_days", int),
        "FUNNEL_PERCENTILES": ("percentiles", _csv_floats),
        "FUNNEL_HISTOGRAM_EDGES": ("histogram_edges_seconds", _csv_floats),
    }
    values: Dict[str, Any] = {}
    for env_name, (field, cast) in mapping.items():
        raw = os.getenv(env_name)
        if raw is None or not raw.strip():
            continue
        values[field] = cast(raw.strip())
    return values


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Process-wide settings, read once from the environment."""
    return EngineSettings(**_settings_from_env())
