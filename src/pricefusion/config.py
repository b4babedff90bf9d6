"""
Configuration Module
====================

Application configuration using pydantic-settings.
All settings can be overridden via environment variables.

Environment variables:
    LOG_LEVEL                - Logging level (default: INFO)
    HTTP_HOST / HTTP_PORT    - HTTP server bind address
    SOURCE_WEIGHTS           - JSON object, source -> reliability weight in (0, 1]
    SOURCE_WEIGHTS_FILE      - Optional JSON file overriding SOURCE_WEIGHTS
    FUSION_*                 - Outlier detection and VWAP tuning
    CONF_*                   - Aggregated confidence blend weights
    PREDICTOR_*              - Bias predictor constants
    STORE_MAX_INSTRUMENTS    - LRU bound on tracked instruments (0 = unbounded)

Production notes:
    - The blend weights have no documented derivation; they are exposed
      here for calibration, the defaults reproduce the reference behavior.
    - SOURCE_WEIGHTS can be hot-updated at runtime through the HTTP control
      endpoint; this file only provides the startup table.
"""

import logging
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SOURCE_WEIGHTS: dict[str, float] = {
    "Pyth": 1.0,
    "WebSocket": 0.95,
    "DeFiLlama": 0.85,
    "CoinGecko": 0.80,
    "Fallback": 0.50,
}


class Settings(BaseSettings):
    """
    Application settings.

    All fields can be configured via environment variables.
    Example: FUSION_MAX_PRICE_AGE_MS=10000 python -m pricefusion serve
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # HTTP server
    HTTP_HOST: str = Field(
        default="0.0.0.0",
        description="HTTP server bind host",
    )
    HTTP_PORT: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="HTTP server bind port",
    )

    # Source reliability
    SOURCE_WEIGHTS: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_SOURCE_WEIGHTS),
        description="Reliability weight per source identifier, each in (0, 1]",
    )
    SOURCE_WEIGHTS_FILE: Optional[str] = Field(
        default=None,
        description="JSON file with a source -> weight object, overrides SOURCE_WEIGHTS",
    )

    # Fusion engine
    FUSION_DEFAULT_SOURCE_WEIGHT: float = Field(
        default=0.5,
        gt=0.0,
        le=1.0,
        description="Weight applied to sources missing from the table",
    )
    FUSION_MAX_PRICE_AGE_MS: int = Field(
        default=5_000,
        ge=1,
        description="Observations older than this are treated as stale outliers",
    )
    FUSION_OUTLIER_Z_THRESHOLD: float = Field(
        default=2.0,
        gt=0.0,
        description="Modified z-score above which a price is an outlier",
    )
    FUSION_MAD_PCT_THRESHOLD: float = Field(
        default=0.05,
        gt=0.0,
        description="Relative deviation from the median used when MAD is zero",
    )
    FUSION_MIN_CONFIDENCE: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Observations below this confidence are filtered",
    )
    FUSION_MIN_SOURCES_FOR_VWAP: int = Field(
        default=2,
        ge=2,
        description="Minimum valid observations for the VWAP path",
    )

    # Aggregated confidence blend
    CONF_W_SOURCE_COUNT: float = Field(default=0.3, ge=0.0, le=1.0)
    CONF_W_SOURCE_QUALITY: float = Field(default=0.5, ge=0.0, le=1.0)
    CONF_CONSISTENCY_BASE: float = Field(default=0.2, ge=0.0, le=1.0)
    CONF_OUTLIER_PENALTY: float = Field(default=0.1, ge=0.0, le=1.0)

    # Bias predictor
    PREDICTOR_HIDDEN_SIZE: int = Field(default=8, ge=1, le=256)
    PREDICTOR_NUM_LEARNERS: int = Field(default=12, ge=1, le=1024)
    PREDICTOR_LEARNING_RATE: float = Field(default=0.1, gt=0.0, le=1.0)
    PREDICTOR_REGULARIZATION: float = Field(default=0.05, ge=0.0)
    PREDICTOR_TEMPORAL_WEIGHT: float = Field(default=0.4, ge=0.0, le=1.0)
    PREDICTOR_ENSEMBLE_WEIGHT: float = Field(default=0.6, ge=0.0, le=1.0)
    PREDICTOR_BASE_SCORE_FACTOR: float = Field(default=0.3, ge=0.0, le=1.0)
    PREDICTOR_BULLISH_THRESHOLD: float = Field(default=0.3)
    PREDICTOR_BEARISH_THRESHOLD: float = Field(default=-0.3)
    PREDICTOR_HISTORY_SIZE: int = Field(default=50, ge=20)
    PREDICTOR_BUFFER_SIZE: int = Field(default=100, ge=1)

    # Instrument state store
    STORE_MAX_INSTRUMENTS: int = Field(
        default=0,
        ge=0,
        description="Evict least recently used instrument beyond this count (0 = unbounded)",
    )

    @field_validator("SOURCE_WEIGHTS")
    @classmethod
    def weights_in_range(cls, v: dict[str, float]) -> dict[str, float]:
        """Every weight must be in (0, 1]."""
        for source, weight in v.items():
            if not 0.0 < weight <= 1.0:
                raise ValueError(f"weight for {source!r} must be in (0, 1], got {weight}")
        return v

    @model_validator(mode="after")
    def validate_thresholds(self) -> "Settings":
        """Thresholds must straddle zero; warn on blend weights not summing to 1."""
        if self.PREDICTOR_BULLISH_THRESHOLD <= 0 or self.PREDICTOR_BEARISH_THRESHOLD >= 0:
            raise ValueError("bullish threshold must be > 0 and bearish threshold < 0")

        blend = self.PREDICTOR_TEMPORAL_WEIGHT + self.PREDICTOR_ENSEMBLE_WEIGHT
        if abs(blend - 1.0) > 1e-9:
            logging.getLogger(__name__).warning(
                "config_blend_unnormalized",
                extra={"temporal_plus_ensemble_weight": round(blend, 3)},
            )

        return self

    def dump(self) -> dict:
        """
        Dump current configuration as dictionary.
        Useful for logging configuration at startup.
        """
        return {
            "log_level": self.LOG_LEVEL,
            "http_host": self.HTTP_HOST,
            "http_port": self.HTTP_PORT,
            "source_weights": self.SOURCE_WEIGHTS,
            "source_weights_file": self.SOURCE_WEIGHTS_FILE,
            "fusion_max_price_age_ms": self.FUSION_MAX_PRICE_AGE_MS,
            "fusion_outlier_z_threshold": self.FUSION_OUTLIER_Z_THRESHOLD,
            "fusion_mad_pct_threshold": self.FUSION_MAD_PCT_THRESHOLD,
            "fusion_min_confidence": self.FUSION_MIN_CONFIDENCE,
            "fusion_min_sources_for_vwap": self.FUSION_MIN_SOURCES_FOR_VWAP,
            "fusion_default_source_weight": self.FUSION_DEFAULT_SOURCE_WEIGHT,
            "conf_w_source_count": self.CONF_W_SOURCE_COUNT,
            "conf_w_source_quality": self.CONF_W_SOURCE_QUALITY,
            "conf_consistency_base": self.CONF_CONSISTENCY_BASE,
            "conf_outlier_penalty": self.CONF_OUTLIER_PENALTY,
            "predictor_blend": [
                self.PREDICTOR_TEMPORAL_WEIGHT,
                self.PREDICTOR_ENSEMBLE_WEIGHT,
            ],
            "predictor_hidden_size": self.PREDICTOR_HIDDEN_SIZE,
            "predictor_num_learners": self.PREDICTOR_NUM_LEARNERS,
            "predictor_thresholds": [
                self.PREDICTOR_BULLISH_THRESHOLD,
                self.PREDICTOR_BEARISH_THRESHOLD,
            ],
            "store_max_instruments": self.STORE_MAX_INSTRUMENTS,
        }


# Global settings instance
settings = Settings()
