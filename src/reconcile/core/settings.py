"""
Centralized settings for the reconcile engine.

Manifesto:
    Worker counts, fairness limits and join timeouts are deployment
    decisions, not code.  ``EngineSettings`` is one validated, cached
    source of truth for them, readable from ``RECONCILE_*`` environment
    variables or a ``.env`` file.

Tags:
    reconcile, configuration, settings, pydantic, caching, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Reconcile engine configuration.

    All fields can be set via ``RECONCILE_*`` environment variables (e.g.
    ``RECONCILE_MAX_WORKERS=8``) or through a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="RECONCILE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Scheduler ────────────────────────────────────────────────
    scheduler_name: str = Field(default="reconcile", description="Thread name prefix for workers")
    max_workers: int = Field(default=4, description="Size of the worker pool")
    max_steps_per_slice: int = Field(
        default=100,
        description="Consecutive Continue steps before a task yields its worker",
    )
    shutdown_timeout_seconds: float = Field(default=30.0)

    # ── Tasks ────────────────────────────────────────────────────
    fan_out_timeout_seconds: float | None = Field(
        default=None,
        description="Default join timeout for fan-out; None waits for every child",
    )
    breadcrumb_limit: int = Field(default=64)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @field_validator("max_workers", "max_steps_per_slice", "breadcrumb_limit")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value

    @field_validator("fan_out_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("must be > 0 or unset")
        return value

    @property
    def json_logs(self) -> bool:
        return self.log_format.lower() == "json"


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, EngineSettings] = {}


def get_settings(*, _force_reload: bool = False) -> EngineSettings:
    """Load, validate, and cache an :class:`EngineSettings` instance.

    The first call reads the environment; later calls return the cached
    object until ``_force_reload=True`` is passed.
    """
    if _force_reload or "default" not in _settings_cache:
        _settings_cache["default"] = EngineSettings()
    return _settings_cache["default"]


def clear_settings_cache() -> None:
    """Drop the cached settings (used by tests)."""
    _settings_cache.clear()


__all__ = ["EngineSettings", "get_settings", "clear_settings_cache"]
