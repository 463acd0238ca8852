"""Unified configuration schema for docvault_sync.

Defines Pydantic models for the unified config structure with dedicated
sections for the document service connection, the sync engine and
logging.  Includes an adapter function onto the flat ``Config`` dataclass.

Usage:
    from docvault_sync.config_schema import UnifiedConfig, build_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = to_config(unified, cli_overrides={"debug": True})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, field_validator

from .sync.planner import DEFAULT_IGNORE_PATTERNS

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class ServiceConfig(BaseModel):
    """Document service transport settings.

    Server URLs and credentials are per account and live in the account
    registry and the credential vault, not here.
    """

    connect_timeout: float = Field(
        default=10.0, gt=0, description="Connect timeout in seconds"
    )
    read_timeout: float = Field(
        default=60.0, gt=0, description="Read timeout in seconds"
    )
    insecure: bool = Field(
        default=False,
        description="Disable SSL verification (development only)",
    )
    page_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Items per page when listing folder children (1-1000)",
    )
    max_parallel_requests: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Maximum concurrent requests to the service (1-64)",
    )

    model_config = {"frozen": True}


class SyncConfig(BaseModel):
    """Sync engine settings."""

    state_dir: str = Field(
        default="~/.local/share/docvault_sync",
        description="Directory for account/folder records and snapshots",
    )
    max_parallel_passes: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Folder passes running at once (1-32)",
    )
    max_transfer_attempts: int = Field(
        default=3, ge=1, le=10, description="Attempts per transfer (1-10)"
    )
    backoff_base: float = Field(
        default=0.5, ge=0, description="First retry delay in seconds"
    )
    backoff_max: float = Field(
        default=8.0, ge=0, description="Maximum retry delay in seconds"
    )
    checksum_algorithm: str = Field(
        default="sha256", description="hashlib algorithm matching the service"
    )
    ignore_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_IGNORE_PATTERNS),
        description="fnmatch patterns of names never synced",
    )

    model_config = {"frozen": True}

    @field_validator("checksum_algorithm")
    @classmethod
    def _lower_algorithm(cls, value: str) -> str:
        return value.strip().lower()


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has sensible defaults, so ``UnifiedConfig()``
    (zero-config) is always valid.
    """

    service: ServiceConfig = Field(default_factory=ServiceConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully; anything absent gets defaults.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


# ---------------------------------------------------------------------------
# Adapter: UnifiedConfig -> Config dataclass
# ---------------------------------------------------------------------------


def to_config(
    unified: UnifiedConfig,
    cli_overrides: dict | None = None,
) -> Config:
    """Flatten a ``UnifiedConfig`` into the ``Config`` dataclass, applying
    CLI overrides on top.

    CLI overrides dict keys: state_dir, insecure, debug.

    Returns:
        ``Config`` instance (NOT validated; caller should run
        ``validate_config()`` separately if needed).
    """
    from .config import Config

    overrides = cli_overrides or {}

    return Config(
        state_dir=overrides.get("state_dir") or unified.sync.state_dir,
        insecure=overrides.get("insecure", False) or unified.service.insecure,
        debug=overrides.get("debug", False),
        connect_timeout=unified.service.connect_timeout,
        read_timeout=unified.service.read_timeout,
        page_size=unified.service.page_size,
        max_parallel_requests=unified.service.max_parallel_requests,
        max_parallel_passes=unified.sync.max_parallel_passes,
        max_transfer_attempts=unified.sync.max_transfer_attempts,
        backoff_base=unified.sync.backoff_base,
        backoff_max=unified.sync.backoff_max,
        checksum_algorithm=unified.sync.checksum_algorithm,
        ignore_patterns=tuple(unified.sync.ignore_patterns),
        log_file=unified.logging.file,
    )
