"""Runtime configuration for the sync daemon and CLI.

Reads engine and transport settings from CLI args, environment variables,
.env files, and the YAML config.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    DOCVAULT_STATE_DIR: Directory for records and snapshots (optional)
    DOCVAULT_INSECURE: Skip SSL verification (optional, default: false)
    DOCVAULT_DEBUG: Enable debug logging (optional, default: false)
    DOCVAULT_MAX_PARALLEL_PASSES: Concurrent folder passes (optional, default: 2)
    DOCVAULT_MAX_PARALLEL_REQUESTS: Concurrent service requests (optional, default: 4)
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .config_schema import UnifiedConfig, to_config
from .sync.planner import DEFAULT_IGNORE_PATTERNS

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = "~/.local/share/docvault_sync"


@dataclass
class Config:
    state_dir: str = DEFAULT_STATE_DIR
    insecure: bool = False
    debug: bool = False
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    page_size: int = 100
    max_parallel_requests: int = 4
    max_parallel_passes: int = 2
    max_transfer_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    checksum_algorithm: str = "sha256"
    ignore_patterns: tuple[str, ...] = DEFAULT_IGNORE_PATTERNS
    log_file: str | None = None

    @property
    def state_path(self) -> Path:
        return Path(self.state_dir).expanduser()

    @property
    def timeout(self) -> tuple[float, float]:
        return (self.connect_timeout, self.read_timeout)


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the state directory is unusable, a limit is out of
            range, or the checksum algorithm is unknown.
    """
    config.state_dir = config.state_dir.strip()
    if not config.state_dir:
        raise ValueError(
            "State directory cannot be empty. Set DOCVAULT_STATE_DIR or sync.state_dir."
        )
    if config.state_path.exists() and not config.state_path.is_dir():
        raise ValueError(
            f"Invalid state directory '{config.state_dir}': not a directory"
        )

    if config.max_parallel_passes < 1:
        raise ValueError("max_parallel_passes must be at least 1")
    if config.max_parallel_requests < 1:
        raise ValueError("max_parallel_requests must be at least 1")
    if config.max_transfer_attempts < 1:
        raise ValueError("max_transfer_attempts must be at least 1")
    if config.backoff_base < 0 or config.backoff_max < 0:
        raise ValueError("Retry backoff delays cannot be negative")

    if config.checksum_algorithm not in hashlib.algorithms_available:
        raise ValueError(
            f"Unknown checksum algorithm '{config.checksum_algorithm}'"
        )

    if config.insecure:
        logger.warning(
            "WARNING: SSL verification disabled (insecure=True). Use only for development."
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _get_int_env(key: str, low: int, high: int) -> int | None:
    raw = os.getenv(key)
    if raw is None:
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {key} '{raw}': must be a number between {low} and {high}"
        )
    return value


def load_config(
    state_dir: str | None = None,
    insecure: bool = False,
    debug: bool = False,
    unified: UnifiedConfig | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > YAML (``unified``) > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        state_dir: Override the state directory.
        insecure: Skip SSL verification (CLI flag).
        debug: Enable debug logging (CLI flag).
        unified: Parsed YAML config; defaults apply when ``None``.

    Returns:
        Validated Config instance.
    """
    config = to_config(unified or UnifiedConfig())

    config.state_dir = state_dir or os.getenv("DOCVAULT_STATE_DIR") or config.state_dir

    if insecure:
        config.insecure = True
    else:
        env_insecure = _get_bool_env("DOCVAULT_INSECURE")
        if env_insecure is not None:
            config.insecure = env_insecure

    if debug:
        config.debug = True
    else:
        config.debug = bool(_get_bool_env("DOCVAULT_DEBUG"))

    passes = _get_int_env("DOCVAULT_MAX_PARALLEL_PASSES", 1, 32)
    if passes is not None:
        config.max_parallel_passes = passes

    requests_limit = _get_int_env("DOCVAULT_MAX_PARALLEL_REQUESTS", 1, 64)
    if requests_limit is not None:
        config.max_parallel_requests = requests_limit

    validate_config(config)

    return config
