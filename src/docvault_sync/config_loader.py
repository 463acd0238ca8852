"""YAML settings files for docvault-sync.

Settings live in up to three layers, read from the least to the most
specific:

    $XDG_CONFIG_HOME/docvault_sync/config.yml   per user
    ./.docvault_sync/config.yaml, config.yml    per working directory
    $DOCVAULT_SYNC_CONFIG                       explicit file

A later layer replaces whole top-level sections (``service``, ``sync``,
``logging``) of an earlier one.  ``sync.ignore_patterns`` is the exception:
patterns from every layer are kept, so a working-directory file only adds
names to the user-wide list.

Files may pull in other files with ``!include other.yml`` (relative to the
including file) and reference the environment as ``${VAR}`` or
``${VAR:-fallback}``.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DOCVAULT_SYNC_CONFIG"
PROJECT_DIR = ".docvault_sync"
CONFIG_NAMES = ("config.yml", "config.yaml")

_ENV_REF = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


# ---------------------------------------------------------------------------
# Environment references
# ---------------------------------------------------------------------------


def expand_env_vars(value: str) -> str:
    """Expand ``${VAR}`` and ``${VAR:-fallback}`` in *value*.

    An unset or empty variable expands to its fallback, or to ``""``.
    A ``${`` without a closing brace is kept as written.
    """
    return _ENV_REF.sub(
        lambda m: os.environ.get(m.group(1)) or m.group(2) or "", value
    )


def _expand_all(node: Any) -> Any:
    if isinstance(node, str):
        return expand_env_vars(node)
    if isinstance(node, list):
        return [_expand_all(item) for item in node]
    if isinstance(node, dict):
        return {key: _expand_all(item) for key, item in node.items()}
    return node


# ---------------------------------------------------------------------------
# !include
# ---------------------------------------------------------------------------


class IncludeLoader(yaml.SafeLoader):
    """Safe loader that understands ``!include``.

    *chain* holds the files currently being read, outermost first, so a
    file that includes itself (directly or not) is rejected.  Registering
    the tag on this subclass keeps ``yaml.safe_load`` untouched.
    """

    def __init__(self, stream: Any, chain: tuple[Path, ...] = ()) -> None:
        super().__init__(stream)
        self.chain = chain

    def construct_include(self, node: yaml.ScalarNode) -> Any:
        ref = Path(self.construct_scalar(node)).expanduser()
        including = self.chain[-1]
        target = (ref if ref.is_absolute() else including.parent / ref).resolve()

        if target in self.chain:
            cycle = " -> ".join(str(p) for p in (*self.chain, target))
            raise ValueError(f"Circular include detected: {cycle}")
        if not target.is_file():
            raise FileNotFoundError(
                f"Include file not found: {target} (included from {including})"
            )
        return read_yaml(target, self.chain)


IncludeLoader.add_constructor("!include", IncludeLoader.construct_include)


def read_yaml(path: Path, chain: tuple[Path, ...] = ()) -> Any:
    """Parse one settings file, following its includes."""
    path = path.resolve()
    with path.open(encoding="utf-8") as fh:
        loader = IncludeLoader(fh, (*chain, path))
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def global_config_dir() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / "docvault_sync"


def discover_config_files() -> list[Path]:
    """Existing settings files, most specific first."""
    candidates = []
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())
    candidates.extend(Path.cwd() / PROJECT_DIR / name for name in CONFIG_NAMES)
    candidates.append(global_config_dir() / CONFIG_NAMES[0])
    return [path for path in candidates if path.exists()]


def resolve_config_path() -> Path:
    """The file settings are read from first, or where one would be created."""
    found = discover_config_files()
    return found[0] if found else Path.cwd() / PROJECT_DIR / CONFIG_NAMES[0]


_STARTER_CONFIG = """\
# docvault-sync configuration
#
# Accounts and sync folders are managed with the docvault-sync CLI and
# stored under sync.state_dir.  Tokens are read from the environment:
#   DOCVAULT_TOKEN__<ACCOUNT_KEY>, or DOCVAULT_TOKEN for every account
#
# service:
#   connect_timeout: 10
#   read_timeout: 60
#   insecure: false
#   page_size: 100
#   max_parallel_requests: 4
#
# sync:
#   state_dir: ~/.local/share/docvault_sync
#   max_parallel_passes: 2
#   max_transfer_attempts: 3
#   backoff_base: 0.5
#   backoff_max: 8
#   checksum_algorithm: sha256
#   ignore_patterns:
#     - .DS_Store
#     - Thumbs.db
#     - desktop.ini
#
# logging:
#   level: INFO
#   file: null
"""


def ensure_config(target: Path | None = None) -> Path:
    """Return the settings file in use, writing a commented starter if none exists."""
    found = discover_config_files()
    if found:
        logger.debug("Using config file %s", found[0])
        return found[0]

    path = target or resolve_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", path)
    return path


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Read every discovered file and combine them into one mapping.

    Environment references are expanded after combining.  With no files
    the result is ``{}`` and built-in defaults apply.
    """
    merged: dict[str, Any] = {}
    for path in reversed(discover_config_files()):
        logger.debug("Loading config: %s", path)
        try:
            layer = read_yaml(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise
        if isinstance(layer, dict):
            _apply_layer(merged, layer)
        elif layer is not None:
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(layer).__name__,
            )
    return _expand_all(merged)


def _apply_layer(merged: dict[str, Any], layer: dict[str, Any]) -> None:
    patterns = _ignore_patterns(merged) + _ignore_patterns(layer)
    merged.update(layer)
    if patterns:
        sync = dict(merged.get("sync") or {})
        sync["ignore_patterns"] = list(dict.fromkeys(patterns))
        merged["sync"] = sync


def _ignore_patterns(data: dict[str, Any]) -> list[str]:
    sync = data.get("sync")
    if not isinstance(sync, dict):
        return []
    patterns = sync.get("ignore_patterns") or []
    return [str(p) for p in patterns] if isinstance(patterns, list) else []
