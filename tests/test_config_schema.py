"""Tests for docvault_sync.config_schema -- Pydantic models and adapters."""

import pytest
from pydantic import ValidationError

from docvault_sync.config_schema import (
    LoggingConfig,
    ServiceConfig,
    SyncConfig,
    UnifiedConfig,
    build_config,
    to_config,
)
from docvault_sync.sync.planner import DEFAULT_IGNORE_PATTERNS

# -------------------------------------------------------------------------
# UnifiedConfig
# -------------------------------------------------------------------------


class TestUnifiedConfig:
    """Top-level model behaviour."""

    def test_empty_dict_produces_valid_defaults(self):
        config = UnifiedConfig()
        assert config.service.connect_timeout == 10.0
        assert config.service.page_size == 100
        assert config.sync.max_parallel_passes == 2
        assert config.sync.ignore_patterns == list(DEFAULT_IGNORE_PATTERNS)
        assert config.logging.level == "INFO"
        assert config.logging.file is None

    def test_unknown_sections_ignored(self):
        config = UnifiedConfig(**{"service": {}, "unknown_section": {"a": 1}})
        assert not hasattr(config, "unknown_section")

    def test_frozen_model_prevents_mutation(self):
        config = UnifiedConfig()
        with pytest.raises(ValidationError):
            config.sync = SyncConfig()


# -------------------------------------------------------------------------
# Section models
# -------------------------------------------------------------------------


class TestServiceConfig:
    def test_custom_values(self):
        config = ServiceConfig(connect_timeout=3, read_timeout=20, page_size=500)
        assert config.connect_timeout == 3.0
        assert config.page_size == 500

    @pytest.mark.parametrize(
        "field,value",
        [
            ("connect_timeout", 0),
            ("read_timeout", -1),
            ("page_size", 0),
            ("page_size", 1001),
            ("max_parallel_requests", 65),
        ],
    )
    def test_bounds(self, field, value):
        with pytest.raises(ValidationError):
            ServiceConfig(**{field: value})


class TestSyncConfig:
    def test_algorithm_normalised(self):
        assert SyncConfig(checksum_algorithm=" SHA256 ").checksum_algorithm == "sha256"

    @pytest.mark.parametrize(
        "field,value",
        [
            ("max_parallel_passes", 0),
            ("max_parallel_passes", 33),
            ("max_transfer_attempts", 11),
            ("backoff_base", -0.1),
        ],
    )
    def test_bounds(self, field, value):
        with pytest.raises(ValidationError):
            SyncConfig(**{field: value})

    def test_ignore_patterns_default_not_shared(self):
        first = SyncConfig()
        first.ignore_patterns.append("*.tmp")
        assert "*.tmp" not in SyncConfig().ignore_patterns


class TestLoggingConfig:
    def test_custom_values(self):
        config = LoggingConfig(level="DEBUG", file="/tmp/sync.log")
        assert config.level == "DEBUG"
        assert config.file == "/tmp/sync.log"

    def test_frozen_model(self):
        config = LoggingConfig()
        with pytest.raises(ValidationError):
            config.level = "DEBUG"


# -------------------------------------------------------------------------
# build_config()
# -------------------------------------------------------------------------


class TestBuildConfig:
    def test_empty_dict_returns_defaults(self):
        assert build_config({}) == UnifiedConfig()

    def test_partial_sections_fill_defaults(self):
        config = build_config({"sync": {"max_transfer_attempts": 5}})
        assert config.sync.max_transfer_attempts == 5
        assert config.sync.backoff_max == 8.0
        assert config.service == ServiceConfig()

    def test_invalid_values_raise(self):
        with pytest.raises(ValidationError):
            build_config({"service": {"page_size": "lots"}})


# -------------------------------------------------------------------------
# to_config()
# -------------------------------------------------------------------------


class TestToConfig:
    def test_flattens_all_sections(self):
        unified = build_config(
            {
                "service": {"read_timeout": 30, "max_parallel_requests": 8},
                "sync": {
                    "state_dir": "/var/lib/docvault",
                    "backoff_base": 1.0,
                    "ignore_patterns": ["*.tmp"],
                },
                "logging": {"file": "/var/log/docvault.log"},
            }
        )

        config = to_config(unified)

        assert config.state_dir == "/var/lib/docvault"
        assert config.read_timeout == 30.0
        assert config.max_parallel_requests == 8
        assert config.backoff_base == 1.0
        assert config.ignore_patterns == ("*.tmp",)
        assert config.log_file == "/var/log/docvault.log"
        assert config.debug is False

    def test_cli_overrides_win_over_config(self):
        unified = build_config({"sync": {"state_dir": "/from/yaml"}})
        config = to_config(
            unified, cli_overrides={"state_dir": "/from/cli", "debug": True}
        )
        assert config.state_dir == "/from/cli"
        assert config.debug is True

    def test_insecure_from_either_source(self):
        yaml_insecure = build_config({"service": {"insecure": True}})
        assert to_config(yaml_insecure).insecure is True
        assert to_config(UnifiedConfig(), {"insecure": True}).insecure is True
        assert to_config(UnifiedConfig()).insecure is False
