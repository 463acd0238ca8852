"""Tests for app.py -- configuration loading, wiring and the lifespan."""

import pytest
from conftest import TOKEN, FakeDocumentService

from docvault_sync.app import app_lifespan, build_app, load_app_config
from docvault_sync.config import Config
from docvault_sync.credentials import MemoryVault
from docvault_sync.sync.models import SyncStatus


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """No config files, no DOCVAULT_* overrides."""
    for key in (
        "DOCVAULT_SYNC_CONFIG",
        "DOCVAULT_STATE_DIR",
        "DOCVAULT_INSECURE",
        "DOCVAULT_DEBUG",
        "DOCVAULT_MAX_PARALLEL_PASSES",
        "DOCVAULT_MAX_PARALLEL_REQUESTS",
        "XDG_CONFIG_HOME",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def config(tmp_path):
    return Config(state_dir=str(tmp_path / "state"), backoff_base=0, backoff_max=0)


# ---------------------------------------------------------------------------
# load_app_config()
# ---------------------------------------------------------------------------


class TestLoadAppConfig:
    def test_zero_config(self, isolated_env):
        config = load_app_config({"state_dir": str(isolated_env / "state")})
        assert config.state_dir == str(isolated_env / "state")
        assert config.max_parallel_passes == 2

    def test_yaml_project_file(self, isolated_env):
        project = isolated_env / ".docvault_sync" / "config.yml"
        project.parent.mkdir()
        project.write_text(
            "sync:\n"
            f"  state_dir: {isolated_env / 'yaml-state'}\n"
            "  max_parallel_passes: 5\n"
            "service:\n"
            "  page_size: 50\n"
        )

        config = load_app_config()

        assert config.state_dir == str(isolated_env / "yaml-state")
        assert config.max_parallel_passes == 5
        assert config.page_size == 50

    def test_cli_overrides_win(self, isolated_env, monkeypatch):
        monkeypatch.setenv("DOCVAULT_STATE_DIR", str(isolated_env / "env"))
        config = load_app_config(
            {"state_dir": str(isolated_env / "cli"), "insecure": True, "debug": True}
        )
        assert config.state_dir == str(isolated_env / "cli")
        assert config.insecure is True
        assert config.debug is True

    def test_invalid_values_become_runtime_error(self, isolated_env, monkeypatch):
        monkeypatch.setenv("DOCVAULT_MAX_PARALLEL_PASSES", "0")
        with pytest.raises(RuntimeError, match="Configuration error"):
            load_app_config()


# ---------------------------------------------------------------------------
# build_app()
# ---------------------------------------------------------------------------


def test_build_app_wiring(config):
    config.insecure = True
    config.page_size = 25
    app = build_app(config, MemoryVault())

    client = app.directory.client_for("https://docs.example.com/")

    assert client.server_url == "https://docs.example.com"
    assert client.verify is False
    assert client.timeout == config.timeout
    assert client.page_size == 25
    assert app.accounts.list_accounts() == []
    assert app.folders.list_folders() == []


def test_build_app_state_persists(config):
    vault = MemoryVault()
    first = build_app(config, vault)
    first.accounts.add_account("Work", "https://docs.example.com", "me@example.com")

    second = build_app(config, vault)

    assert [a.email for a in second.accounts.list_accounts()] == ["me@example.com"]
    assert (config.state_path / "records" / "accounts.json").exists()


# ---------------------------------------------------------------------------
# app_lifespan()
# ---------------------------------------------------------------------------


class TestLifespan:
    async def test_recovers_interrupted_folders(self, config):
        service = FakeDocumentService()
        async with app_lifespan(config, MemoryVault()) as app:
            account = app.accounts.add_account(
                "Work", "https://docs.example.com", "me@example.com"
            )
            folder = app.folders.create(
                account, service.root, config.state_path.parent / "local"
            )
            app.folders.update(folder, status=SyncStatus.SYNCING, is_enabled=True)

        async with app_lifespan(config, MemoryVault()) as app:
            recovered = app.folders.get(folder.id)

        assert recovered.status == SyncStatus.ERROR
        assert recovered.last_error == "pass interrupted"

    async def test_drains_triggered_passes(self, config, tmp_path, monkeypatch):
        service = FakeDocumentService()
        service.add_file(service.root.id, "a.txt", b"alpha")
        monkeypatch.setattr(
            "docvault_sync.app.DocumentServiceClient",
            lambda server_url, **kwargs: service,
        )

        async with app_lifespan(config, MemoryVault()) as app:
            account = app.accounts.add_account(
                "Work", "https://docs.example.com", "me@example.com", token=TOKEN
            )
            folder = app.folders.create(account, service.root, tmp_path / "local")
            await app.engine.enable(folder)
            app.engine.trigger(folder)

        assert (tmp_path / "local" / "a.txt").read_bytes() == b"alpha"
        assert app.folders.get(folder.id).status == SyncStatus.COMPLETED
