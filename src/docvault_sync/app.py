"""Application wiring: configuration, stores, registries and the engine."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv

from .config import Config, load_config
from .config_loader import discover_config_files, load_hierarchical_config
from .config_schema import build_config
from .core.client import DocumentServiceClient, ServiceDirectory
from .core.interfaces import CredentialVault
from .credentials import CredentialContext, EnvironmentVault
from .registry.accounts import AccountRegistry
from .registry.folders import SyncFolderRegistry
from .registry.store import JsonRecordStore
from .sync.engine import SyncEngine
from .sync.integrity import IntegrityValidator
from .sync.state import SnapshotStore

logger = logging.getLogger(__name__)


@dataclass
class SyncApp:
    """Everything a front end needs, built once per process."""

    config: Config
    accounts: AccountRegistry
    folders: SyncFolderRegistry
    snapshots: SnapshotStore
    credentials: CredentialContext
    directory: ServiceDirectory
    engine: SyncEngine


def load_app_config(config_overrides: dict[str, Any] | None = None) -> Config:
    """Resolve configuration from CLI overrides, env, .env and YAML.

    Raises:
        RuntimeError: If the merged configuration is invalid.
    """
    try:
        # .env first so ${VAR} interpolation in YAML can use its values
        load_dotenv()

        unified = None
        config_files = discover_config_files()
        if config_files:
            unified = build_config(load_hierarchical_config())
            logger.info("Configuration loaded from: %s", config_files[0])

        overrides = config_overrides or {}
        return load_config(
            state_dir=overrides.get("state_dir"),
            insecure=overrides.get("insecure", False),
            debug=overrides.get("debug", False),
            unified=unified,
        )
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise RuntimeError(f"Configuration error: {e}") from e


def build_app(config: Config, vault: CredentialVault | None = None) -> SyncApp:
    """Build stores, registries and the engine for *config*."""
    state_path = config.state_path
    records = JsonRecordStore(state_path / "records")
    snapshots = SnapshotStore(state_path / "snapshots")
    credentials = CredentialContext(vault or EnvironmentVault())

    accounts = AccountRegistry(records, credentials)
    folders = SyncFolderRegistry(records, snapshots)
    directory = ServiceDirectory(
        lambda server_url: DocumentServiceClient(
            server_url,
            timeout=config.timeout,
            verify=not config.insecure,
            page_size=config.page_size,
        )
    )
    engine = SyncEngine(
        accounts,
        folders,
        snapshots,
        directory,
        credentials,
        validator=IntegrityValidator(config.checksum_algorithm),
        max_parallel_passes=config.max_parallel_passes,
        max_parallel_requests=config.max_parallel_requests,
        max_transfer_attempts=config.max_transfer_attempts,
        backoff_base=config.backoff_base,
        backoff_max=config.backoff_max,
        ignore_patterns=config.ignore_patterns,
    )
    return SyncApp(
        config=config,
        accounts=accounts,
        folders=folders,
        snapshots=snapshots,
        credentials=credentials,
        directory=directory,
        engine=engine,
    )


@asynccontextmanager
async def app_lifespan(
    config: Config, vault: CredentialVault | None = None
) -> AsyncIterator[SyncApp]:
    """Build the app inside the running loop and drain passes on exit.

    On startup the engine recovers folders left ``syncing`` by a crashed
    process.  On shutdown, passes scheduled with ``trigger`` are awaited.
    """
    logger.info("docvault-sync starting (state: %s)", config.state_path)
    app = build_app(config, vault)
    logger.info(
        "%d accounts, %d sync folders",
        len(app.accounts.list_accounts()),
        len(app.folders.list_folders()),
    )
    try:
        yield app
    finally:
        await app.engine.drain()
        logger.info("docvault-sync shutting down")
