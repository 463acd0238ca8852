"""Shared pytest fixtures for docvault-sync tests."""

from __future__ import annotations

import hashlib
import io
import itertools
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterator

import pytest

import docvault_sync.core.async_utils as async_utils
from docvault_sync.credentials import CredentialContext, MemoryVault
from docvault_sync.errors import AuthError, NetworkFailure, NotFound
from docvault_sync.registry.accounts import AccountRegistry
from docvault_sync.registry.folders import SyncFolderRegistry
from docvault_sync.registry.store import MemoryRecordStore
from docvault_sync.sync.engine import SyncEngine
from docvault_sync.sync.models import (
    CAP_CREATE,
    CAP_DELETE_DOCUMENT,
    CAP_DELETE_FOLDER,
    CAP_DOWNLOAD,
    CAP_EDIT,
    CAP_LIST,
    Account,
    ConflictPolicy,
    NodeKind,
    RemoteNode,
    SyncDirection,
    SyncFolder,
)
from docvault_sync.sync.state import SnapshotStore

ALL_CAPS = frozenset(
    {
        CAP_LIST,
        CAP_DOWNLOAD,
        CAP_CREATE,
        CAP_EDIT,
        CAP_DELETE_DOCUMENT,
        CAP_DELETE_FOLDER,
    }
)
READ_ONLY_CAPS = frozenset({CAP_LIST, CAP_DOWNLOAD})

SERVER_URL = "https://docs.example.com"
TOKEN = "token-1"


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FakeDocumentService:
    """In-memory ``RemoteDocumentService``.

    Holds a tree of ``RemoteNode`` records plus file contents.  Uploading
    to an existing name replaces the file and bumps its version, like the
    real service.  Every call is appended to ``calls``.
    """

    def __init__(self) -> None:
        self.nodes: dict[str, RemoteNode] = {}
        self.contents: dict[str, bytes] = {}
        self.calls: list[tuple] = []
        self.valid_tokens: set[str] | None = None
        self.download_failures = 0
        self.corrupt_downloads = 0
        self.broken: set[str] = set()
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.root = self.add_folder(None, "Shared")

    # -- test helpers ------------------------------------------------------

    def _next_id(self) -> str:
        return str(next(self._ids))

    def add_folder(
        self,
        parent_id: str | None,
        name: str,
        permissions: frozenset[str] = ALL_CAPS,
    ) -> RemoteNode:
        node = RemoteNode(
            id=self._next_id(),
            name=name,
            parent_id=parent_id,
            kind=NodeKind.FOLDER,
            permissions=permissions,
        )
        self.nodes[node.id] = node
        return node

    def add_file(
        self,
        parent_id: str,
        name: str,
        content: bytes,
        permissions: frozenset[str] = ALL_CAPS,
    ) -> RemoteNode:
        node = RemoteNode(
            id=self._next_id(),
            name=name,
            parent_id=parent_id,
            kind=NodeKind.FILE,
            size=len(content),
            checksum=sha256(content),
            version=1,
            permissions=permissions,
            updated_at=datetime(2026, 10, 19, 12, 5, 0, tzinfo=timezone.utc),
        )
        self.nodes[node.id] = node
        self.contents[node.id] = content
        return node

    def edit_file(self, node_id: str, content: bytes) -> RemoteNode:
        node = self.nodes[node_id].model_copy(
            update={
                "size": len(content),
                "checksum": sha256(content),
                "version": self.nodes[node_id].version + 1,
            }
        )
        self.nodes[node_id] = node
        self.contents[node_id] = content
        return node

    def remove(self, node_id: str) -> None:
        for child in [n for n in self.nodes.values() if n.parent_id == node_id]:
            self.remove(child.id)
        self.nodes.pop(node_id, None)
        self.contents.pop(node_id, None)

    def find(self, relative_path: str, root_id: str | None = None) -> RemoteNode | None:
        current = root_id or self.root.id
        node = None
        for part in relative_path.split("/"):
            node = next(
                (
                    n
                    for n in self.nodes.values()
                    if n.parent_id == current and n.name == part
                ),
                None,
            )
            if node is None:
                return None
            current = node.id
        return node

    def content_at(self, relative_path: str) -> bytes | None:
        node = self.find(relative_path)
        return None if node is None else self.contents.get(node.id)

    def calls_to(self, method: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == method]

    def _enter(self, method: str, token: str, *args) -> None:
        with self._lock:
            self.calls.append((method, token) + args)
        if self.valid_tokens is not None and token not in self.valid_tokens:
            raise AuthError(f"{method}: token rejected")

    def _get(self, node_id: str, kind: NodeKind | None = None) -> RemoteNode:
        node = self.nodes.get(node_id)
        if node is None or (kind is not None and node.kind != kind):
            raise NotFound(f"Node {node_id} not found")
        return node

    # -- RemoteDocumentService ---------------------------------------------

    def list_root_folders(self, token: str) -> list[RemoteNode]:
        self._enter("list_root_folders", token)
        return [n for n in self.nodes.values() if n.parent_id is None]

    def list_children(self, token: str, folder_id: str) -> list[RemoteNode]:
        self._enter("list_children", token, folder_id)
        self._get(folder_id)
        return [n for n in self.nodes.values() if n.parent_id == folder_id]

    def get_detail(
        self, token: str, node_id: str, kind: NodeKind = NodeKind.FOLDER
    ) -> RemoteNode:
        self._enter("get_detail", token, node_id)
        return self._get(node_id, kind)

    def download(self, token: str, file_id: str) -> Iterator[bytes]:
        self._enter("download", token, file_id)
        if file_id in self.broken:
            raise NetworkFailure(f"download of {file_id} refused")
        content = self.contents[self._get(file_id).id]
        with self._lock:
            if self.download_failures > 0:
                self.download_failures -= 1
                raise NetworkFailure("connection reset")
            if self.corrupt_downloads > 0:
                self.corrupt_downloads -= 1
                content = content + b"garbage"
        return iter([content[:3], content[3:]])

    def upload(
        self, token: str, folder_id: str, name: str, stream: BinaryIO
    ) -> RemoteNode:
        self._enter("upload", token, folder_id, name)
        data = stream.read()
        with self._lock:
            existing = next(
                (
                    n
                    for n in self.nodes.values()
                    if n.parent_id == folder_id and n.name == name
                ),
                None,
            )
            if existing is not None:
                return self.edit_file(existing.id, data)
            return self.add_file(folder_id, name, data)

    def delete(self, token: str, node_id: str, kind: NodeKind) -> None:
        self._enter("delete", token, node_id)
        self._get(node_id, kind)
        with self._lock:
            self.remove(node_id)

    def create_folder(self, token: str, parent_id: str, name: str) -> RemoteNode:
        self._enter("create_folder", token, parent_id, name)
        with self._lock:
            return self.add_folder(parent_id, name)


@dataclass
class Harness:
    """Engine wired to in-memory stores and a fake service."""

    tmp_path: Path
    service: FakeDocumentService
    vault: MemoryVault
    credentials: CredentialContext
    accounts: AccountRegistry
    folders: SyncFolderRegistry
    snapshots: SnapshotStore
    engine: SyncEngine

    @property
    def local(self) -> Path:
        return self.tmp_path / "local"

    def add_account(
        self,
        email: str = "user@example.com",
        server_url: str = SERVER_URL,
        token: str | None = TOKEN,
    ) -> Account:
        account = self.accounts.add_account("Test", server_url, email)
        if token:
            self.credentials.store_token(account.key, token)
        return account

    async def add_folder(
        self,
        account: Account,
        remote: RemoteNode | None = None,
        local: Path | None = None,
        direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
        policy: ConflictPolicy = ConflictPolicy.REMOTE_WINS,
        enable: bool = True,
    ) -> SyncFolder:
        folder = self.folders.create(
            account,
            remote or self.service.root,
            local or self.local,
            direction=direction,
            policy=policy,
        )
        if enable:
            folder = await self.engine.enable(folder)
        return folder

    def entries(self, folder: SyncFolder) -> dict:
        return self.snapshots.load(folder.id)["entries"]


def build_harness(
    tmp_path: Path,
    service: FakeDocumentService | None = None,
    store: MemoryRecordStore | None = None,
    vault: MemoryVault | None = None,
    **engine_options,
) -> Harness:
    service = service or FakeDocumentService()
    store = store or MemoryRecordStore()
    vault = vault or MemoryVault()
    credentials = CredentialContext(vault)
    snapshots = SnapshotStore(tmp_path / "state")
    accounts = AccountRegistry(store, credentials)
    folders = SyncFolderRegistry(store, snapshots)
    engine_options.setdefault("backoff_base", 0)
    engine_options.setdefault("backoff_max", 0)
    engine = SyncEngine(
        accounts, folders, snapshots, service, credentials, **engine_options
    )
    return Harness(
        tmp_path=tmp_path,
        service=service,
        vault=vault,
        credentials=credentials,
        accounts=accounts,
        folders=folders,
        snapshots=snapshots,
        engine=engine,
    )


def write(path: Path, content: bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


@pytest.fixture(autouse=True)
def _reset_semaphore():
    """Each test gets a fresh request semaphore bound to its own loop."""
    original = async_utils._semaphore
    async_utils._semaphore = None
    yield
    async_utils._semaphore = original


@pytest.fixture
def service() -> FakeDocumentService:
    return FakeDocumentService()


@pytest.fixture
def harness(tmp_path, service) -> Harness:
    return build_harness(tmp_path, service)


@pytest.fixture
def stream() -> io.BytesIO:
    return io.BytesIO(b"hello world")
