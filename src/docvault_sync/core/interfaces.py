"""Protocols for the collaborators the engine consumes.

``RemoteDocumentService`` is implemented over HTTP by
``core.client.DocumentServiceClient``; tests substitute an in-memory fake.
``CredentialVault`` abstracts the platform secret store; see
``docvault_sync.credentials`` for the bundled implementations.

Every service method may raise ``AuthError``, ``NotFound``,
``PermissionDenied`` or ``NetworkFailure`` from ``docvault_sync.errors``.
"""

from __future__ import annotations

from typing import BinaryIO, Iterator, Protocol

from ..sync.models import NodeKind, RemoteNode


class RemoteDocumentService(Protocol):
    """Folder/file operations of the document-management service."""

    def list_root_folders(self, token: str) -> list[RemoteNode]:
        ...  # pragma: no cover

    def list_children(self, token: str, folder_id: str) -> list[RemoteNode]:
        """Return all direct children (folders and files), all pages."""
        ...  # pragma: no cover

    def get_detail(
        self, token: str, node_id: str, kind: NodeKind = NodeKind.FOLDER
    ) -> RemoteNode:
        """Return one node.  Files and folders have separate id spaces."""
        ...  # pragma: no cover

    def download(self, token: str, file_id: str) -> Iterator[bytes]:
        """Stream the file's content in chunks."""
        ...  # pragma: no cover

    def upload(
        self, token: str, folder_id: str, name: str, stream: BinaryIO
    ) -> RemoteNode:
        """Create or replace the file *name* in *folder_id*."""
        ...  # pragma: no cover

    def delete(self, token: str, node_id: str, kind: NodeKind) -> None:
        ...  # pragma: no cover

    def create_folder(
        self, token: str, parent_id: str, name: str
    ) -> RemoteNode:
        ...  # pragma: no cover


class CredentialVault(Protocol):
    """Secure secret storage keyed by account key."""

    def get_token(self, key: str) -> str | None:
        ...  # pragma: no cover

    def set_token(self, key: str, token: str) -> None:
        ...  # pragma: no cover

    def delete(self, key: str) -> None:
        ...  # pragma: no cover
