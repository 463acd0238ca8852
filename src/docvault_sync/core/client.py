"""HTTP client for the document-management service.

Implements ``RemoteDocumentService`` over the service's REST API.  Every
response uses the envelope ``{status, data, notifications, errors}``.
HTTP failures are translated into the ``docvault_sync.errors`` taxonomy:

- 401 -> ``AuthError``
- 403 -> ``PermissionDenied``
- 404 -> ``NotFound``
- 408, 429, 5xx, connection errors, timeouts -> ``NetworkFailure``
"""

import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, BinaryIO, Callable, Iterator

import requests

from ..errors import (
    AuthError,
    NetworkFailure,
    NotFound,
    PermissionDenied,
    SyncError,
)
from ..sync.models import CAP_LIST, Account, NodeKind, RemoteNode

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 256 * 1024
_TRANSIENT_STATUS = {408, 429, 500, 502, 503, 504}


class DocumentServiceClient:
    """Thread-safe client for one service base URL.

    Each worker thread gets its own ``requests.Session``; the bearer token
    is passed per call so one client can serve several accounts on the
    same server.

    Args:
        server_url: Base URL, e.g. ``https://docs.example.com``.
        timeout: ``(connect, read)`` timeout in seconds.
        verify: Verify TLS certificates.
        page_size: Items requested per page when listing children.
    """

    def __init__(
        self,
        server_url: str,
        timeout: tuple[float, float] = (10, 60),
        verify: bool = True,
        page_size: int = 100,
    ):
        self.server_url = server_url.rstrip("/")
        self.timeout = timeout
        self.verify = verify
        self.page_size = page_size
        self._thread_local = threading.local()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _get_session(self) -> requests.Session:
        """Get or create a thread-local requests.Session."""
        if not hasattr(self._thread_local, "session"):
            self._thread_local.session = self._create_session()
        return self._thread_local.session

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.verify = self.verify
        session.headers.update(
            {"Accept-Language": "en", "Accept": "application/json"}
        )
        return session

    def _request(
        self,
        method: str,
        path: str,
        token: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        stream: bool = False,
    ) -> requests.Response:
        url = f"{self.server_url}{path}"
        all_headers = {"Authorization": f"Bearer {token}"}
        all_headers.update(headers or {})
        logger.debug("%s %s", method, url)
        try:
            response = self._get_session().request(
                method,
                url,
                params=params,
                json=json,
                files=files,
                headers=all_headers,
                timeout=self.timeout,
                stream=stream,
            )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise NetworkFailure(f"{method} {path}: {exc}") from exc
        except requests.RequestException as exc:
            raise NetworkFailure(f"{method} {path}: {exc}") from exc

        self._raise_for_status(response, f"{method} {path}")
        return response

    @staticmethod
    def _raise_for_status(response: requests.Response, what: str) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        message = _error_message(response)
        detail = f"{what} failed ({status}): {message}"
        if status == 401:
            raise AuthError(detail)
        if status == 403:
            raise PermissionDenied(detail)
        if status == 404:
            raise NotFound(detail)
        if status in _TRANSIENT_STATUS or status >= 500:
            raise NetworkFailure(detail)
        raise SyncError(detail)

    @staticmethod
    def _data(response: requests.Response) -> Any:
        try:
            payload = response.json()
        except ValueError as exc:
            raise SyncError(f"Invalid JSON from service: {exc}") from exc
        return payload.get("data") if isinstance(payload, dict) else payload

    def _paged(self, path: str, token: str) -> Iterator[dict]:
        """Yield every non-null item of a paginated listing."""
        page = 1
        while True:
            response = self._request(
                "GET",
                path,
                token,
                params={"page": page, "per_page": self.page_size},
            )
            batch = self._data(response) or []
            for item in batch:
                if item is not None:
                    yield item
            if len(batch) < self.page_size:
                return
            page += 1

    @staticmethod
    def _node_path(node_id: str, kind: NodeKind) -> str:
        # files and folders have separate id spaces
        if kind == NodeKind.FILE:
            return f"/api/files/{node_id}"
        return f"/api/folders/{node_id}"

    # ------------------------------------------------------------------
    # RemoteDocumentService
    # ------------------------------------------------------------------

    def list_root_folders(self, token: str) -> list[RemoteNode]:
        """Return the top-level departments as folder nodes."""
        response = self._request(
            "GET", "/api/departments", token, params={"slim": "true"}
        )
        roots = []
        for item in self._data(response) or []:
            if item is None:
                continue
            roots.append(
                RemoteNode(
                    id=str(item["id"]),
                    name=item.get("raw_file_name") or item.get("name", ""),
                    parent_id=None,
                    kind=NodeKind.FOLDER,
                    permissions=frozenset(
                        item.get("permissions") or [CAP_LIST]
                    ),
                )
            )
        logger.info("Fetched %d root folders", len(roots))
        return roots

    def list_children(self, token: str, folder_id: str) -> list[RemoteNode]:
        folders = [
            node_from_payload(item, NodeKind.FOLDER, parent_id=folder_id)
            for item in self._paged(
                f"/api/folders/{folder_id}/children", token
            )
        ]
        files = [
            node_from_payload(item, NodeKind.FILE, parent_id=folder_id)
            for item in self._paged(f"/api/folders/{folder_id}/files", token)
        ]
        logger.debug(
            "Folder %s: %d folders, %d files",
            folder_id,
            len(folders),
            len(files),
        )
        return folders + files

    def get_detail(
        self, token: str, node_id: str, kind: NodeKind = NodeKind.FOLDER
    ) -> RemoteNode:
        response = self._request("GET", self._node_path(node_id, kind), token)
        return node_from_payload(self._data(response), kind)

    def download(self, token: str, file_id: str) -> Iterator[bytes]:
        response = self._request(
            "GET",
            f"/api/files/{file_id}/download",
            token,
            headers={"Accept": "application/octet-stream"},
            stream=True,
        )

        def _chunks() -> Iterator[bytes]:
            try:
                for chunk in response.iter_content(DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        yield chunk
            except requests.RequestException as exc:
                raise NetworkFailure(
                    f"Download of {file_id} interrupted: {exc}"
                ) from exc
            finally:
                response.close()

        return _chunks()

    def upload(
        self, token: str, folder_id: str, name: str, stream: BinaryIO
    ) -> RemoteNode:
        response = self._request(
            "POST",
            f"/api/folders/{folder_id}/upload",
            token,
            files={"file": (name, stream)},
        )
        node = node_from_payload(
            self._data(response), NodeKind.FILE, parent_id=folder_id
        )
        logger.info("Uploaded %s to folder %s", name, folder_id)
        return node

    def delete(self, token: str, node_id: str, kind: NodeKind) -> None:
        self._request("DELETE", self._node_path(node_id, kind), token)
        logger.info("Deleted remote %s %s", kind.value, node_id)

    def create_folder(
        self, token: str, parent_id: str, name: str
    ) -> RemoteNode:
        response = self._request(
            "POST",
            "/api/folders",
            token,
            json={"name": name, "parentId": parent_id},
        )
        return node_from_payload(
            self._data(response), NodeKind.FOLDER, parent_id=parent_id
        )


# ---------------------------------------------------------------------------
# Multi-server routing
# ---------------------------------------------------------------------------

_current_server: ContextVar[str | None] = ContextVar(
    "docvault_server_url", default=None
)


class ServiceDirectory:
    """``RemoteDocumentService`` that routes calls by account server.

    Accounts may live on different servers.  The engine enters
    ``account_scope(account)`` for the duration of a pass; calls made inside
    the scope, including those run in worker threads by ``asyncio.to_thread``
    (which copies the context), go to that server's client.

    Args:
        factory: Builds a client for a server URL; called once per URL.
    """

    def __init__(self, factory: Callable[[str], DocumentServiceClient]):
        self._factory = factory
        self._clients: dict[str, DocumentServiceClient] = {}
        self._lock = threading.Lock()

    def client_for(self, server_url: str) -> DocumentServiceClient:
        key = server_url.rstrip("/")
        with self._lock:
            if key not in self._clients:
                self._clients[key] = self._factory(key)
            return self._clients[key]

    @contextmanager
    def account_scope(self, account: Account) -> Iterator[None]:
        reset = _current_server.set(account.server_url)
        try:
            yield
        finally:
            _current_server.reset(reset)

    def _current(self) -> DocumentServiceClient:
        server_url = _current_server.get()
        if server_url is None:
            raise SyncError("No account is bound to this service call")
        return self.client_for(server_url)

    def list_root_folders(self, token: str) -> list[RemoteNode]:
        return self._current().list_root_folders(token)

    def list_children(self, token: str, folder_id: str) -> list[RemoteNode]:
        return self._current().list_children(token, folder_id)

    def get_detail(
        self, token: str, node_id: str, kind: NodeKind = NodeKind.FOLDER
    ) -> RemoteNode:
        return self._current().get_detail(token, node_id, kind)

    def download(self, token: str, file_id: str) -> Iterator[bytes]:
        return self._current().download(token, file_id)

    def upload(
        self, token: str, folder_id: str, name: str, stream: BinaryIO
    ) -> RemoteNode:
        return self._current().upload(token, folder_id, name, stream)

    def delete(self, token: str, node_id: str, kind: NodeKind) -> None:
        self._current().delete(token, node_id, kind)

    def create_folder(
        self, token: str, parent_id: str, name: str
    ) -> RemoteNode:
        return self._current().create_folder(token, parent_id, name)


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def node_from_payload(
    data: dict, kind: NodeKind, parent_id: str | None = None
) -> RemoteNode:
    """Build a ``RemoteNode`` from a file or folder payload."""
    if kind == NodeKind.FILE:
        parent = data.get("folder_id") or parent_id
        size = data.get("size", 0)
    else:
        parent = data.get("parent_id") or parent_id
        size = data.get("total_size", 0)
    return RemoteNode(
        id=str(data["id"]),
        name=data["name"],
        parent_id=str(parent) if parent is not None else None,
        kind=kind,
        size=int(size or 0),
        checksum=data.get("checksum"),
        version=int(data.get("version") or 1),
        permissions=frozenset(data.get("permissions") or []),
        updated_at=data.get("updated_at"),
    )


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.reason or "unknown error"
    if isinstance(payload, dict):
        if payload.get("message"):
            return str(payload["message"])
        errors = payload.get("errors")
        if errors:
            return "; ".join(str(e) for e in errors)
    return response.reason or "unknown error"
