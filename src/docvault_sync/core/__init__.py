"""Service client and async helpers shared by the engine and the CLI."""

from .async_utils import run_sync
from .client import DocumentServiceClient, ServiceDirectory

__all__ = ["DocumentServiceClient", "ServiceDirectory", "run_sync"]
