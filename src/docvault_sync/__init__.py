"""Multi-account desktop sync client for a document-management service."""

__version__ = "0.1.0"
