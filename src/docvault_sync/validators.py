"""
Input validation functions for docvault_sync.

Provides validation for server URLs, emails, local paths and remote names
so registry operations reject bad input before anything is persisted.
"""

import re
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Server URL")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_server_url(url: str) -> tuple[bool, str]:
    """
    Validate a document service base URL.

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.

    Validation rules:
        - Cannot be empty
        - Scheme must be http or https
        - Must have a host
    """
    if not url or not url.strip():
        return (False, format_validation_error("Server URL", "cannot be empty"))

    parsed = urlparse(url.strip())
    if parsed.scheme not in ("http", "https"):
        return (
            False,
            format_validation_error("Server URL", "must use http or https"),
        )
    if not parsed.netloc:
        return (False, format_validation_error("Server URL", "must have a host"))

    return (True, "")


def normalize_server_url(url: str) -> str:
    """Strip whitespace and trailing slashes; lower-case scheme and host."""
    parsed = urlparse(url.strip())
    path = parsed.path.rstrip("/")
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}{path}"


def validate_email(email: str) -> tuple[bool, str]:
    """
    Validate a login email.

    Returns:
        Tuple of (is_valid, error_message).
    """
    if not email or not email.strip():
        return (False, format_validation_error("Email", "cannot be empty"))
    if not _EMAIL_RE.match(email.strip()):
        return (False, format_validation_error("Email", "is not a valid address"))
    return (True, "")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_local_path(path: str | Path) -> tuple[bool, str]:
    """
    Validate a local sync directory.

    Validation rules:
        - Cannot be empty
        - Must not be an existing regular file
    """
    if not str(path).strip():
        return (False, format_validation_error("Local path", "cannot be empty"))
    candidate = Path(path).expanduser()
    if candidate.exists() and not candidate.is_dir():
        return (
            False,
            format_validation_error("Local path", "is not a directory"),
        )
    return (True, "")


def validate_relative_path(relative_path: str) -> tuple[bool, str]:
    """
    Validate a path relative to a sync folder root.

    Validation rules:
        - Cannot be empty
        - Cannot be absolute
        - Cannot contain '..' segments (path traversal protection)
    """
    if not relative_path or not relative_path.strip():
        return (False, format_validation_error("Path", "cannot be empty"))
    pure = PurePosixPath(relative_path)
    if pure.is_absolute():
        return (False, format_validation_error("Path", "must be relative"))
    if ".." in pure.parts:
        return (False, format_validation_error("Path", "cannot contain '..'"))
    return (True, "")
