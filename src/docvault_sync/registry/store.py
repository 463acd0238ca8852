"""Keyed record store for account and folder records.

Records are plain dicts grouped in named collections (``accounts``,
``folders``).  ``JsonRecordStore`` keeps one JSON file per collection and
writes it atomically (temp file + ``os.replace``); ``MemoryRecordStore``
is used by tests and dry runs.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    def load_all(self, collection: str) -> list[dict]:
        ...  # pragma: no cover

    def save_all(self, collection: str, records: list[dict]) -> None:
        ...  # pragma: no cover


class JsonRecordStore:
    """One ``<collection>.json`` file per collection under *root*."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def load_all(self, collection: str) -> list[dict]:
        path = self._path(collection)
        if not path.exists():
            return []
        with open(path, encoding="utf-8") as fh:
            payload = json.load(fh)
        return list(payload.get("records", []))

    def save_all(self, collection: str, records: list[dict]) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self._root), suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump({"records": records}, fh, indent=2)
            os.replace(tmp_path, self._path(collection))
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug("Saved %d %s records", len(records), collection)

    def _path(self, collection: str) -> Path:
        return self._root / f"{collection}.json"


class MemoryRecordStore:
    def __init__(self) -> None:
        self._collections: dict[str, list[dict]] = {}

    def load_all(self, collection: str) -> list[dict]:
        return copy.deepcopy(self._collections.get(collection, []))

    def save_all(self, collection: str, records: list[dict]) -> None:
        self._collections[collection] = copy.deepcopy(records)
