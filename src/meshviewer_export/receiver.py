from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

from meshviewer_export.nodes import get_path


LOGGER = logging.getLogger("meshviewer_export.receiver")


class DataReceiver(Protocol):
    def get_data(self, query: Mapping[str, str] | None = None) -> dict[str, Any]: ...


def filter_snapshot(data: Mapping[str, Any], query: Mapping[str, str] | None = None) -> dict[str, Any]:
    if not query:
        return dict(data)

    node_ids: set[str] | None = None
    raw_node_ids = query.get("nodeid")
    if raw_node_ids:
        node_ids = {part.strip() for part in raw_node_ids.split(",") if part.strip()}
    site = query.get("site")

    filtered: dict[str, Any] = {}
    for node_key, record in data.items():
        if node_ids is not None and node_key not in node_ids:
            continue
        if site and get_path(record, ("nodeinfo", "system", "site_code")) != site:
            continue
        filtered[node_key] = record
    return filtered


class StaticReceiver:
    def __init__(self, data: Mapping[str, Any]) -> None:
        self._data = dict(data)

    def get_data(self, query: Mapping[str, str] | None = None) -> dict[str, Any]:
        return filter_snapshot(self._data, query)


class SnapshotReceiver:
    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._data: dict[str, Any] = {}
        self._mtime_ns: int | None = None
        self._checked = False

    @property
    def path(self) -> Path:
        return self._path

    def _reload_if_changed(self) -> None:
        try:
            mtime_ns = self._path.stat().st_mtime_ns
        except FileNotFoundError:
            if not self._checked or self._mtime_ns is not None:
                LOGGER.warning("snapshot file %s does not exist; serving an empty snapshot", self._path)
            self._checked = True
            self._mtime_ns = None
            self._data = {}
            return

        self._checked = True
        if mtime_ns == self._mtime_ns:
            return
        self._mtime_ns = mtime_ns

        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as error:
            LOGGER.warning("failed to read snapshot %s, keeping previous snapshot: %s", self._path, error)
            return
        if not isinstance(payload, dict):
            LOGGER.warning(
                "snapshot %s is not a JSON object (got %s), keeping previous snapshot",
                self._path,
                type(payload).__name__,
            )
            return

        self._data = payload
        LOGGER.info("loaded snapshot %s: %d nodes", self._path, len(payload))

    def get_data(self, query: Mapping[str, str] | None = None) -> dict[str, Any]:
        with self._lock:
            self._reload_if_changed()
            data = self._data
        return filter_snapshot(data, query)
