from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from meshviewer_export.exporter import MeshviewerMetricsPublisher
from meshviewer_export.graph import build_graph, graph_document
from meshviewer_export.nodes import normalize_nodes, nodes_document, nodes_v1_document, utc_now
from meshviewer_export.receiver import DataReceiver


LOGGER = logging.getLogger("meshviewer_export.provider")
Query = Mapping[str, str]
Handler = Callable[[Query | None], dict[str, Any]]


@dataclass(frozen=True)
class ProviderConfig:
    offline_time: float = 900.0


def json_safe(payload: Any) -> Any:
    if isinstance(payload, float) and not math.isfinite(payload):
        return None
    if isinstance(payload, Mapping):
        return {key: json_safe(value) for key, value in payload.items()}
    if isinstance(payload, (list, tuple)):
        return [json_safe(value) for value in payload]
    return payload


def dump_document(document: Mapping[str, Any]) -> str:
    return json.dumps(json_safe(document), ensure_ascii=False, allow_nan=False, separators=(",", ":"))


class MeshviewerProvider:
    def __init__(
        self,
        receiver: DataReceiver,
        config: ProviderConfig,
        *,
        metrics: MeshviewerMetricsPublisher | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.receiver = receiver
        self.config = config
        self.metrics = metrics if metrics is not None else MeshviewerMetricsPublisher()
        self._clock = clock

    def _snapshot(self, query: Query | None) -> tuple[dict[str, Any], datetime]:
        data = self.receiver.get_data(query)
        self.metrics.apply_snapshot(size=len(data))
        return data, self._clock()

    def _node_views(self, document: str, query: Query | None) -> tuple[list[tuple[str, dict[str, Any]]], datetime]:
        started = time.monotonic()
        data, now = self._snapshot(query)
        nodes = normalize_nodes(data, self.config.offline_time, now)
        duration = time.monotonic() - started
        self.metrics.apply_nodes_document(
            document=document,
            nodes=(node for _, node in nodes),
            duration_seconds=duration,
            built_at=now.timestamp(),
        )
        LOGGER.debug("%s: %d nodes in %.3fs", document, len(nodes), duration)
        return nodes, now

    def nodes_json(self, query: Query | None = None) -> dict[str, Any]:
        nodes, now = self._node_views("nodes_v2", query)
        return nodes_document(nodes, now)

    def nodes_v1_json(self, query: Query | None = None) -> dict[str, Any]:
        nodes, now = self._node_views("nodes_v1", query)
        return nodes_v1_document(nodes, now)

    def graph_json(self, query: Query | None = None) -> dict[str, Any]:
        started = time.monotonic()
        data, now = self._snapshot(query)
        graph = build_graph(data, offline_time=self.config.offline_time, now=now)
        duration = time.monotonic() - started
        self.metrics.apply_graph(
            document="graph",
            graph=graph,
            duration_seconds=duration,
            built_at=now.timestamp(),
        )
        LOGGER.debug("graph: %d vertices, %d links in %.3fs", len(graph.vertices), len(graph.edges), duration)
        return graph_document(graph, now)

    def routes(self) -> dict[str, Handler]:
        return {
            "mv/nodes.json": self.nodes_json,
            "mv/graph.json": self.graph_json,
            "mv1/nodes.json": self.nodes_v1_json,
            "mv1/graph.json": self.graph_json,
        }
