from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from prometheus_client import CollectorRegistry, Gauge

from meshviewer_export.graph import TopologyGraph


class MeshviewerMetricsPublisher:
    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry

        self.snapshot_nodes = Gauge(
            "meshviewer_snapshot_nodes",
            "Raw node records returned by the data store for the last build",
            registry=self.registry,
        )
        self.nodes_total = Gauge(
            "meshviewer_nodes_total",
            "Nodes listed in the last built node document",
            ["document"],
            registry=self.registry,
        )
        self.nodes_online = Gauge(
            "meshviewer_nodes_online",
            "Nodes classified online in the last built node document",
            ["document"],
            registry=self.registry,
        )
        self.nodes_uplink = Gauge(
            "meshviewer_nodes_uplink",
            "Nodes with at least one active VPN peer in the last built node document",
            ["document"],
            registry=self.registry,
        )
        self.graph_vertices = Gauge(
            "meshviewer_graph_vertices",
            "Vertices in the last built graph document",
            registry=self.registry,
        )
        self.graph_links = Gauge(
            "meshviewer_graph_links",
            "Merged links in the last built graph document",
            ["vpn"],
            registry=self.registry,
        )
        self.build_duration_seconds = Gauge(
            "meshviewer_build_duration_seconds",
            "Duration of the last document build in seconds",
            ["document"],
            registry=self.registry,
        )
        self.build_timestamp_seconds = Gauge(
            "meshviewer_build_timestamp_seconds",
            "Unix timestamp of the last document build",
            ["document"],
            registry=self.registry,
        )

    def _apply_build(self, *, document: str, duration_seconds: float, built_at: float) -> None:
        self.build_duration_seconds.labels(document=document).set(duration_seconds)
        self.build_timestamp_seconds.labels(document=document).set(built_at)

    def apply_snapshot(self, *, size: int) -> None:
        self.snapshot_nodes.set(float(size))

    def apply_nodes_document(
        self,
        *,
        document: str,
        nodes: Iterable[Mapping[str, Any]],
        duration_seconds: float,
        built_at: float,
    ) -> None:
        total = online = uplink = 0
        for node in nodes:
            total += 1
            flags = node.get("flags", {})
            if flags.get("online"):
                online += 1
            if flags.get("uplink"):
                uplink += 1
        self.nodes_total.labels(document=document).set(float(total))
        self.nodes_online.labels(document=document).set(float(online))
        self.nodes_uplink.labels(document=document).set(float(uplink))
        self._apply_build(document=document, duration_seconds=duration_seconds, built_at=built_at)

    def apply_graph(
        self,
        *,
        document: str,
        graph: TopologyGraph,
        duration_seconds: float,
        built_at: float,
    ) -> None:
        vpn_links = sum(1 for edge in graph.edges if edge.vpn)
        self.graph_vertices.set(float(len(graph.vertices)))
        self.graph_links.labels(vpn="true").set(float(vpn_links))
        self.graph_links.labels(vpn="false").set(float(len(graph.edges) - vpn_links))
        self._apply_build(document=document, duration_seconds=duration_seconds, built_at=built_at)
