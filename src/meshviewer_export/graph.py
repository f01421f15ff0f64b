from __future__ import annotations

import enum
import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from meshviewer_export.nodes import get_path, is_number, is_online, iso_timestamp, utc_now


LOGGER = logging.getLogger("meshviewer_export.graph")
TUNNEL_INTERFACE_TYPES = frozenset({"tunnel", "l2tp"})
MAX_TQ = 255


class Resolution(enum.Enum):
    UNASSIGNED = "unassigned"
    OWNED = "owned"
    ANONYMOUS = "anonymous"


@dataclass
class GraphVertex:
    index: int
    mac: str
    owner: str | None = None
    node_id: str | None = None

    @property
    def resolution(self) -> Resolution:
        return Resolution.OWNED if self.owner is not None else Resolution.ANONYMOUS

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.mac}
        if self.node_id is not None:
            payload["node_id"] = self.node_id
        return payload


@dataclass
class GraphEdge:
    source: int
    target: int
    tq: float
    vpn: bool = False

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"source": self.source, "target": self.target, "tq": self.tq}
        if self.vpn:
            payload["vpn"] = True
        return payload


@dataclass
class TopologyGraph:
    vertices: list[GraphVertex] = field(default_factory=list)
    edges: list[GraphEdge] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "multigraph": False,
            "directed": True,
            "nodes": [vertex.as_dict() for vertex in self.vertices],
            "links": [edge.as_dict() for edge in self.edges],
            "graph": None,
        }


def _batadv_table(record: Any) -> Mapping[str, Any] | None:
    table = get_path(record, ("neighbours", "batadv"))
    if isinstance(table, Mapping):
        return table
    return None


def build_interface_types(data: Mapping[str, Any]) -> dict[str, str]:
    interface_types: dict[str, str] = {}
    for record in data.values():
        mesh = get_path(record, ("nodeinfo", "network", "mesh"))
        if not isinstance(mesh, Mapping):
            continue
        for mesh_entry in mesh.values():
            interfaces = get_path(mesh_entry, ("interfaces",))
            if not isinstance(interfaces, Mapping):
                continue
            for interface_type, macs in interfaces.items():
                if not isinstance(macs, list):
                    continue
                for mac in macs:
                    if isinstance(mac, str):
                        interface_types[mac] = str(interface_type)
    return interface_types


def build_owner_index(data: Mapping[str, Any]) -> dict[str, str]:
    owners: dict[str, str] = {}
    for node_key, record in data.items():
        table = _batadv_table(record)
        if table is None or get_path(record, ("nodeinfo", "network", "mac")) is None:
            continue
        for mac in table:
            owners[mac] = node_key
    return owners


class VertexTable:
    def __init__(
        self,
        data: Mapping[str, Any],
        owners: Mapping[str, str],
        *,
        offline_time: float,
        now: datetime,
    ) -> None:
        self._data = data
        self._owners = owners
        self._offline_time = offline_time
        self._now = now
        self._index: dict[str, int] = {}
        self.vertices: list[GraphVertex] = []

    def __len__(self) -> int:
        return len(self.vertices)

    def lookup(self, mac: str) -> int | None:
        return self._index.get(mac)

    def resolution(self, mac: str) -> Resolution:
        index = self._index.get(mac)
        if index is None:
            return Resolution.UNASSIGNED
        return self.vertices[index].resolution

    def owner_of(self, mac: str) -> str | None:
        return self._owners.get(mac)

    def materialize(self, mac: str) -> int:
        existing = self._index.get(mac)
        if existing is not None:
            return existing

        index = len(self.vertices)
        owner = self._owners.get(mac)
        vertex = GraphVertex(index=index, mac=mac, owner=owner)
        self._index[mac] = index
        self.vertices.append(vertex)
        if owner is None:
            return index

        record = self._data.get(owner)
        if is_online(record, self._offline_time, self._now):
            vertex.node_id = owner
        # Every interface the owner reports on collapses onto this vertex.
        siblings = list(_batadv_table(record) or ())
        primary_mac = get_path(record, ("nodeinfo", "network", "mac"))
        if isinstance(primary_mac, str):
            siblings.append(primary_mac)
        for sibling in siblings:
            self._index.setdefault(sibling, index)
        return index


def link_cost(tq: Any) -> float:
    if is_number(tq) and math.isfinite(tq) and tq > 0:
        return MAX_TQ / min(tq, MAX_TQ)
    return float(MAX_TQ)


def merge_costs(new: float, old: float) -> int:
    return math.floor(new + (old - new) / 2 + 0.5)


def _is_vpn_link(interface_types: Mapping[str, str], src: str, dest: str) -> bool:
    return (
        interface_types.get(src) in TUNNEL_INTERFACE_TYPES
        or interface_types.get(dest) in TUNNEL_INTERFACE_TYPES
    )


def build_graph(data: Mapping[str, Any], *, offline_time: float, now: datetime | None = None) -> TopologyGraph:
    """Build the merged batman-adv link graph for one snapshot.

    Sources that have no vertex yet are materialized on first sight; a
    destination is only materialized when a node owns it, so links towards
    anonymous destinations are dropped.
    """
    if now is None:
        now = utc_now()
    interface_types = build_interface_types(data)
    table = VertexTable(data, build_owner_index(data), offline_time=offline_time, now=now)
    links: dict[tuple[int, int], GraphEdge] = {}
    dropped = 0

    for record in data.values():
        batadv = _batadv_table(record)
        if batadv is None or not is_online(record, offline_time, now):
            continue
        for dest, entry in batadv.items():
            neighbours = get_path(entry, ("neighbours",))
            if not isinstance(neighbours, Mapping):
                continue
            for src, report in neighbours.items():
                source = table.materialize(src)
                target = table.lookup(dest)
                if target is None and table.owner_of(dest) is not None:
                    target = table.materialize(dest)
                if target is None:
                    dropped += 1
                    continue

                cost: float = link_cost(get_path(report, ("tq",)))
                vpn = _is_vpn_link(interface_types, src, dest)
                pair = (min(source, target), max(source, target))
                previous = links.pop(pair, None)
                if previous is not None:
                    cost = merge_costs(cost, previous.tq)
                    vpn = vpn or previous.vpn
                links[pair] = GraphEdge(source=source, target=target, tq=cost, vpn=vpn)

    LOGGER.debug(
        "built graph: %d vertices, %d links, %d unresolved reports dropped",
        len(table),
        len(links),
        dropped,
    )
    return TopologyGraph(vertices=list(table.vertices), edges=list(links.values()))


def graph_document(graph: TopologyGraph, now: datetime) -> dict[str, Any]:
    return {
        "timestamp": iso_timestamp(now),
        "version": 1,
        "batadv": graph.as_dict(),
    }
