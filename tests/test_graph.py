import math
from datetime import datetime, timedelta, timezone

from meshviewer_export.graph import (
    Resolution,
    VertexTable,
    build_graph,
    build_interface_types,
    build_owner_index,
    graph_document,
    link_cost,
    merge_costs,
)
from meshviewer_export.nodes import iso_timestamp


NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
OFFLINE_TIME = 300.0


def _node(mac: str | None, batadv: dict | None = None, *, lastseen: str | None = None, mesh: dict | None = None) -> dict:
    network: dict = {}
    if mac is not None:
        network["mac"] = mac
    if mesh is not None:
        network["mesh"] = mesh
    record: dict = {"nodeinfo": {"node_id": mac, "network": network}}
    if batadv is not None:
        record["neighbours"] = {"batadv": batadv}
    if lastseen is not None:
        record["lastseen"] = lastseen
    return record


def _sees(*reports: tuple[str, object]) -> dict:
    neighbours = {}
    for mac, tq in reports:
        neighbours[mac] = {} if tq is None else {"tq": tq}
    return {"neighbours": neighbours}


def test_link_cost_inverts_tq() -> None:
    assert link_cost(255) == 1.0
    assert link_cost(200) == 255 / 200
    assert link_cost(128) == 255 / 128
    assert link_cost(600) == 1.0


def test_link_cost_treats_missing_or_zero_tq_as_worst_quality() -> None:
    assert link_cost(0) == 255.0
    assert link_cost(None) == 255.0
    assert link_cost(-10) == 255.0
    assert link_cost("128") == 255.0
    assert link_cost(True) == 255.0
    assert link_cost(float("nan")) == 255.0


def test_merge_costs_takes_rounded_midpoint() -> None:
    assert merge_costs(255 / 64, 255 / 128) == 3
    assert merge_costs(255 / 128, 255 / 64) == 3
    assert merge_costs(1.0, 2.0) == 2
    assert merge_costs(255.0, 255.0) == 255


def test_interface_types_last_write_wins() -> None:
    data = {
        "a": _node("aa", mesh={"bat0": {"interfaces": {"wireless": ["a1"], "tunnel": ["a2"]}}}),
        "b": _node("bb", mesh={"bat0": {"interfaces": {"l2tp": ["a2"], "other": "broken"}}}),
        "c": _node("cc", mesh={"bat0": None}),
    }
    assert build_interface_types(data) == {"a1": "wireless", "a2": "l2tp"}


def test_owner_index_requires_own_mac() -> None:
    data = {
        "a": _node("aa", {"a1": _sees(), "a2": _sees()}),
        "anon": _node(None, {"x1": _sees()}),
        "broken": {"nodeinfo": {"network": {"mac": "zz"}}, "neighbours": {"batadv": ["z1"]}},
    }
    assert build_owner_index(data) == {"a1": "a", "a2": "a"}


def test_vertex_table_collapses_owner_interfaces() -> None:
    data = {"a": _node("aa", {"a1": _sees(), "a2": _sees()})}
    table = VertexTable(data, build_owner_index(data), offline_time=OFFLINE_TIME, now=NOW)

    assert table.resolution("a2") is Resolution.UNASSIGNED
    index = table.materialize("a2")

    assert index == 0
    assert table.lookup("a1") == 0
    assert table.lookup("aa") == 0
    assert table.resolution("a1") is Resolution.OWNED
    assert table.vertices[0].as_dict() == {"id": "a2", "node_id": "a"}
    assert table.materialize("a1") == 0
    assert len(table) == 1


def test_vertex_table_anonymous_vertex_has_no_node_id() -> None:
    table = VertexTable({}, {}, offline_time=OFFLINE_TIME, now=NOW)
    assert table.materialize("x1") == 0
    assert table.materialize("x2") == 1
    assert table.resolution("x1") is Resolution.ANONYMOUS
    assert [vertex.as_dict() for vertex in table.vertices] == [{"id": "x1"}, {"id": "x2"}]


def test_two_node_scenario_single_edge() -> None:
    data = {
        "A": _node("aa", {"bb": _sees(("aa", 200))}, lastseen=iso_timestamp(NOW)),
        "B": _node("bb", lastseen=iso_timestamp(NOW - timedelta(hours=1))),
    }

    graph = build_graph(data, offline_time=OFFLINE_TIME, now=NOW)

    assert len(graph.vertices) == 2
    assert len(graph.edges) == 1
    edge = graph.edges[0].as_dict()
    assert {edge["source"], edge["target"]} == {0, 1}
    assert edge["tq"] == 255 / 200
    assert "vpn" not in edge


def test_reciprocal_reports_merge_into_one_edge() -> None:
    data = {
        "A": _node("aa", {"a1": _sees(("b1", 128))}),
        "B": _node("bb", {"b1": _sees(("a1", 64))}),
    }

    graph = build_graph(data, offline_time=OFFLINE_TIME, now=NOW)

    assert [vertex.as_dict() for vertex in graph.vertices] == [
        {"id": "b1", "node_id": "B"},
        {"id": "a1", "node_id": "A"},
    ]
    assert [edge.as_dict() for edge in graph.edges] == [{"source": 1, "target": 0, "tq": 3}]


def test_interfaces_of_one_node_share_a_vertex() -> None:
    data = {
        "A": _node("aa", {"a1": _sees(("b1", 200)), "a2": _sees()}),
        "B": _node("bb", {"b1": _sees(("a1", 100), ("a2", 50))}),
    }

    graph = build_graph(data, offline_time=OFFLINE_TIME, now=NOW)

    assert [vertex.mac for vertex in graph.vertices] == ["b1", "a1"]
    assert len(graph.edges) == 1
    edge = graph.edges[0]
    assert (edge.source, edge.target) == (1, 0)
    # 255/200 merged with 255/100 gives 2, then merged with 255/50 gives 4.
    assert edge.tq == 4


def test_at_most_one_edge_per_vertex_pair() -> None:
    data = {
        "A": _node("aa", {"a1": _sees(("b1", 100), ("c1", 100)), "a2": _sees(("b1", 90))}),
        "B": _node("bb", {"b1": _sees(("a1", 80), ("c1", 70))}),
        "C": _node("cc", {"c1": _sees(("a2", 60), ("b1", 50))}),
    }

    graph = build_graph(data, offline_time=OFFLINE_TIME, now=NOW)

    pairs = [frozenset((edge.source, edge.target)) for edge in graph.edges]
    assert len(graph.vertices) == 3
    assert len(pairs) == len(set(pairs)) == 3
    assert all(edge.tq > 0 for edge in graph.edges)


def test_missing_and_zero_tq_cost_255() -> None:
    data = {
        "A": _node("aa", {"a1": _sees(("b1", None))}),
        "C": _node("cc", {"c1": _sees(("d1", 0))}),
    }

    graph = build_graph(data, offline_time=OFFLINE_TIME, now=NOW)

    assert [edge.tq for edge in graph.edges] == [255.0, 255.0]
    assert all(not math.isinf(edge.tq) for edge in graph.edges)


def test_anonymous_destination_drops_link() -> None:
    data = {"X": _node(None, {"x1": _sees(("y1", 100))})}

    graph = build_graph(data, offline_time=OFFLINE_TIME, now=NOW)

    assert [vertex.as_dict() for vertex in graph.vertices] == [{"id": "y1"}]
    assert graph.edges == []


def test_offline_reporters_contribute_no_links() -> None:
    data = {
        "A": _node("aa", {"a1": _sees(("b1", 100))}, lastseen=iso_timestamp(NOW - timedelta(hours=1))),
    }
    graph = build_graph(data, offline_time=OFFLINE_TIME, now=NOW)
    assert graph.vertices == []
    assert graph.edges == []


def test_node_id_only_attached_for_online_owner() -> None:
    data = {
        "A": _node("aa", {"a1": _sees(("b1", 100))}),
        "B": _node("bb", {"b1": _sees()}, lastseen=iso_timestamp(NOW - timedelta(hours=1))),
    }

    graph = build_graph(data, offline_time=OFFLINE_TIME, now=NOW)

    assert [vertex.as_dict() for vertex in graph.vertices] == [{"id": "b1"}, {"id": "a1", "node_id": "A"}]
    assert len(graph.edges) == 1


def test_vpn_flag_from_tunnel_interfaces() -> None:
    data = {
        "A": _node(
            "aa",
            {"a1": _sees(("b1", 100)), "a2": _sees(("c1", 100))},
            mesh={"bat0": {"interfaces": {"tunnel": ["a1"], "wireless": ["a2"]}}},
        ),
        "B": _node("bb", {"b1": _sees()}),
        "C": _node("cc", {"c1": _sees()}, mesh={"bat0": {"interfaces": {"l2tp": ["c1"]}}}),
        "D": _node("dd", {"d1": _sees(("a2", 100))}, mesh={"bat0": {"interfaces": {"wireless": ["d1"]}}}),
    }

    graph = build_graph(data, offline_time=OFFLINE_TIME, now=NOW)
    flags = {
        frozenset((graph.vertices[edge.source].mac, graph.vertices[edge.target].mac)): edge.as_dict().get("vpn")
        for edge in graph.edges
    }

    assert flags == {
        frozenset(("b1", "a1")): True,
        frozenset(("c1", "a1")): True,
        frozenset(("a1", "d1")): None,
    }


def test_malformed_neighbour_tables_are_skipped() -> None:
    data = {
        "A": {"nodeinfo": {"network": {"mac": "aa"}}, "neighbours": {"batadv": "oops"}},
        "B": _node("bb", {"b1": {"neighbours": ["a1"]}, "b2": None}),
        "C": _node("cc", {"c1": {"neighbours": {"a1": "no tq here"}}}),
    }

    graph = build_graph(data, offline_time=OFFLINE_TIME, now=NOW)

    assert [vertex.mac for vertex in graph.vertices] == ["a1", "c1"]
    assert [edge.as_dict() for edge in graph.edges] == [{"source": 0, "target": 1, "tq": 255.0}]


def test_graph_document_is_deterministic() -> None:
    data = {
        "A": _node("aa", {"a1": _sees(("b1", 128))}),
        "B": _node("bb", {"b1": _sees(("a1", 64), ("c9", 10))}),
    }

    first = graph_document(build_graph(data, offline_time=OFFLINE_TIME, now=NOW), NOW)
    second = graph_document(build_graph(data, offline_time=OFFLINE_TIME, now=NOW), NOW)

    assert first == second
    assert first["timestamp"] == "2026-10-19T12:00:00.000Z"
    assert first["version"] == 1
    batadv = first["batadv"]
    assert batadv["multigraph"] is False
    assert batadv["directed"] is True
    assert batadv["graph"] is None
    assert [node["id"] for node in batadv["nodes"]] == ["b1", "a1", "c9"]


def test_merged_cost_stays_positive_for_tq_above_scale() -> None:
    data = {
        "A": _node("aa", {"a1": _sees(("b1", 600))}),
        "B": _node("bb", {"b1": _sees(("a1", 600))}),
    }

    graph = build_graph(data, offline_time=OFFLINE_TIME, now=NOW)

    assert [edge.as_dict() for edge in graph.edges] == [{"source": 1, "target": 0, "tq": 1}]
    assert all(edge.tq > 0 for edge in graph.edges)
