from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any


_MISSING = object()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(moment: datetime) -> str:
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif is_number(value) and math.isfinite(value):
        # Numeric timestamps are epoch milliseconds.
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith(("Z", "z")):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_path(payload: Any, path: Sequence[str], default: Any = None) -> Any:
    current = payload
    for key in path:
        if not isinstance(current, Mapping) or key not in current:
            return default
        current = current[key]
    return current


def has_path(payload: Any, path: Sequence[str]) -> bool:
    return get_path(payload, path, _MISSING) is not _MISSING


def is_truthy(value: Any) -> bool:
    # Follows JavaScript truthiness: containers are truthy even when empty.
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_online(record: Any, offline_time: float, now: datetime | None = None) -> bool:
    if not isinstance(record, Mapping):
        return False
    if now is None:
        now = utc_now()
    raw_lastseen = record.get("lastseen")
    if not is_truthy(raw_lastseen):
        lastseen = now
    else:
        lastseen = parse_timestamp(raw_lastseen)
        if lastseen is None:
            return False
    return abs((now - lastseen).total_seconds()) < offline_time


def parse_peer_group(group: Any) -> list[str]:
    peers: list[str] = []
    if not isinstance(group, Mapping):
        return peers
    for key, value in group.items():
        if key == "peers":
            if isinstance(value, Mapping):
                peers.extend(str(peer) for peer, state in value.items() if is_truthy(state))
        else:
            peers.extend(parse_peer_group(value))
    return peers


def memory_usage(memory: Any) -> float:
    def part(name: str) -> float:
        value = get_path(memory, (name,), 0)
        return float(value) if is_number(value) else math.nan

    total = part("total")
    if total == 0:
        return math.nan
    return (total - part("free") - part("buffers") - part("cached")) / total


def _client_count(value: Any) -> int | float:
    if not is_number(value) or math.isnan(value):
        return 0
    return value


def _copy_statistic(statistics: dict[str, Any], name: str, record: Mapping[str, Any], path: Sequence[str]) -> None:
    value = get_path(record, path, _MISSING)
    if value is not _MISSING:
        statistics[name] = value


def normalize_node(record: Mapping[str, Any], offline_time: float, now: datetime | None = None) -> dict[str, Any]:
    if now is None:
        now = utc_now()
    online = is_online(record, offline_time, now)
    vpn_peers = parse_peer_group(get_path(record, ("statistics", "mesh_vpn")))

    flags: dict[str, Any] = {"online": online, "uplink": len(vpn_peers) > 0}
    _copy_statistic(flags, "gateway", record, ("flags", "gateway"))

    statistics: dict[str, Any] = {}
    if online:
        if vpn_peers:
            statistics["vpn_peers"] = vpn_peers
        _copy_statistic(statistics, "uptime", record, ("statistics", "uptime"))
        _copy_statistic(statistics, "gateway", record, ("statistics", "gateway"))
        if has_path(record, ("statistics", "memory")):
            statistics["memory_usage"] = memory_usage(get_path(record, ("statistics", "memory")))
        _copy_statistic(statistics, "rootfs_usage", record, ("statistics", "rootfs_usage"))
        statistics["clients"] = _client_count(get_path(record, ("statistics", "clients", "total")))
        _copy_statistic(statistics, "loadavg", record, ("statistics", "loadavg"))
        _copy_statistic(statistics, "traffic", record, ("statistics", "traffic"))

    timestamp = iso_timestamp(now)
    return {
        "nodeinfo": get_path(record, ("nodeinfo",), {}),
        "flags": flags,
        "statistics": statistics,
        "lastseen": get_path(record, ("lastseen",), timestamp),
        "firstseen": get_path(record, ("firstseen",), timestamp),
    }


def normalize_nodes(
    data: Mapping[str, Any],
    offline_time: float,
    now: datetime | None = None,
) -> list[tuple[str, dict[str, Any]]]:
    if now is None:
        now = utc_now()
    normalized: list[tuple[str, dict[str, Any]]] = []
    for node_key, record in data.items():
        if not isinstance(record, Mapping) or not is_truthy(record.get("nodeinfo")):
            continue
        normalized.append((node_key, normalize_node(record, offline_time, now)))
    return normalized


def nodes_document(nodes: list[tuple[str, dict[str, Any]]], now: datetime) -> dict[str, Any]:
    return {
        "version": 2,
        "nodes": [node for _, node in nodes],
        "timestamp": iso_timestamp(now),
    }


def nodes_v1_document(nodes: list[tuple[str, dict[str, Any]]], now: datetime) -> dict[str, Any]:
    keyed: dict[str, dict[str, Any]] = {}
    for node_key, node in nodes:
        node_id = get_path(node, ("nodeinfo", "node_id"))
        keyed[str(node_id) if node_id is not None else str(node_key)] = node
    return {
        "version": 1,
        "nodes": keyed,
        "timestamp": iso_timestamp(now),
    }
