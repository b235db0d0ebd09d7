"""
Panel materialization: run each plan output against its backend and reshape
the returned rows into one immutable panel per output, in plan order.
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from . import mcp_client
from .spl import compile_output
from .types import (
    Cell,
    DistributionPanel,
    LinePanel,
    NetworkEdge,
    NetworkNode,
    NetworkPanel,
    NetworkRow,
    ObservabilityPlan,
    ObservabilityRequest,
    OutputSpec,
    Panel,
    Plan,
    SecurityPlan,
    SinglePanel,
    TablePanel,
)

_LOGGER = logging.getLogger(__name__)

COUNT_ROW_LIMIT = 5
TREND_ROW_LIMIT = 500
OBS_LINE_ROW_LIMIT = 500
NETWORK_ROW_LIMIT = 200

TABLE_COLUMNS = (
    "Time",
    "Severity",
    "Description",
    "Tags",
    "Details",
    "Recent Network Activity",
    "Node: Pod/Container",
)
# Display column -> short field name used before the final rename.
_COLUMN_ALIASES = {
    "Recent Network Activity": "recent_network_activity",
    "Node: Pod/Container": "node_pod_container",
}

DRILLDOWN_TYPES = {
    "Severity": "severity",
    "node_pod_container": "node",
    "recent_network_activity": "net",
    "tag": "tag",
}

SEVERITY_SERIES = ("total", "critical", "warning", "info")
ALERT_VERDICTS = {"DROPPED", "DENIED", "BLOCKED"}

PanelTask = Callable[[], Panel]


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

class PanelSequence:
    """Creation-ordered panel ids for one request: ``<prefix>_<epoch ms>_<n>``."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._counter = 0
        self._lock = threading.Lock()

    def next_id(self, prefix: str) -> str:
        with self._lock:
            seq = self._counter
            self._counter += 1
        return f"{prefix}_{int(self._clock() * 1000)}_{seq}"


# ---------------------------------------------------------------------------
# Cell coercion
# ---------------------------------------------------------------------------

def coerce_cell(value: Any) -> Cell:
    """Reduce any backend value to str, int, float or None. Nothing is dropped."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return ", ".join("" if item is None else str(coerce_cell(item)) for item in value)
    if isinstance(value, Mapping):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def to_number(value: Any, default: Optional[float] = None) -> Any:
    """Numeric view of a cell; Splunk reports numbers as strings."""
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return value if math.isfinite(value) else default
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return default
        return number if math.isfinite(number) else default
    return default


def _numeric_or_cell(value: Any) -> Cell:
    number = to_number(value)
    return number if number is not None else coerce_cell(value)


# ---------------------------------------------------------------------------
# Security panels
# ---------------------------------------------------------------------------

def _table_rows(rows: Iterable[Mapping[str, Any]]) -> Tuple[Dict[str, Cell], ...]:
    projected = []
    for row in rows:
        item: Dict[str, Cell] = {}
        for column in TABLE_COLUMNS:
            raw = row.get(column)
            if raw is None and column in _COLUMN_ALIASES:
                raw = row.get(_COLUMN_ALIASES[column])
            item[column] = coerce_cell(raw)
        projected.append(item)
    return tuple(projected)


def materialize_output(plan: SecurityPlan, output: OutputSpec, panel_id: str) -> Panel:
    """Run one security output against Splunk and shape the rows."""
    query = compile_output(plan.filters, output)

    def fetch(row_limit: int) -> List[Dict[str, Any]]:
        return mcp_client.call_splunk_query(query, plan.earliest_time, plan.latest_time, row_limit)

    if output.template == "count":
        rows = fetch(COUNT_ROW_LIMIT)
        value = to_number(rows[0].get("value"), 0) if rows else 0
        return SinglePanel(panel_id=panel_id, title=output.title, label="count", value=value, query=query)

    if output.template == "count_by":
        limit = output.limit or 10
        group_by = output.group_by or "Severity"
        data = []
        for row in fetch(limit):
            item = {key: coerce_cell(val) for key, val in row.items()}
            item["count"] = _numeric_or_cell(row.get("count"))
            data.append(item)
        return DistributionPanel(
            panel_id=panel_id,
            title=output.title,
            kind="pie" if output.kind == "pie" else "bar",
            x_key=group_by,
            y_key="count",
            data=tuple(data),
            drilldown_type=DRILLDOWN_TYPES.get(group_by, "severity"),
            query=query,
        )

    if output.template == "trend":
        series = SEVERITY_SERIES if output.split == "severity" else ("total",)
        data = []
        for row in fetch(TREND_ROW_LIMIT):
            item: Dict[str, Cell] = {"time": coerce_cell(row.get("time"))}
            for key in series:
                item[key] = _numeric_or_cell(row.get(key))
            data.append(item)
        return LinePanel(
            panel_id=panel_id,
            title=output.title,
            x_key="time",
            series_keys=series,
            data=tuple(data),
            query=query,
        )

    limit = output.limit or 50
    return TablePanel(
        panel_id=panel_id,
        title=output.title,
        columns=TABLE_COLUMNS,
        rows=_table_rows(fetch(limit)),
        query=query,
    )


# ---------------------------------------------------------------------------
# Observability panels
# ---------------------------------------------------------------------------

def _first(row: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = row.get(key)
        if value not in (None, ""):
            return value
    return None


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y"}
    return bool(value)


def _list_field(row: Mapping[str, Any], key: str) -> List[Any]:
    value = row.get(key)
    return value if isinstance(value, list) else []


def _shaped_network_row(row: Mapping[str, Any], default_source: str) -> NetworkRow:
    nodes = []
    for node in _list_field(row, "nodes"):
        if not isinstance(node, Mapping) or node.get("id") in (None, ""):
            continue
        status = "alert" if str(node.get("status") or "").lower() == "alert" else "ok"
        nodes.append(NetworkNode(id=str(node["id"]), label=str(node.get("label") or node["id"]), status=status))
    edges = []
    for edge in _list_field(row, "edges"):
        if not isinstance(edge, Mapping):
            continue
        src, dst = _first(edge, "from", "source"), _first(edge, "to", "target")
        if src is None or dst is None:
            continue
        label = edge.get("label")
        edges.append(NetworkEdge(source=str(src), target=str(dst), label=str(label) if label else None))
    stats = row.get("stats")
    clean_stats = None
    if isinstance(stats, Mapping):
        clean_stats = {key: int(to_number(stats.get(key), 0)) for key in ("policy_drop", "anomalies") if key in stats}
    annotations = tuple(str(a) for a in _list_field(row, "annotations") if a not in (None, ""))
    return NetworkRow(
        source=str(row.get("source") or default_source),
        nodes=tuple(nodes),
        edges=tuple(edges),
        annotations=annotations,
        stats=clean_stats,
    )


def _flow_network_row(rows: Sequence[Mapping[str, Any]], source: str) -> NetworkRow:
    nodes: Dict[str, str] = {}
    edges: List[NetworkEdge] = []
    policy_drop = 0
    anomalies = 0
    for row in rows:
        src = _first(row, "source", "src", "source_workload", "from")
        dst = _first(row, "destination", "dst", "destination_workload", "to")
        if src is None or dst is None:
            continue
        src, dst = str(src), str(dst)
        verdict = str(row.get("verdict") or "").upper()
        dropped = verdict in ALERT_VERDICTS
        anomalous = _truthy(row.get("anomaly")) or _truthy(row.get("is_anomaly"))
        policy_drop += 1 if dropped else 0
        anomalies += 1 if anomalous else 0
        nodes.setdefault(src, "ok")
        nodes.setdefault(dst, "ok")
        if dropped or anomalous:
            nodes[dst] = "alert"
        parts = [verdict.lower()] if verdict else []
        count = to_number(row.get("count"))
        if count is not None:
            parts.append(f"x{count}")
        edges.append(NetworkEdge(source=src, target=dst, label=" ".join(parts) or None))
    return NetworkRow(
        source=source,
        nodes=tuple(NetworkNode(id=name, label=name, status=status) for name, status in nodes.items()),  # type: ignore[arg-type]
        edges=tuple(edges),
        stats={"policy_drop": policy_drop, "anomalies": anomalies},
    )


def build_network_rows(rows: Sequence[Mapping[str, Any]], request: ObservabilityRequest) -> Tuple[NetworkRow, ...]:
    """Accept rows that are already topology-shaped, or raw flow records."""
    default_source = f"{request.mcp}:{request.target}"
    shaped = [row for row in rows if isinstance(row.get("nodes"), list)]
    if shaped:
        return tuple(_shaped_network_row(row, default_source) for row in shaped)
    if not rows:
        return ()
    return (_flow_network_row(rows, default_source),)


def materialize_request(plan: ObservabilityPlan, request: ObservabilityRequest, panel_id: str) -> Panel:
    """Run one whitelisted observability request and shape the rows."""
    query = f"{request.describe()} earliest={plan.earliest_time} latest={plan.latest_time}"
    if request.viz == "network":
        rows = mcp_client.call_observability_tool(request, plan.earliest_time, plan.latest_time, NETWORK_ROW_LIMIT)
        return NetworkPanel(
            panel_id=panel_id,
            title=request.title,
            rows=build_network_rows(rows, request),
            query=query,
        )

    rows = mcp_client.call_observability_tool(request, plan.earliest_time, plan.latest_time, OBS_LINE_ROW_LIMIT)
    data = []
    for row in rows:
        data.append(
            {
                "time": coerce_cell(_first(row, "time", "timestamp", "_time", "ts")),
                request.metric: _numeric_or_cell(_first(row, request.metric, "value")),
            }
        )
    return LinePanel(
        panel_id=panel_id,
        title=request.title,
        x_key="time",
        series_keys=(request.metric,),
        data=tuple(data),
        query=query,
    )


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

_PREFIXES = {"count": "p_single", "table": "p_table", "count_by": "p_dist", "trend": "p_trend"}


def plan_tasks(plan: Plan, seq: PanelSequence) -> List[PanelTask]:
    """One zero-argument task per panel, ids assigned in plan order."""
    tasks: List[PanelTask] = []
    if isinstance(plan, SecurityPlan):
        for output in plan.outputs:
            if output.kind == "none":
                continue
            panel_id = seq.next_id(_PREFIXES[output.template])
            tasks.append(lambda o=output, pid=panel_id: materialize_output(plan, o, pid))
    else:
        for request in plan.requests:
            panel_id = seq.next_id("p_net" if request.viz == "network" else "p_trend")
            tasks.append(lambda r=request, pid=panel_id: materialize_request(plan, r, pid))
    return tasks


def run_panels(
    plan: Plan,
    emit_panel: Callable[[Panel], None],
    *,
    workers: int = 1,
    should_stop: Optional[Callable[[], bool]] = None,
    seq: Optional[PanelSequence] = None,
) -> List[Panel]:
    """Materialize every panel and hand each to ``emit_panel`` in plan order.

    With ``workers > 1`` backend calls overlap, but panels are still emitted
    strictly in plan order. The first failure propagates and no later panel
    is emitted.
    """
    tasks = plan_tasks(plan, seq or PanelSequence())
    panels: List[Panel] = []
    if workers <= 1 or len(tasks) <= 1:
        for task in tasks:
            if should_stop and should_stop():
                break
            panel = task()
            panels.append(panel)
            emit_panel(panel)
        return panels

    executor = ThreadPoolExecutor(max_workers=workers)
    try:
        futures = [executor.submit(task) for task in tasks]
        for future in futures:
            if should_stop and should_stop():
                break
            panel = future.result()
            panels.append(panel)
            emit_panel(panel)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
    _LOGGER.debug("[PANELS] Emitted %d panels with %d workers", len(panels), workers)
    return panels


__all__ = [
    "PanelSequence",
    "TABLE_COLUMNS",
    "build_network_rows",
    "coerce_cell",
    "materialize_output",
    "materialize_request",
    "plan_tasks",
    "run_panels",
    "to_number",
]
