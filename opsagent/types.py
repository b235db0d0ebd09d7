"""Plan, panel, and pipeline state models shared across the OpsAgent pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple, Union


Language = Literal["en", "zh"]
Workspace = Literal["security", "observability"]
Severity = Literal["CRITICAL", "WARNING", "INFO"]
Template = Literal["count", "table", "count_by", "trend"]
OutputKind = Literal["single", "table", "bar", "pie", "line", "none"]
GroupBy = Literal["Severity", "node_pod_container", "recent_network_activity", "tag"]
Split = Literal["none", "severity"]

SEVERITIES: Tuple[str, ...] = ("CRITICAL", "WARNING", "INFO")
TEMPLATES: Tuple[str, ...] = ("count", "table", "count_by", "trend")
OUTPUT_KINDS: Tuple[str, ...] = ("single", "table", "bar", "pie", "line", "none")
GROUP_BY_FIELDS: Tuple[str, ...] = ("Severity", "node_pod_container", "recent_network_activity", "tag")
SPLITS: Tuple[str, ...] = ("none", "severity")
WORKSPACES: Tuple[str, ...] = ("security", "observability")


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Filters:
    """Independent, AND-combined constraints on the security event table."""

    severity_exact: Tuple[str, ...] = ()
    description_like: Optional[str] = None
    details_like: Optional[str] = None
    node_like: Optional[str] = None
    has_network_activity: Optional[bool] = None
    tags_exact: Tuple[str, ...] = ()

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        if self.severity_exact:
            payload["severity_exact"] = list(self.severity_exact)
        if self.description_like:
            payload["description_like"] = self.description_like
        if self.details_like:
            payload["details_like"] = self.details_like
        if self.node_like:
            payload["node_like"] = self.node_like
        if self.has_network_activity is not None:
            payload["has_network_activity"] = self.has_network_activity
        if self.tags_exact:
            payload["tags_exact"] = list(self.tags_exact)
        return payload


@dataclass(frozen=True)
class OutputSpec:
    """One requested visualization. ``template`` fixes ``kind``."""

    kind: OutputKind
    title: str
    template: Template
    group_by: Optional[GroupBy] = None
    limit: Optional[int] = None
    span: Optional[str] = None
    split: Optional[Split] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"kind": self.kind, "title": self.title, "template": self.template}
        if self.group_by is not None:
            payload["group_by"] = self.group_by
        if self.limit is not None:
            payload["limit"] = self.limit
        if self.span is not None:
            payload["span"] = self.span
        if self.split is not None:
            payload["split"] = self.split
        return payload


@dataclass(frozen=True)
class SecurityPlan:
    language: Language
    earliest_time: str
    latest_time: str
    filters: Filters
    outputs: Tuple[OutputSpec, ...]
    workspace: Literal["security"] = "security"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "workspace": self.workspace,
            "language": self.language,
            "earliest_time": self.earliest_time,
            "latest_time": self.latest_time,
            "filters": self.filters.to_payload(),
            "outputs": [output.to_payload() for output in self.outputs],
        }


@dataclass(frozen=True)
class ObservabilityRequest:
    """A whitelisted (mcp, tool, target, metric, viz) tuple plus display title."""

    mcp: str
    tool: str
    target: str
    metric: str
    viz: Literal["line", "network"]
    title: str

    @property
    def key(self) -> Tuple[str, str, str, str, str]:
        return (self.mcp, self.tool, self.target, self.metric, self.viz)

    def describe(self) -> str:
        return f"{self.mcp}/{self.tool} target={self.target} metric={self.metric} viz={self.viz}"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "mcp": self.mcp,
            "tool": self.tool,
            "target": self.target,
            "metric": self.metric,
            "viz": self.viz,
            "title": self.title,
        }


@dataclass(frozen=True)
class ObservabilityPlan:
    language: Language
    earliest_time: str
    requests: Tuple[ObservabilityRequest, ...]
    latest_time: str = "now"
    workspace: Literal["observability"] = "observability"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "workspace": self.workspace,
            "language": self.language,
            "earliest_time": self.earliest_time,
            "latest_time": self.latest_time,
            "requests": [request.to_payload() for request in self.requests],
        }


Plan = Union[SecurityPlan, ObservabilityPlan]


# ---------------------------------------------------------------------------
# Panels
# ---------------------------------------------------------------------------

Cell = Union[str, int, float, None]


@dataclass(frozen=True)
class SinglePanel:
    panel_id: str
    title: str
    label: str
    value: Cell
    query: str
    kind: Literal["single"] = "single"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "panel_id": self.panel_id,
            "kind": self.kind,
            "title": self.title,
            "label": self.label,
            "value": self.value,
            "query": self.query,
        }


@dataclass(frozen=True)
class TablePanel:
    panel_id: str
    title: str
    columns: Tuple[str, ...]
    rows: Tuple[Dict[str, Cell], ...]
    query: str
    kind: Literal["table"] = "table"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "panel_id": self.panel_id,
            "kind": self.kind,
            "title": self.title,
            "columns": list(self.columns),
            "rows": [dict(row) for row in self.rows],
            "query": self.query,
        }


@dataclass(frozen=True)
class DistributionPanel:
    panel_id: str
    title: str
    kind: Literal["bar", "pie"]
    x_key: str
    y_key: str
    data: Tuple[Dict[str, Cell], ...]
    drilldown_type: str
    query: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "panel_id": self.panel_id,
            "kind": self.kind,
            "title": self.title,
            "xKey": self.x_key,
            "yKey": self.y_key,
            "data": [dict(item) for item in self.data],
            "drilldownType": self.drilldown_type,
            "query": self.query,
        }


@dataclass(frozen=True)
class LinePanel:
    panel_id: str
    title: str
    x_key: str
    series_keys: Tuple[str, ...]
    data: Tuple[Dict[str, Cell], ...]
    query: str
    kind: Literal["line"] = "line"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "panel_id": self.panel_id,
            "kind": self.kind,
            "title": self.title,
            "xKey": self.x_key,
            "seriesKeys": list(self.series_keys),
            "data": [dict(item) for item in self.data],
            "query": self.query,
        }


@dataclass(frozen=True)
class NetworkNode:
    id: str
    label: str
    status: Literal["ok", "alert"] = "ok"

    def to_payload(self) -> Dict[str, Any]:
        return {"id": self.id, "label": self.label, "status": self.status}


@dataclass(frozen=True)
class NetworkEdge:
    source: str
    target: str
    label: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"from": self.source, "to": self.target}
        if self.label:
            payload["label"] = self.label
        return payload


@dataclass(frozen=True)
class NetworkRow:
    source: str
    nodes: Tuple[NetworkNode, ...]
    edges: Tuple[NetworkEdge, ...]
    annotations: Tuple[str, ...] = ()
    stats: Optional[Dict[str, int]] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "source": self.source,
            "nodes": [node.to_payload() for node in self.nodes],
            "edges": [edge.to_payload() for edge in self.edges],
        }
        if self.annotations:
            payload["annotations"] = list(self.annotations)
        if self.stats is not None:
            payload["stats"] = dict(self.stats)
        return payload


@dataclass(frozen=True)
class NetworkPanel:
    panel_id: str
    title: str
    rows: Tuple[NetworkRow, ...]
    query: str
    kind: Literal["network"] = "network"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "panel_id": self.panel_id,
            "kind": self.kind,
            "title": self.title,
            "rows": [row.to_payload() for row in self.rows],
            "query": self.query,
        }


Panel = Union[SinglePanel, TablePanel, DistributionPanel, LinePanel, NetworkPanel]


# ---------------------------------------------------------------------------
# Pipeline state
# ---------------------------------------------------------------------------

Emit = Callable[[str, Dict[str, Any]], None]


@dataclass
class PipelineState:
    """State shared across LangGraph nodes for one request."""

    message: str
    workspace: Workspace = "security"
    language: Language = "en"
    plan: Optional[Plan] = None
    plan_warning: Optional[str] = None
    panels: List[Panel] = field(default_factory=list)
    evidence: List[Dict[str, Any]] = field(default_factory=list)
    narration: str = ""
    narration_ok: bool = True
    narration_error: Optional[str] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    telemetry: Dict[str, Any] = field(default_factory=dict)


__all__ = [
    "Cell",
    "DistributionPanel",
    "Emit",
    "Filters",
    "GROUP_BY_FIELDS",
    "LinePanel",
    "NetworkEdge",
    "NetworkNode",
    "NetworkPanel",
    "NetworkRow",
    "OUTPUT_KINDS",
    "ObservabilityPlan",
    "ObservabilityRequest",
    "OutputSpec",
    "Panel",
    "PipelineState",
    "Plan",
    "SEVERITIES",
    "SPLITS",
    "SecurityPlan",
    "SinglePanel",
    "TEMPLATES",
    "TablePanel",
    "WORKSPACES",
    "Workspace",
]
