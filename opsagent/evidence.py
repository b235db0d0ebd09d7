"""Bounded evidence bundle handed to the narration stage."""
from __future__ import annotations

from typing import Any, Dict, List, Sequence

from .types import DistributionPanel, LinePanel, NetworkPanel, Panel, Plan, SinglePanel, TablePanel

TOP_ROWS = 10
TAIL_POINTS = 12
SAMPLE_ROWS = 6
NETWORK_ROWS = 3
NETWORK_ALERTS = 8
NETWORK_EDGES = 12
MAX_CELL_CHARS = 240


def _clip(value: Any) -> Any:
    if isinstance(value, str) and len(value) > MAX_CELL_CHARS:
        return value[: MAX_CELL_CHARS - 3] + "..."
    return value


def _clip_rows(rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [{key: _clip(val) for key, val in row.items()} for row in rows]


def summarize_panel(panel: Panel) -> Dict[str, Any]:
    if isinstance(panel, SinglePanel):
        return {"kind": "single", "title": panel.title, "label": panel.label, "value": panel.value}
    if isinstance(panel, DistributionPanel):
        return {
            "kind": panel.kind,
            "title": panel.title,
            "xKey": panel.x_key,
            "yKey": panel.y_key,
            "top": _clip_rows(panel.data[:TOP_ROWS]),
        }
    if isinstance(panel, LinePanel):
        return {
            "kind": "line",
            "title": panel.title,
            "xKey": panel.x_key,
            "seriesKeys": list(panel.series_keys),
            "tail": _clip_rows(panel.data[-TAIL_POINTS:]),
        }
    if isinstance(panel, TablePanel):
        return {
            "kind": "table",
            "title": panel.title,
            "columns": list(panel.columns),
            "sample": _clip_rows(panel.rows[:SAMPLE_ROWS]),
            "totalRows": len(panel.rows),
        }
    if isinstance(panel, NetworkPanel):
        rows = []
        for row in panel.rows[:NETWORK_ROWS]:
            rows.append(
                {
                    "source": row.source,
                    "nodes": len(row.nodes),
                    "alerts": [node.label for node in row.nodes if node.status == "alert"][:NETWORK_ALERTS],
                    "edges": [edge.to_payload() for edge in row.edges[:NETWORK_EDGES]],
                    "stats": dict(row.stats or {}),
                }
            )
        return {"kind": "network", "title": panel.title, "rows": rows, "totalRows": len(panel.rows)}
    raise TypeError(f"Unsupported panel type: {type(panel).__name__}")


def build_evidence(panels: Sequence[Panel]) -> List[Dict[str, Any]]:
    """One bounded item per panel, in panel order."""
    return [summarize_panel(panel) for panel in panels]


def build_explainer_input(text: str, plan: Plan, evidence: List[Dict[str, Any]]) -> Dict[str, Any]:
    payload = plan.to_payload()
    bundle: Dict[str, Any] = {
        "user": text,
        "workspace": payload["workspace"],
        "time": {"earliest": payload["earliest_time"], "latest": payload["latest_time"]},
        "evidence": evidence,
    }
    if "filters" in payload:
        bundle["filters"] = payload["filters"]
        bundle["outputs"] = payload["outputs"]
    else:
        bundle["requests"] = payload["requests"]
    return bundle


__all__ = ["build_evidence", "build_explainer_input", "summarize_panel"]
