"""JSON-RPC client for the MCP query backends (Splunk and observability tools)."""
from __future__ import annotations

import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import requests

from .config import load_config
from .types import ObservabilityRequest

_LOGGER = logging.getLogger(__name__)

SPLUNK_TOOL = "run_splunk_query"
JSONRPC_REQUEST_ID = 200
ERROR_PREVIEW_CHARS = 800

Rows = List[Dict[str, Any]]


class BackendError(RuntimeError):
    """Raised when an MCP backend rejects a call or answers with an error."""


# ---------------------------------------------------------------------------
# Response shape matchers
# ---------------------------------------------------------------------------

def _try_parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def _dict_rows(items: Sequence[Any]) -> Rows:
    return [item if isinstance(item, dict) else {"value": item} for item in items]


def _match_structured_results(result: Mapping[str, Any]) -> Optional[Rows]:
    content = result.get("structuredContent")
    if isinstance(content, Mapping) and isinstance(content.get("results"), list):
        return _dict_rows(content["results"])
    return None


def _match_structured_data(result: Mapping[str, Any]) -> Optional[Rows]:
    content = result.get("structuredContent")
    if isinstance(content, Mapping) and isinstance(content.get("data"), list):
        return _dict_rows(content["data"])
    return None


def _match_results(result: Mapping[str, Any]) -> Optional[Rows]:
    if isinstance(result.get("results"), list):
        return _dict_rows(result["results"])
    return None


def _match_rows_fields(result: Mapping[str, Any]) -> Optional[Rows]:
    rows, fields = result.get("rows"), result.get("fields")
    if not isinstance(rows, list) or not isinstance(fields, list):
        return None
    names = [str(field.get("name")) if isinstance(field, Mapping) else str(field) for field in fields]
    zipped: Rows = []
    for row in rows:
        values = row if isinstance(row, (list, tuple)) else []
        zipped.append({name: values[idx] if idx < len(values) else None for idx, name in enumerate(names)})
    return zipped


def _match_data(result: Mapping[str, Any]) -> Optional[Rows]:
    if isinstance(result.get("data"), list):
        return _dict_rows(result["data"])
    return None


def _match_content(result: Mapping[str, Any]) -> Optional[Rows]:
    content = result.get("content")
    if not isinstance(content, list):
        return None
    for item in content:
        if not isinstance(item, Mapping):
            continue
        if item.get("type") == "json":
            embedded = item.get("json")
            if isinstance(embedded, Mapping) and isinstance(embedded.get("results"), list):
                return _dict_rows(embedded["results"])
        if item.get("type") == "text" and isinstance(item.get("text"), str):
            parsed = _try_parse_json(item["text"])
            if isinstance(parsed, list):
                return _dict_rows(parsed)
            if not isinstance(parsed, Mapping):
                continue
            if isinstance(parsed.get("results"), list):
                return _dict_rows(parsed["results"])
            nested = parsed.get("structuredContent")
            if isinstance(nested, Mapping) and isinstance(nested.get("results"), list):
                return _dict_rows(nested["results"])
    return None


# Tried in order; the first matcher that recognises the shape wins.
SHAPE_MATCHERS: Sequence[Callable[[Mapping[str, Any]], Optional[Rows]]] = (
    _match_structured_results,
    _match_structured_data,
    _match_results,
    _match_rows_fields,
    _match_data,
    _match_content,
)


def extract_rows(result: Any) -> Rows:
    """Flatten a ``tools/call`` result into a list of row dicts."""
    if not isinstance(result, Mapping):
        return []
    for matcher in SHAPE_MATCHERS:
        rows = matcher(result)
        if rows is not None:
            return rows
    return []


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

def _decode_body(text: str) -> Any:
    """Decode a JSON body, or the last JSON ``data:`` line of an event-stream body."""
    parsed = _try_parse_json(text)
    if parsed is not None:
        return parsed
    for line in reversed(text.splitlines()):
        if line.startswith("data:"):
            parsed = _try_parse_json(line[5:].strip())
            if parsed is not None:
                return parsed
    return None


def call_tool(
    endpoint: str,
    token: str,
    name: str,
    arguments: Dict[str, Any],
    *,
    label: str = "MCP",
) -> Rows:
    """POST a JSON-RPC ``tools/call`` and return the normalized rows."""
    cfg = load_config()
    payload = {
        "jsonrpc": "2.0",
        "id": JSONRPC_REQUEST_ID,
        "method": "tools/call",
        "params": {"name": name, "arguments": arguments},
    }
    headers = {"Content-Type": "application/json", "Accept": "application/json, text/event-stream"}
    if token:
        headers["Authorization"] = f"Bearer {token}"

    _LOGGER.info("[MCP] %s tools/call %s row_limit=%s", label, name, arguments.get("row_limit"))
    resp = requests.post(
        endpoint,
        json=payload,
        headers=headers,
        timeout=cfg.mcp_timeout_s,
        verify=cfg.mcp_verify_tls,
    )
    text = resp.text or ""
    if not resp.ok:
        raise BackendError(f"{label} HTTP {resp.status_code}: {text[:ERROR_PREVIEW_CHARS]}")

    body = _decode_body(text)
    if not isinstance(body, Mapping):
        _LOGGER.warning("[MCP] %s returned a non-JSON body; treating as empty", label)
        return []
    error = body.get("error")
    if error:
        message = error.get("message") if isinstance(error, Mapping) else str(error)
        raise BackendError(f"{label} error: {message}")
    result = body.get("result")
    if not result:
        return []
    if isinstance(result, Mapping) and result.get("isError"):
        detail = json.dumps(result.get("content"), ensure_ascii=False, default=str)
        raise BackendError(f"{label} tool error: {detail[:ERROR_PREVIEW_CHARS]}")
    rows = extract_rows(result)
    _LOGGER.debug("[MCP] %s %s returned %d rows", label, name, len(rows))
    return rows


def call_splunk_query(query: str, earliest_time: str, latest_time: str, row_limit: int) -> Rows:
    endpoint, token = load_config().resolve_splunk_mcp()
    arguments = {
        "query": query,
        "earliest_time": earliest_time,
        "latest_time": latest_time,
        "row_limit": int(row_limit),
    }
    return call_tool(endpoint, token, SPLUNK_TOOL, arguments, label="Splunk MCP")


def call_observability_tool(
    request: ObservabilityRequest,
    earliest_time: str,
    latest_time: str,
    row_limit: int,
) -> Rows:
    endpoint, token = load_config().resolve_observability_mcp(request.mcp)
    arguments = {
        "target": request.target,
        "metric": request.metric,
        "earliest_time": earliest_time,
        "latest_time": latest_time,
        "row_limit": int(row_limit),
    }
    return call_tool(endpoint, token, request.tool, arguments, label=f"{request.mcp} MCP")


__all__ = [
    "BackendError",
    "SHAPE_MATCHERS",
    "call_observability_tool",
    "call_splunk_query",
    "call_tool",
    "extract_rows",
]
