"""
Structural plan coercion for the OpsAgent pipeline.
Takes the loosely-typed object decoded from model output and maps every
field onto its enumerated domain. Nothing in this module raises on bad
input: unknown values fall back to documented defaults.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .config import OBSERVABILITY_WINDOWS, clamp_int, load_config
from .guards import CANONICAL_INTENT_REQUESTS, validate_observability_requests
from .intents import (
    detect_language,
    detect_observability_intent,
    detect_severities,
    detect_time_window,
    extract_node,
    has_network_activity_intent,
)
from .types import (
    GROUP_BY_FIELDS,
    OUTPUT_KINDS,
    SEVERITIES,
    SPLITS,
    TEMPLATES,
    Filters,
    ObservabilityPlan,
    OutputSpec,
    SecurityPlan,
)

_LOGGER = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Domains and limits
# ---------------------------------------------------------------------------

TITLE_MAX_CHARS = 120
LIKE_MAX_CHARS = 200
DEFAULT_SPAN = "5m"

COUNT_BY_LIMIT = (3, 50, 10)
TABLE_LIMIT = (5, 200, 50)

_TIME_UNIT = r"(?:s|secs?|seconds?|m|mins?|minutes?|h|hrs?|hours?|d|days?|w\d?|weeks?|mon|months?|q|quarters?|y|yrs?|years?)"
_TIME_MODIFIER_RE = re.compile(
    rf"^(?:now|0|\d{{9,11}}(?:\.\d+)?|@{_TIME_UNIT}|[+-]\d*{_TIME_UNIT}(?:@{_TIME_UNIT})?)$",
    re.IGNORECASE,
)
_SPAN_RE = re.compile(r"^\d+[smhdw]$")
_TAG_RE = re.compile(r"^[a-z0-9._-]+$")


# ---------------------------------------------------------------------------
# Scalar coercion
# ---------------------------------------------------------------------------

def _bool_or_none(val: Any) -> Optional[bool]:
    """Convert strings like 'true'/'false' to booleans safely."""
    if isinstance(val, bool):
        return val
    if isinstance(val, str):
        s = val.strip().lower()
        if s in {"1", "true", "y", "yes"}:
            return True
        if s in {"0", "false", "n", "no"}:
            return False
    return None


def _clean_text(val: Any, max_chars: int) -> Optional[str]:
    if not isinstance(val, str):
        return None
    text = " ".join(val.split())
    return text[:max_chars] if text else None


def _as_list(val: Any) -> List[Any]:
    if isinstance(val, (list, tuple)):
        return list(val)
    if isinstance(val, str) and val.strip():
        return [part for part in re.split(r"[,\s]+", val) if part]
    return []


def _dedupe(items: List[str]) -> Tuple[str, ...]:
    seen: Dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return tuple(seen)


def coerce_time_modifier(val: Any, default: str) -> str:
    """Accept a Splunk relative-time modifier such as ``-15m``, ``-1h@h`` or ``now``."""
    if isinstance(val, str):
        text = val.strip()
        if text and _TIME_MODIFIER_RE.match(text):
            return text
    return default


def coerce_span(val: Any) -> str:
    if isinstance(val, str) and _SPAN_RE.match(val.strip()):
        return val.strip()
    return DEFAULT_SPAN


def _mapping(val: Any) -> Mapping[str, Any]:
    return val if isinstance(val, Mapping) else {}


# ---------------------------------------------------------------------------
# Security plans
# ---------------------------------------------------------------------------

def normalize_output(raw: Mapping[str, Any]) -> OutputSpec:
    """Coerce one raw output object. ``template`` decides ``kind``."""
    template = str(raw.get("template")) if str(raw.get("template")) in TEMPLATES else "table"
    kind = str(raw.get("kind")) if str(raw.get("kind")) in OUTPUT_KINDS else "none"
    title = _clean_text(raw.get("title"), TITLE_MAX_CHARS) or "Result"

    if template == "count_by":
        group_by = str(raw.get("group_by")) if str(raw.get("group_by")) in GROUP_BY_FIELDS else "Severity"
        return OutputSpec(
            kind=kind if kind in {"bar", "pie"} else "bar",
            title=title,
            template="count_by",
            group_by=group_by,  # type: ignore[arg-type]
            limit=clamp_int(raw.get("limit"), *COUNT_BY_LIMIT),
        )
    if template == "trend":
        split = str(raw.get("split")) if str(raw.get("split")) in SPLITS else "none"
        return OutputSpec(
            kind="line",
            title=title,
            template="trend",
            span=coerce_span(raw.get("span")),
            split=split,  # type: ignore[arg-type]
        )
    if template == "count":
        return OutputSpec(kind="single", title=title, template="count")
    return OutputSpec(
        kind="table",
        title=title,
        template="table",
        limit=clamp_int(raw.get("limit"), *TABLE_LIMIT),
    )


def normalize_outputs(raw_outputs: Any) -> List[OutputSpec]:
    """Coerce the raw ``outputs`` list; entries that are not objects are skipped."""
    if not isinstance(raw_outputs, (list, tuple)):
        return []
    outputs = []
    for item in raw_outputs:
        if not isinstance(item, Mapping):
            _LOGGER.debug("[POLICY] Skipping non-object output entry: %r", item)
            continue
        outputs.append(normalize_output(item))
    return outputs


def normalize_filters(raw: Mapping[str, Any]) -> Filters:
    severity_raw = raw.get("severity_exact", raw.get("severity"))
    severities = [str(s or "").strip().upper() for s in _as_list(severity_raw)]
    tags = [str(t or "").strip().lower() for t in _as_list(raw.get("tags_exact"))]
    return Filters(
        severity_exact=_dedupe([s for s in severities if s in SEVERITIES]),
        description_like=_clean_text(raw.get("description_like"), LIKE_MAX_CHARS),
        details_like=_clean_text(raw.get("details_like"), LIKE_MAX_CHARS),
        node_like=_clean_text(raw.get("node_like"), LIKE_MAX_CHARS),
        has_network_activity=_bool_or_none(raw.get("has_network_activity")),
        tags_exact=_dedupe([t for t in tags if _TAG_RE.match(t)]),
    )


def normalize_security_plan(raw: Any, text: str) -> SecurityPlan:
    """Coerce a raw model plan into a ``SecurityPlan`` (no intent guardrails yet)."""
    cfg = load_config()
    data = _mapping(raw)
    return SecurityPlan(
        language=detect_language(text),  # type: ignore[arg-type]
        earliest_time=coerce_time_modifier(data.get("earliest_time"), cfg.default_earliest_time),
        latest_time=coerce_time_modifier(data.get("latest_time"), cfg.default_latest_time),
        filters=normalize_filters(_mapping(data.get("filters"))),
        outputs=tuple(normalize_outputs(data.get("outputs"))),
    )


def default_security_plan(text: str) -> SecurityPlan:
    """Keyword-only plan used when the planning call fails."""
    cfg = load_config()
    network = has_network_activity_intent(text)
    if network:
        lead = OutputSpec(
            kind="bar",
            title="Network Activity",
            template="count_by",
            group_by="recent_network_activity",
            limit=10,
        )
    else:
        lead = OutputSpec(kind="bar", title="Severity", template="count_by", group_by="Severity", limit=10)
    filters = Filters(
        severity_exact=tuple(detect_severities(text)),
        node_like=extract_node(text),
        has_network_activity=True if network else None,
    )
    return SecurityPlan(
        language=detect_language(text),  # type: ignore[arg-type]
        earliest_time=cfg.default_earliest_time,
        latest_time=cfg.default_latest_time,
        filters=filters,
        outputs=(lead, OutputSpec(kind="table", title="Events", template="table", limit=50)),
    )


# ---------------------------------------------------------------------------
# Observability plans
# ---------------------------------------------------------------------------

def _observability_window(val: Any, text: str) -> str:
    if isinstance(val, str) and val.strip() in OBSERVABILITY_WINDOWS:
        return val.strip()
    return detect_time_window(text) or load_config().obs_default_earliest_time


def normalize_observability_plan(raw: Any, text: str) -> ObservabilityPlan:
    """Coerce a raw model plan; requests outside the allow-list are dropped."""
    data = _mapping(raw)
    return ObservabilityPlan(
        language=detect_language(text),  # type: ignore[arg-type]
        earliest_time=_observability_window(data.get("earliest_time"), text),
        requests=tuple(validate_observability_requests(data.get("requests"))),
    )


def default_observability_plan(text: str) -> ObservabilityPlan:
    """Keyword-only plan used when the planning call fails."""
    intent = detect_observability_intent(text) or "success_rate"
    return ObservabilityPlan(
        language=detect_language(text),  # type: ignore[arg-type]
        earliest_time=detect_time_window(text) or load_config().obs_default_earliest_time,
        requests=CANONICAL_INTENT_REQUESTS[intent],
    )


__all__ = [
    "COUNT_BY_LIMIT",
    "DEFAULT_SPAN",
    "TABLE_LIMIT",
    "coerce_span",
    "coerce_time_modifier",
    "default_observability_plan",
    "default_security_plan",
    "normalize_filters",
    "normalize_observability_plan",
    "normalize_output",
    "normalize_outputs",
    "normalize_security_plan",
]
