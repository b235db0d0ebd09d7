"""Intent guardrails and the observability allow-list for the OpsAgent pipeline."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Tuple

from .config import OBSERVABILITY_WINDOWS
from .intents import (
    detect_language,
    detect_observability_intent,
    extract_tag_tokens,
    has_network_activity_intent,
    has_tag_intent,
)
from .types import ObservabilityPlan, ObservabilityRequest, OutputSpec, SecurityPlan

_LOGGER = logging.getLogger(__name__)

MAX_OUTPUTS = 4
MAX_REQUESTS = 3

DEFAULT_OUTPUT = OutputSpec(kind="table", title="Events", template="table", limit=50)

# ---------------------------------------------------------------------------
# Observability allow-list
# ---------------------------------------------------------------------------

SEC_MODEL_TARGET = "fdtn-ai/Foundation-Sec-8B-Instruct"
SERVING_TARGET = "ai-serving/foundation-instruct-vllm"
GPU_TARGET = "gpu-pool/default"

SUCCESS_COUNT = ObservabilityRequest(
    mcp="metrics-dashboard",
    tool="timeseries-query",
    target=SEC_MODEL_TARGET,
    metric="vllm_request_success_count",
    viz="line",
    title="vLLM success count",
)
SUCCESS_RATE = ObservabilityRequest(
    mcp="metrics-dashboard",
    tool="timeseries-query",
    target=SERVING_TARGET,
    metric="http_request_success_rate",
    viz="line",
    title="Success rate",
)
GPU_UTILIZATION = ObservabilityRequest(
    mcp="metrics-dashboard",
    tool="timeseries-query",
    target=GPU_TARGET,
    metric="gpu_utilization",
    viz="line",
    title="GPU utilization",
)
EXTERNAL_FLOWS = ObservabilityRequest(
    mcp="flow-inspector",
    tool="flow-topology",
    target=SERVING_TARGET,
    metric="external_ingress_flows",
    viz="network",
    title="External ingress flows",
)
COMMUNICATION_ANOMALIES = ObservabilityRequest(
    mcp="anomaly-detector",
    tool="anomaly-topology",
    target=SERVING_TARGET,
    metric="communication_anomalies",
    viz="network",
    title="Communication anomalies",
)

ALLOWED_OBSERVABILITY_REQUESTS: Dict[Tuple[str, str, str, str, str], ObservabilityRequest] = {
    request.key: request
    for request in (SUCCESS_COUNT, SUCCESS_RATE, GPU_UTILIZATION, EXTERNAL_FLOWS, COMMUNICATION_ANOMALIES)
}
_ALLOWED_BY_FOLDED = {tuple(part.lower() for part in key): request for key, request in ALLOWED_OBSERVABILITY_REQUESTS.items()}

CANONICAL_INTENT_REQUESTS: Dict[str, Tuple[ObservabilityRequest, ...]] = {
    "anomaly": (EXTERNAL_FLOWS, COMMUNICATION_ANOMALIES),
    "success_rate": (SUCCESS_RATE,),
    "success_count": (SUCCESS_COUNT,),
    "gpu": (GPU_UTILIZATION,),
}

_REQUEST_FIELDS = ("mcp", "tool", "target", "metric", "viz")


def validate_observability_requests(raw_requests: Any) -> List[ObservabilityRequest]:
    """Keep only allow-listed tuples, canonically spelled, deduplicated, at most three.

    Matching ignores case and surrounding whitespace. Anything else is dropped,
    never repaired.
    """
    if not isinstance(raw_requests, (list, tuple)):
        return []
    accepted: List[ObservabilityRequest] = []
    seen = set()
    for item in raw_requests:
        if not isinstance(item, Mapping):
            continue
        folded = tuple(str(item.get(name) or "").strip().lower() for name in _REQUEST_FIELDS)
        allowed = _ALLOWED_BY_FOLDED.get(folded)
        if allowed is None:
            _LOGGER.info("[GUARDS] Dropping observability request outside allow-list: %s", folded)
            continue
        if allowed.key in seen:
            continue
        seen.add(allowed.key)
        title = item.get("title")
        if isinstance(title, str) and title.strip():
            allowed = replace(allowed, title=" ".join(title.split())[:120])
        accepted.append(allowed)
        if len(accepted) == MAX_REQUESTS:
            break
    return accepted


def apply_observability_guardrails(plan: ObservabilityPlan, text: str) -> ObservabilityPlan:
    """Override requests with the canonical set when the text names a known intent."""
    intent = detect_observability_intent(text)
    requests = plan.requests
    if intent is not None:
        requests = CANONICAL_INTENT_REQUESTS[intent]
        _LOGGER.debug("[GUARDS] Observability intent %s overrides model requests", intent)
    elif not requests:
        requests = CANONICAL_INTENT_REQUESTS["success_rate"]
        _LOGGER.info("[GUARDS] No valid observability request left; using default set")
    earliest = plan.earliest_time if plan.earliest_time in OBSERVABILITY_WINDOWS else "-15m"
    return replace(
        plan,
        language=detect_language(text),
        earliest_time=earliest,
        latest_time="now",
        requests=tuple(requests[:MAX_REQUESTS]),
    )


# ---------------------------------------------------------------------------
# Security guardrails
# ---------------------------------------------------------------------------

def ensure_guardrails(plan: SecurityPlan, text: str) -> SecurityPlan:
    """Re-derive tag and network filters from the raw text and bound the outputs."""
    filters = plan.filters

    tokens = extract_tag_tokens(text)
    if has_tag_intent(text) and tokens:
        filters = replace(filters, tags_exact=tuple(tokens))
    else:
        if filters.tags_exact:
            _LOGGER.info("[GUARDS] Discarding tag filter without explicit tag intent: %s", filters.tags_exact)
        filters = replace(filters, tags_exact=())

    if has_network_activity_intent(text) and filters.has_network_activity is None:
        filters = replace(filters, has_network_activity=True)

    outputs = tuple(plan.outputs)
    if not any(output.kind != "none" for output in outputs):
        outputs = (DEFAULT_OUTPUT,)

    return replace(
        plan,
        language=detect_language(text),
        filters=filters,
        outputs=outputs[:MAX_OUTPUTS],
    )


__all__ = [
    "ALLOWED_OBSERVABILITY_REQUESTS",
    "CANONICAL_INTENT_REQUESTS",
    "DEFAULT_OUTPUT",
    "MAX_OUTPUTS",
    "MAX_REQUESTS",
    "apply_observability_guardrails",
    "ensure_guardrails",
    "validate_observability_requests",
]
