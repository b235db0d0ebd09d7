"""Plan requests to the language model plus loose JSON extraction of the reply."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from .config import OBSERVABILITY_WINDOWS, load_config
from .guards import ALLOWED_OBSERVABILITY_REQUESTS, apply_observability_guardrails, ensure_guardrails
from .llm import complete
from .policy import normalize_observability_plan, normalize_security_plan
from .types import Plan

_LOGGER = logging.getLogger(__name__)


class PlannerError(RuntimeError):
    """Raised when the planning reply holds no usable JSON object."""


SECURITY_PLANNER_PROMPT = "\n".join(
    [
        "You plan queries for an IT security operations assistant.",
        "Reply with exactly one JSON object and nothing else: no markdown, no commentary.",
        "Never write SPL, never invent field names, never invent saved searches.",
        "",
        "Event fields:",
        "- _time: only used through earliest_time / latest_time.",
        "- Severity: exact values CRITICAL, WARNING or INFO.",
        "- Description, Details: substring match.",
        "- node_pod_container: substring match on the node / pod / container name.",
        "- recent_network_activity: either 'N/A' or a value; filter with has_network_activity.",
        "- Tags: fixed tokens such as attack.t1611 or nist.ac.4. Only filter on tags when the user",
        "  asks for tag filtering or names explicit tokens.",
        "",
        "filters (every key optional):",
        '- "severity_exact": ["CRITICAL","WARNING","INFO"]',
        '- "description_like": "text"',
        '- "details_like": "text"',
        '- "node_like": "text"',
        '- "has_network_activity": true | false',
        '- "tags_exact": ["attack.t1611"]',
        "",
        "outputs (1 to 4 entries, in display order):",
        '- {"kind":"single","title":"...","template":"count"}',
        '- {"kind":"table","title":"...","template":"table","limit":50}',
        '- {"kind":"bar"|"pie","title":"...","template":"count_by",'
        '"group_by":"Severity"|"node_pod_container"|"recent_network_activity"|"tag","limit":10}',
        '- {"kind":"line","title":"...","template":"trend","span":"5m","split":"none"|"severity"}',
        "",
        "Schema:",
        '{"earliest_time":"-15m","latest_time":"now","filters":{},"outputs":[]}',
        "",
        "Guidelines:",
        "- Listing or showing events needs a table.",
        "- Distributions or statistics need count_by.",
        "- Changes over time need trend.",
        "- When unsure, add a table.",
    ]
)


def observability_planner_prompt() -> str:
    rows = [
        json.dumps(
            {
                "mcp": request.mcp,
                "tool": request.tool,
                "target": request.target,
                "metric": request.metric,
                "viz": request.viz,
            }
        )
        for request in ALLOWED_OBSERVABILITY_REQUESTS.values()
    ]
    return "\n".join(
        [
            "You plan queries for an AI-serving observability assistant.",
            "Reply with exactly one JSON object and nothing else: no markdown, no commentary.",
            "Pick 1 to 3 requests. Each request must copy one of these entries exactly,",
            "adding only a short \"title\":",
            *rows,
            "",
            f"earliest_time must be one of {', '.join(OBSERVABILITY_WINDOWS)}; latest_time is always now.",
            "",
            "Schema:",
            '{"earliest_time":"-15m","latest_time":"now","requests":[]}',
        ]
    )


def extract_json_object_loose(text: str) -> Optional[Dict[str, Any]]:
    """Parse the span from the first ``{`` to the last ``}``; tolerate prose and fences around it."""
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        return None
    try:
        parsed = json.loads(text[start : end + 1])
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def request_plan(text: str, workspace: str) -> Plan:
    """Ask the model for a plan, then coerce and guard it. Raises on any failure."""
    cfg = load_config()
    system = SECURITY_PLANNER_PROMPT if workspace == "security" else observability_planner_prompt()
    raw_text = complete(
        [{"role": "system", "content": system}, {"role": "user", "content": text}],
        max_tokens=cfg.planner_max_tokens,
        timeout_s=cfg.planner_timeout_s,
        temperature=0.0,
        top_p=1.0,
    )
    candidate = extract_json_object_loose(raw_text)
    if candidate is None:
        _LOGGER.warning("[PLANNER] No JSON object in planner reply: %s", (raw_text or "")[:200])
        raise PlannerError("Planner returned no JSON object")
    if workspace == "security":
        return ensure_guardrails(normalize_security_plan(candidate, text), text)
    return apply_observability_guardrails(normalize_observability_plan(candidate, text), text)


__all__ = [
    "PlannerError",
    "SECURITY_PLANNER_PROMPT",
    "extract_json_object_loose",
    "observability_planner_prompt",
    "request_plan",
]
