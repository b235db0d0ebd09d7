"""
Keyword intent detection for the OpsAgent pipeline.
Everything here is derived from the raw user text only, so guardrails and
fallback plans stay reproducible no matter what the model proposed.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional

_LOGGER = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Patterns and cue lists
# ---------------------------------------------------------------------------

_CJK_RE = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff]")
_ATTACK_TAG_RE = re.compile(r"attack\.t\d{4}(?:\.\d{3})?", re.IGNORECASE)
_NIST_TAG_RE = re.compile(r"nist\.[a-z0-9._-]+", re.IGNORECASE)
_NODE_RE = re.compile(r"\bnode(?:[-_]?\d+[\w-]*|[-_][A-Za-z0-9][\w-]*)", re.IGNORECASE)

_TAG_CUES = ("mitre", "att&ck", "attack.", "nist")
_NETWORK_CUES = ("network activity", "egress", "ingress", "网络")

_SEVERITY_CUES = {
    "CRITICAL": ("critical", "严重", "高危"),
    "WARNING": ("warning", "告警", "警告"),
    "INFO": ("info", "informational", "信息"),
}

# Order matters: the first matching intent wins.
_OBSERVABILITY_CUES = (
    ("anomaly", ("anomal", "异常")),
    ("success_rate", ("success rate", "success-rate", "成功率")),
    ("success_count", ("success count", "successful request", "成功次数")),
    ("gpu", ("gpu", "显卡", "算力")),
)

_WINDOW_60_RE = re.compile(
    r"\b(?:60\s*(?:m|min|mins|minutes)|1\s*(?:h|hr|hour)|an?\s+hour|last\s+hour)\b|60\s*分钟|1\s*小时|一小时",
    re.IGNORECASE,
)
_WINDOW_30_RE = re.compile(
    r"\b(?:30\s*(?:m|min|mins|minutes)|half\s+an\s+hour)\b|30\s*分钟|半小时",
    re.IGNORECASE,
)
_WINDOW_15_RE = re.compile(r"\b15\s*(?:m|min|mins|minutes)\b|15\s*分钟", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------

def _dedupe_preserve(items: List[str]) -> List[str]:
    """Remove duplicates while preserving order."""
    seen, ordered = set(), []
    for item in items:
        if item not in seen:
            seen.add(item)
            ordered.append(item)
    return ordered


def detect_language(text: str) -> str:
    """Return ``zh`` when the text contains CJK ideographs, else ``en``."""
    return "zh" if _CJK_RE.search(text or "") else "en"


def extract_tag_tokens(text: str) -> List[str]:
    """Return explicit ATT&CK / NIST tag tokens from the text, lowercased."""
    source = text or ""
    tokens = [m.group(0).lower() for m in _ATTACK_TAG_RE.finditer(source)]
    tokens += [m.group(0).lower().rstrip(".") for m in _NIST_TAG_RE.finditer(source)]
    return _dedupe_preserve(tokens)


def has_tag_intent(text: str) -> bool:
    lowered = (text or "").lower()
    return any(cue in lowered for cue in _TAG_CUES) or bool(extract_tag_tokens(text))


def has_network_activity_intent(text: str) -> bool:
    lowered = (text or "").lower()
    return any(cue in lowered for cue in _NETWORK_CUES)


def detect_severities(text: str) -> List[str]:
    """Return severity levels named in the text, in CRITICAL/WARNING/INFO order."""
    lowered = (text or "").lower()
    found = []
    for level, cues in _SEVERITY_CUES.items():
        if any(re.search(rf"\b{re.escape(cue)}s?\b", lowered) if cue.isascii() else cue in lowered for cue in cues):
            found.append(level)
    return found


def extract_node(text: str) -> Optional[str]:
    """Return the first explicit node identifier (``node-7``, ``node_a1``) in the text."""
    match = _NODE_RE.search(text or "")
    if not match:
        return None
    return match.group(0).rstrip("-_")


def detect_observability_intent(text: str) -> Optional[str]:
    """Return one of ``anomaly``, ``success_rate``, ``success_count``, ``gpu`` or None."""
    lowered = (text or "").lower()
    for intent, cues in _OBSERVABILITY_CUES:
        if any(cue in lowered for cue in cues):
            _LOGGER.debug("[INTENT] Observability intent resolved to %s", intent)
            return intent
    return None


def detect_time_window(text: str) -> Optional[str]:
    """Map a spoken time window onto ``-15m``/``-30m``/``-60m`` when one is named."""
    source = text or ""
    if _WINDOW_60_RE.search(source):
        return "-60m"
    if _WINDOW_30_RE.search(source):
        return "-30m"
    if _WINDOW_15_RE.search(source):
        return "-15m"
    return None


__all__ = [
    "detect_language",
    "detect_observability_intent",
    "detect_severities",
    "detect_time_window",
    "extract_node",
    "extract_tag_tokens",
    "has_network_activity_intent",
    "has_tag_intent",
]
