"""Narration prompts, the streamed explainer call, and the deterministic fallback text."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .config import load_config
from .evidence import build_explainer_input
from .llm import stream_completion
from .types import Panel, Plan, SinglePanel, TablePanel

_LOGGER = logging.getLogger(__name__)


class NarrationError(RuntimeError):
    """Raised when the explainer produces no usable text."""


# ---------------------------------------------------------------------
# PROMPTS
# ---------------------------------------------------------------------

def explainer_system_prompt(language: str) -> str:
    language_line = (
        "Always answer in Simplified Chinese." if language == "zh" else "Always answer in English."
    )
    return "\n".join(
        [
            "You are an IT operations assistant explaining query results.",
            "Answer in Markdown. Do not emit <think> blocks.",
            language_line,
            "",
            "Rely only on the evidence in the user message and never make up numbers.",
            "Layout:",
            "1) a summary of 2-4 lines",
            "2) 3-6 bullets of key findings, quoting the numbers",
            "3) 2-4 bullets of recommended next actions",
        ]
    )


def build_explainer_messages(text: str, plan: Plan, evidence: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    bundle = build_explainer_input(text, plan, evidence)
    return [
        {"role": "system", "content": explainer_system_prompt(plan.language)},
        {"role": "user", "content": json.dumps(bundle, ensure_ascii=False, default=str)},
    ]


# ---------------------------------------------------------------------
# NARRATION
# ---------------------------------------------------------------------

def stream_narration(text: str, plan: Plan, evidence: List[Dict[str, Any]]) -> Iterator[str]:
    """Yield narration increments in arrival order; raise if the model says nothing."""
    cfg = load_config()
    produced = False
    for delta in stream_completion(
        build_explainer_messages(text, plan, evidence),
        max_tokens=cfg.explainer_max_tokens,
        timeout_s=cfg.explainer_timeout_s,
        temperature=0.2,
        top_p=0.9,
    ):
        produced = True
        yield delta
    if not produced:
        raise NarrationError("Explainer returned an empty answer")


# ---------------------------------------------------------------------
# FALLBACKS
# ---------------------------------------------------------------------

def returned_count(panels: Sequence[Panel]) -> Optional[Any]:
    """Event count from a count panel, else the row count of the first table."""
    for panel in panels:
        if isinstance(panel, SinglePanel):
            return panel.value
    for panel in panels:
        if isinstance(panel, TablePanel):
            return len(panel.rows)
    return None


def fallback_markdown(language: str, panels: Sequence[Panel], workspace: str = "security") -> str:
    """Deterministic narration built only from panels already delivered."""
    count = returned_count(panels)
    if language == "zh":
        head = f"返回数量：{count}条" if count is not None else "已返回图表与表格"
        source = "Splunk 数据面板" if workspace == "security" else "监控数据面板"
        return f"{head}\n\n模型解释阶段失败，但{source}已经返回。"
    head = f"Returned: {count} events" if count is not None else "Charts and tables returned"
    source = "Splunk panels are" if workspace == "security" else "the data panels are"
    return f"{head}\n\nThe explanation stage failed, but {source} already returned."


__all__ = [
    "NarrationError",
    "build_explainer_messages",
    "explainer_system_prompt",
    "fallback_markdown",
    "returned_count",
    "stream_narration",
]
