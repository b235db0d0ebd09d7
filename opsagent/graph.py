"""Stage machine and LangGraph orchestration for one OpsAgent request."""
from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import asdict
from functools import lru_cache
from typing import Any, AsyncGenerator, Dict, Optional

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph

from .compose import fallback_markdown, stream_narration
from .config import load_config
from .evidence import build_evidence
from .llm import describe_error
from .panels import run_panels
from .planner import request_plan
from .policy import default_observability_plan, default_security_plan
from .guards import apply_observability_guardrails, ensure_guardrails
from .types import Emit, Panel, PipelineState, Plan

_LOGGER = logging.getLogger(__name__)

STAGES = ("planning", "querying", "explaining", "done")
PLANNING_WARNING = "planning_warning"


class InvalidTransition(RuntimeError):
    """Raised when a stage is entered out of order or after the run closed."""


# ---------------------------------------------------------------------------
# Stage machine
# ---------------------------------------------------------------------------

class StageMachine:
    """Forward-only planning -> querying -> explaining -> done, with an absorbing error state.

    All frames go through ``emit``. Once the run is closed or cancelled,
    further frames are dropped.
    """

    def __init__(self, emit: Emit, cancel: Optional[threading.Event] = None) -> None:
        self._emit = emit
        self.cancel = cancel or threading.Event()
        self.stage: Optional[str] = None
        self.closed = False

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()

    def send(self, event: str, payload: Dict[str, Any]) -> bool:
        if self.closed or self.cancelled:
            return False
        self._emit(event, payload)
        return True

    def enter(self, stage: str) -> None:
        if self.closed or self.stage == "error":
            raise InvalidTransition(f"Run already closed; cannot enter {stage}")
        expected = STAGES[0] if self.stage is None else STAGES[STAGES.index(self.stage) + 1]
        if stage != expected:
            raise InvalidTransition(f"Cannot move from {self.stage} to {stage}")
        self.stage = stage
        if stage != "done":
            self.send("status", {"stage": stage})

    def warn(self, message: str) -> None:
        """Advisory status while planning; the stage does not change."""
        if self.stage != "planning":
            raise InvalidTransition(f"{PLANNING_WARNING} is only valid while planning")
        self.send("status", {"stage": PLANNING_WARNING, "message": message})

    def finish(self, ok: bool, error: Optional[str] = None) -> None:
        self.enter("done")
        payload: Dict[str, Any] = {"ok": ok}
        if error:
            payload["error"] = error
        self.send("done", payload)
        self.closed = True

    def fail(self, message: str) -> None:
        if self.closed:
            return
        failed_stage = self.stage or STAGES[0]
        self.stage = "error"
        self.send("error", {"stage": failed_stage, "message": message})
        self.closed = True


def _machine(config: RunnableConfig) -> StageMachine:
    return config["configurable"]["machine"]


# ---------------------------------------------------------------------------
# Nodes
# ---------------------------------------------------------------------------

def _default_plan(state: PipelineState) -> Plan:
    if state.workspace == "observability":
        return apply_observability_guardrails(default_observability_plan(state.message), state.message)
    return ensure_guardrails(default_security_plan(state.message), state.message)


def _planning_node(state: PipelineState, config: RunnableConfig) -> PipelineState:
    machine = _machine(config)
    machine.enter("planning")
    start = time.perf_counter()
    try:
        state.plan = request_plan(state.message, state.workspace)
    except Exception as exc:
        state.plan_warning = describe_error(exc)
        _LOGGER.warning("[PIPELINE] Planning failed, using keyword plan: %s", state.plan_warning)
        machine.warn(state.plan_warning)
        state.plan = _default_plan(state)
    state.language = state.plan.language
    state.telemetry["planning_ms"] = round((time.perf_counter() - start) * 1000, 1)
    machine.send("plan", state.plan.to_payload())
    return state


def _querying_node(state: PipelineState, config: RunnableConfig) -> PipelineState:
    machine = _machine(config)
    machine.enter("querying")
    start = time.perf_counter()

    def emit_panel(panel: Panel) -> None:
        state.panels.append(panel)
        machine.send("panel", panel.to_payload())

    try:
        run_panels(
            state.plan,
            emit_panel,
            workers=load_config().panel_workers,
            should_stop=lambda: machine.cancelled,
        )
    except Exception as exc:
        state.failed_stage = "querying"
        state.error = describe_error(exc)
        _LOGGER.error("[PIPELINE] Query stage failed: %s", state.error, exc_info=True)
    state.telemetry["querying_ms"] = round((time.perf_counter() - start) * 1000, 1)
    return state


def _explaining_node(state: PipelineState, config: RunnableConfig) -> PipelineState:
    machine = _machine(config)
    machine.enter("explaining")
    if machine.cancelled:
        _LOGGER.info("[PIPELINE] Client went away before narration; skipping explainer call")
        return state
    start = time.perf_counter()
    state.evidence = build_evidence(state.panels)
    chunks = []
    try:
        narration = stream_narration(state.message, state.plan, state.evidence)
        try:
            for delta in narration:
                if not machine.send("delta", {"text": delta}):
                    break
                chunks.append(delta)
        finally:
            narration.close()
    except Exception as exc:
        state.narration_ok = False
        state.narration_error = describe_error(exc)
        _LOGGER.warning("[NARRATION] Explainer failed, using fallback text: %s", state.narration_error)
        fallback = fallback_markdown(state.language, state.panels, state.workspace)
        if chunks:
            fallback = "\n\n" + fallback
        machine.send("delta", {"text": fallback})
        chunks.append(fallback)
    state.narration = "".join(chunks)
    state.telemetry["explaining_ms"] = round((time.perf_counter() - start) * 1000, 1)
    if not machine.cancelled:
        machine.finish(state.narration_ok, state.narration_error)
    return state


def _failed_node(state: PipelineState, config: RunnableConfig) -> PipelineState:
    _machine(config).fail(state.error or "Unknown error")
    return state


def _query_route(state: PipelineState) -> str:
    return "failed" if state.failed_stage else "continue"


@lru_cache(maxsize=1)
def build_graph():
    """Build and compile the planning -> querying -> explaining graph."""
    builder = StateGraph(PipelineState)
    builder.add_node("planning", _planning_node)
    builder.add_node("querying", _querying_node)
    builder.add_node("explaining", _explaining_node)
    builder.add_node("failed", _failed_node)

    builder.set_entry_point("planning")
    builder.add_edge("planning", "querying")
    builder.add_conditional_edges("querying", _query_route, {
        "continue": "explaining",
        "failed": "failed",
    })
    builder.add_edge("explaining", END)
    builder.add_edge("failed", END)
    return builder.compile()


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def run(
    message: str,
    workspace: str,
    emit: Emit,
    cancel: Optional[threading.Event] = None,
) -> Dict[str, Any]:
    """Execute one request synchronously, sending every frame through ``emit``."""
    machine = StageMachine(emit, cancel)
    initial = PipelineState(message=message, workspace="observability" if workspace == "observability" else "security")
    _LOGGER.info("[PIPELINE] Starting run | workspace=%s", initial.workspace)
    start = time.time()
    try:
        result = build_graph().invoke(initial, config={"configurable": {"machine": machine}})
    except Exception as exc:
        _LOGGER.error("[PIPELINE] Run aborted: %s", exc, exc_info=True)
        machine.fail(describe_error(exc))
        result = asdict(initial)
    elapsed = time.time() - start
    _LOGGER.info("[PIPELINE] Completed in %.2fs", elapsed)
    if not isinstance(result, dict):
        result = asdict(result)
    result.setdefault("telemetry", {})["total_latency_s"] = elapsed
    return result


async def stream(message: str, workspace: str) -> AsyncGenerator[Dict[str, Any], None]:
    """Yield ``{"event", "data"}`` frames as the worker thread produces them."""
    loop = asyncio.get_running_loop()
    frame_queue: asyncio.Queue[Optional[Dict[str, Any]]] = asyncio.Queue()
    cancel = threading.Event()

    def push(item: Optional[Dict[str, Any]]) -> None:
        if cancel.is_set() or loop.is_closed():
            return
        loop.call_soon_threadsafe(frame_queue.put_nowait, item)

    def handler(event: str, payload: Dict[str, Any]) -> None:
        push({"event": event, "data": payload})

    def worker() -> None:
        try:
            run(message, workspace, handler, cancel)
        except Exception as exc:  # pragma: no cover - run() already converts failures
            _LOGGER.error("[PIPELINE] Worker crashed: %s", exc, exc_info=True)
        finally:
            push(None)

    thread = threading.Thread(target=worker, daemon=True)
    thread.start()

    drained = False
    try:
        while True:
            item = await frame_queue.get()
            if item is None:
                drained = True
                break
            yield item
    finally:
        cancel.set()
        if not drained and thread.is_alive():
            _LOGGER.info("[PIPELINE] Consumer left; abandoning run for workspace=%s", workspace)


__all__ = [
    "InvalidTransition",
    "PLANNING_WARNING",
    "STAGES",
    "StageMachine",
    "build_graph",
    "run",
    "stream",
]
