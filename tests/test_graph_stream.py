import asyncio
import logging
import threading
import time

import pytest

from opsagent import graph, mcp_client
from opsagent.graph import InvalidTransition, StageMachine, run, stream
from opsagent.guards import GPU_UTILIZATION, ensure_guardrails
from opsagent.llm import TIMEOUT_MESSAGE
from opsagent.policy import normalize_security_plan

SCENARIO_A = "show me critical alerts from node-7 in the last hour"


def collect(message, workspace="security", cancel=None):
    frames = []
    result = run(message, workspace, lambda event, data: frames.append((event, data)), cancel)
    return frames, result


def events(frames):
    return [event if event != "status" else f"status:{data['stage']}" for event, data in frames]


def llm_plan(text):
    raw = {
        "filters": {"severity_exact": ["CRITICAL"], "node_like": "node-7"},
        "outputs": [
            {"kind": "single", "title": "Critical events", "template": "count"},
            {"kind": "table", "title": "Events", "template": "table", "limit": 20},
        ],
    }
    return ensure_guardrails(normalize_security_plan(raw, text), text)


def splunk_rows(query, earliest, latest, row_limit):
    if "stats count as value" in query:
        return [{"value": "2"}]
    return [{"Time": "2025-01-01 10:00:00", "Severity": "CRITICAL", "Description": "shell"}] * 2


def narrate(*chunks):
    def fake(text, plan, evidence):
        yield from chunks

    return fake


def planner_timeout(text, workspace):
    raise TimeoutError("planner")


def failing_narration(text, plan, evidence):
    raise TimeoutError("explainer deadline")
    yield  # pragma: no cover


@pytest.fixture
def splunk(monkeypatch):
    monkeypatch.setattr(mcp_client, "call_splunk_query", splunk_rows)


# ---------------------------------------------------------------------------
# End-to-end runs
# ---------------------------------------------------------------------------


def test_successful_run_emits_frames_in_stage_order(monkeypatch, splunk):
    monkeypatch.setattr(graph, "request_plan", lambda text, workspace: llm_plan(text))
    monkeypatch.setattr(graph, "stream_narration", narrate("## Summary", "\nTwo critical events."))

    frames, result = collect(SCENARIO_A)

    assert events(frames) == [
        "status:planning",
        "plan",
        "status:querying",
        "panel",
        "panel",
        "status:explaining",
        "delta",
        "delta",
        "done",
    ]
    assert frames[-1][1] == {"ok": True}
    assert frames[3][1]["kind"] == "single"
    assert frames[3][1]["value"] == 2
    assert frames[4][1]["kind"] == "table"
    assert result["narration"] == "## Summary\nTwo critical events."
    assert "total_latency_s" in result["telemetry"]


def test_explainer_failure_falls_back_to_panels(monkeypatch, splunk):
    monkeypatch.setattr(graph, "request_plan", lambda text, workspace: llm_plan(text))
    monkeypatch.setattr(graph, "stream_narration", failing_narration)

    frames, _ = collect(SCENARIO_A)

    deltas = [data["text"] for event, data in frames if event == "delta"]
    assert len(deltas) == 1
    assert deltas[0].startswith("Returned: 2 events")
    event, done = frames[-1]
    assert event == "done"
    assert done == {"ok": False, "error": TIMEOUT_MESSAGE}


def test_fallback_after_partial_narration_is_separated(monkeypatch, splunk):
    def partial(text, plan, evidence):
        yield "## Summary"
        raise RuntimeError("stream reset")

    monkeypatch.setattr(graph, "request_plan", lambda text, workspace: llm_plan(text))
    monkeypatch.setattr(graph, "stream_narration", partial)

    frames, _ = collect(SCENARIO_A)

    deltas = [data["text"] for event, data in frames if event == "delta"]
    assert deltas[0] == "## Summary"
    assert deltas[1].startswith("\n\nReturned: 2 events")
    assert frames[-1][1] == {"ok": False, "error": "stream reset"}


def test_planner_timeout_uses_keyword_plan(monkeypatch, splunk):
    monkeypatch.setattr(graph, "request_plan", planner_timeout)
    monkeypatch.setattr(graph, "stream_narration", narrate("ok"))

    frames, _ = collect(SCENARIO_A)

    assert events(frames)[:3] == ["status:planning", "status:planning_warning", "plan"]
    assert frames[1][1] == {"stage": "planning_warning", "message": TIMEOUT_MESSAGE}
    plan = frames[2][1]
    assert plan["filters"]["severity_exact"] == ["CRITICAL"]
    assert plan["filters"]["node_like"] == "node-7"
    assert [o["template"] for o in plan["outputs"]] == ["count_by", "table"]
    assert "panel" in events(frames)
    assert frames[-1] == ("done", {"ok": True})


def test_unconfigured_planner_still_answers(splunk, monkeypatch):
    monkeypatch.setattr(graph, "stream_narration", narrate("ok"))
    frames, _ = collect("list warning events")
    assert frames[1][1]["stage"] == "planning_warning"
    assert frames[-1] == ("done", {"ok": True})


def test_gpu_question_uses_canonical_request(monkeypatch):
    calls = []

    def fake_obs(request, earliest, latest, row_limit):
        calls.append(request)
        return [{"time": "10:00", "value": "55"}]

    monkeypatch.setattr(graph, "request_plan", planner_timeout)
    monkeypatch.setattr(mcp_client, "call_observability_tool", fake_obs)
    monkeypatch.setattr(graph, "stream_narration", narrate("GPU steady."))

    frames, _ = collect("GPU utilization over the last 30 minutes", workspace="observability")

    plan = next(data for event, data in frames if event == "plan")
    assert plan["workspace"] == "observability"
    assert plan["earliest_time"] == "-30m"
    assert [r["metric"] for r in plan["requests"]] == ["gpu_utilization"]
    assert calls == [GPU_UTILIZATION]
    panel = next(data for event, data in frames if event == "panel")
    assert panel["seriesKeys"] == ["gpu_utilization"]


def test_query_failure_ends_with_error_frame(monkeypatch):
    def broken(query, earliest, latest, row_limit):
        raise mcp_client.BackendError("Splunk MCP HTTP 503: unavailable")

    monkeypatch.setattr(graph, "request_plan", lambda text, workspace: llm_plan(text))
    monkeypatch.setattr(mcp_client, "call_splunk_query", broken)

    frames, result = collect(SCENARIO_A)

    assert events(frames) == ["status:planning", "plan", "status:querying", "error"]
    assert frames[-1][1] == {"stage": "querying", "message": "Splunk MCP HTTP 503: unavailable"}
    assert result["failed_stage"] == "querying"


def test_graph_nodes_receive_stage_machine_from_config(monkeypatch, splunk):
    monkeypatch.setattr(graph, "request_plan", lambda text, workspace: llm_plan(text))
    monkeypatch.setattr(graph, "stream_narration", narrate("ok"))
    frames = []
    machine = StageMachine(lambda event, data: frames.append(event))

    graph.build_graph().invoke(
        graph.PipelineState(message=SCENARIO_A),
        config={"configurable": {"machine": machine}},
    )

    assert frames[0] == "status"
    assert frames[-1] == "done"
    assert machine.closed


def test_disconnect_before_explaining_skips_narration(monkeypatch, splunk):
    narration_calls = []

    def record(text, plan, evidence):
        narration_calls.append(text)
        yield "unused"

    monkeypatch.setattr(graph, "request_plan", lambda text, workspace: llm_plan(text))
    monkeypatch.setattr(graph, "stream_narration", record)
    cancel = threading.Event()
    frames = []

    def emit(event, data):
        frames.append(event)
        if event == "panel" and data["kind"] == "table":
            cancel.set()

    run(SCENARIO_A, "security", emit, cancel)

    assert narration_calls == []
    assert frames[-1] == "panel"


# ---------------------------------------------------------------------------
# Stage machine
# ---------------------------------------------------------------------------


def test_stage_machine_rejects_out_of_order_transitions():
    frames = []
    machine = StageMachine(lambda event, data: frames.append((event, data)))
    with pytest.raises(InvalidTransition):
        machine.enter("querying")
    machine.enter("planning")
    with pytest.raises(InvalidTransition):
        machine.enter("explaining")
    machine.enter("querying")
    with pytest.raises(InvalidTransition):
        machine.warn("late warning")


def test_error_state_is_absorbing():
    frames = []
    machine = StageMachine(lambda event, data: frames.append((event, data)))
    machine.enter("planning")
    machine.fail("boom")
    machine.fail("again")
    assert frames[-1] == ("error", {"stage": "planning", "message": "boom"})
    assert len([f for f in frames if f[0] == "error"]) == 1
    with pytest.raises(InvalidTransition):
        machine.enter("querying")


def test_cancelled_machine_drops_frames():
    frames = []
    cancel = threading.Event()
    machine = StageMachine(lambda event, data: frames.append((event, data)), cancel)
    machine.enter("planning")
    cancel.set()
    assert machine.send("plan", {}) is False
    assert frames == [("status", {"stage": "planning"})]


def test_cancelled_run_emits_nothing(monkeypatch, splunk):
    monkeypatch.setattr(graph, "request_plan", lambda text, workspace: llm_plan(text))
    monkeypatch.setattr(graph, "stream_narration", narrate("unused"))
    cancel = threading.Event()
    cancel.set()
    frames, _ = collect(SCENARIO_A, cancel=cancel)
    assert frames == []


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------


def test_async_stream_yields_all_frames(monkeypatch, splunk):
    monkeypatch.setattr(graph, "request_plan", lambda text, workspace: llm_plan(text))
    monkeypatch.setattr(graph, "stream_narration", narrate("done"))

    async def consume():
        return [frame async for frame in stream(SCENARIO_A, "security")]

    frames = asyncio.run(consume())
    assert frames[0] == {"event": "status", "data": {"stage": "planning"}}
    assert frames[-1] == {"event": "done", "data": {"ok": True}}


def test_consumer_leaving_early_abandons_run(monkeypatch, caplog):
    def slow_plan(text, workspace):
        time.sleep(0.3)
        return llm_plan(text)

    monkeypatch.setattr(graph, "request_plan", slow_plan)

    async def take_first():
        frames = stream(SCENARIO_A, "security")
        first = await frames.__anext__()
        await frames.aclose()
        return first

    with caplog.at_level(logging.INFO, logger="opsagent.graph"):
        first = asyncio.run(take_first())

    assert first == {"event": "status", "data": {"stage": "planning"}}
    assert "abandoning run" in caplog.text
