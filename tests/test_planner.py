import pytest

from opsagent import planner
from opsagent.config import ConfigurationError, load_config
from opsagent.guards import GPU_UTILIZATION
from opsagent.llm import TIMEOUT_MESSAGE, apply_no_think, describe_error
from opsagent.planner import PlannerError, extract_json_object_loose, request_plan
from opsagent.types import ObservabilityPlan, SecurityPlan


def test_loose_extraction_tolerates_fences_and_prose():
    reply = 'Sure, here is the plan:\n```json\n{"earliest_time": "-1h", "outputs": []}\n```\nHope it helps!'
    assert extract_json_object_loose(reply) == {"earliest_time": "-1h", "outputs": []}


def test_loose_extraction_rejects_non_objects():
    assert extract_json_object_loose("") is None
    assert extract_json_object_loose("no braces here") is None
    assert extract_json_object_loose("} backwards {") is None
    assert extract_json_object_loose("{not json}") is None


def test_security_plan_is_normalized_and_guarded(monkeypatch):
    captured = {}

    def fake_complete(messages, **kwargs):
        captured["messages"] = messages
        captured.update(kwargs)
        return '{"earliest_time":"-1h","filters":{"severity_exact":["critical"],"tags_exact":["attack.t1611"]},' \
            '"outputs":[{"kind":"bar","template":"count_by","group_by":"node_pod_container"}]}'

    monkeypatch.setattr(planner, "complete", fake_complete)
    plan = request_plan("critical events by node", "security")

    assert isinstance(plan, SecurityPlan)
    assert plan.earliest_time == "-1h"
    assert plan.filters.severity_exact == ("CRITICAL",)
    assert plan.filters.tags_exact == ()
    assert plan.outputs[0].group_by == "node_pod_container"
    assert captured["max_tokens"] == 256
    assert captured["timeout_s"] == 45.0
    assert captured["messages"][0]["content"] == planner.SECURITY_PLANNER_PROMPT


def test_observability_plan_uses_allow_list(monkeypatch):
    monkeypatch.setattr(planner, "complete", lambda messages, **kwargs: '{"earliest_time":"-60m","requests":[]}')
    plan = request_plan("gpu utilization in the last hour", "observability")
    assert isinstance(plan, ObservabilityPlan)
    assert plan.requests == (GPU_UTILIZATION,)
    assert plan.earliest_time == "-60m"


def test_observability_prompt_lists_every_allowed_metric():
    prompt = planner.observability_planner_prompt()
    for metric in (
        "vllm_request_success_count",
        "http_request_success_rate",
        "gpu_utilization",
        "external_ingress_flows",
        "communication_anomalies",
    ):
        assert metric in prompt


def test_reply_without_json_raises(monkeypatch):
    monkeypatch.setattr(planner, "complete", lambda messages, **kwargs: "I cannot help with that.")
    with pytest.raises(PlannerError):
        request_plan("show events", "security")


def test_missing_endpoint_raises_configuration_error():
    with pytest.raises(ConfigurationError):
        request_plan("show events", "security")


def test_no_think_prefix_targets_last_user_message():
    messages = [
        {"role": "system", "content": "sys"},
        {"role": "user", "content": "first"},
        {"role": "user", "content": "second"},
    ]
    patched = apply_no_think(messages)
    assert patched[2]["content"] == "/no_think\nsecond"
    assert patched[1]["content"] == "first"
    assert messages[2]["content"] == "second"


def test_timeouts_share_one_message():
    assert describe_error(TimeoutError()) == TIMEOUT_MESSAGE
    assert describe_error(ValueError("bad")) == "bad"


def test_endpoint_forms_resolve_to_base_url(monkeypatch):
    monkeypatch.setenv("QWEN_ENDPOINT", "https://llm.example/v1/chat/completions")
    assert load_config(refresh=True).llm_base_url == "https://llm.example/v1"

    monkeypatch.delenv("QWEN_ENDPOINT")
    monkeypatch.setenv("QWEN_BASE_URL", "https://llm.example/")
    assert load_config(refresh=True).llm_base_url == "https://llm.example/v1"
