from opsagent.guards import (
    COMMUNICATION_ANOMALIES,
    EXTERNAL_FLOWS,
    GPU_UTILIZATION,
    SUCCESS_RATE,
    apply_observability_guardrails,
    ensure_guardrails,
    validate_observability_requests,
)
from opsagent.policy import normalize_observability_plan, normalize_security_plan


def guarded(raw, text):
    return ensure_guardrails(normalize_security_plan(raw, text), text)


def test_tag_filter_stripped_without_tag_intent():
    raw = {"filters": {"tags_exact": ["attack.t1611"]}, "outputs": [{"template": "table"}]}
    plan = guarded(raw, "show container escape events")
    assert plan.filters.tags_exact == ()


def test_tag_intent_keyword_without_tokens_drops_tags():
    raw = {"filters": {"tags_exact": ["attack.t1611"]}, "outputs": [{"template": "table"}]}
    plan = guarded(raw, "which MITRE techniques fired today?")
    assert plan.filters.tags_exact == ()


def test_tags_come_from_text_tokens_only():
    raw = {"filters": {"tags_exact": ["attack.t9999"]}, "outputs": [{"template": "table"}]}
    plan = guarded(raw, "events tagged ATTACK.T1059.001 or nist.ac.4")
    assert plan.filters.tags_exact == ("attack.t1059.001", "nist.ac.4")


def test_network_intent_sets_flag_only_when_unset():
    plan = guarded({"outputs": [{"template": "table"}]}, "show ingress activity")
    assert plan.filters.has_network_activity is True

    explicit = guarded(
        {"filters": {"has_network_activity": False}, "outputs": [{"template": "table"}]},
        "show ingress activity",
    )
    assert explicit.filters.has_network_activity is False


def test_outputs_always_between_one_and_four():
    empty = guarded({"outputs": []}, "hello")
    assert len(empty.outputs) == 1
    assert empty.outputs[0].kind == "table"
    assert empty.outputs[0].title == "Events"

    many = guarded({"outputs": [{"template": "count"}] * 6}, "hello")
    assert len(many.outputs) == 4
    assert all(o.kind != "none" for o in many.outputs)


def test_language_is_derived_from_text():
    plan = guarded({"language": "en", "outputs": [{"template": "table"}]}, "显示严重告警")
    assert plan.language == "zh"


def test_invalid_observability_tuple_is_dropped():
    valid = SUCCESS_RATE.to_payload()
    invalid = dict(valid, target="prod-db/primary")
    assert validate_observability_requests([valid, invalid]) == [SUCCESS_RATE]


def test_observability_match_is_case_insensitive_and_canonical():
    shouted = {k: v.upper() for k, v in GPU_UTILIZATION.to_payload().items() if k != "title"}
    [request] = validate_observability_requests([shouted, shouted])
    assert request.key == GPU_UTILIZATION.key


def test_observability_requests_capped_at_three():
    raw = [r.to_payload() for r in (SUCCESS_RATE, GPU_UTILIZATION, EXTERNAL_FLOWS, COMMUNICATION_ANOMALIES)]
    assert len(validate_observability_requests(raw)) == 3


def test_gpu_intent_overrides_model_requests():
    raw = {"earliest_time": "-30m", "requests": [SUCCESS_RATE.to_payload()]}
    text = "GPU utilization over the last 30 minutes"
    plan = apply_observability_guardrails(normalize_observability_plan(raw, text), text)
    assert plan.requests == (GPU_UTILIZATION,)
    assert plan.earliest_time == "-30m"
    assert plan.latest_time == "now"


def test_anomaly_intent_yields_both_topologies():
    text = "Communication anomalies from the external world to ai-serving/foundation-instruct-vllm"
    plan = apply_observability_guardrails(normalize_observability_plan({}, text), text)
    assert plan.requests == (EXTERNAL_FLOWS, COMMUNICATION_ANOMALIES)


def test_observability_window_outside_allowed_set_falls_back():
    plan = normalize_observability_plan({"earliest_time": "-7d", "requests": []}, "status please")
    guarded_plan = apply_observability_guardrails(plan, "status please")
    assert guarded_plan.earliest_time == "-15m"
    assert guarded_plan.requests == (SUCCESS_RATE,)
