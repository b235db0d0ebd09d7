import pytest

from opsagent import llm
from opsagent.config import load_config

_ENV_KEYS = [
    "QWEN_ENDPOINT",
    "QWEN_CHAT_COMPLETIONS",
    "QWEN_BASE_URL",
    "QWEN_URL",
    "QWEN_MODEL",
    "QWEN_API_KEY",
    "QWEN_DISABLE_THINKING",
    "QWEN_VERIFY_TLS",
    "PLANNER_TIMEOUT_MS",
    "PLANNER_MAX_TOKENS",
    "EXPLAINER_TIMEOUT_MS",
    "EXPLAINER_MAX_TOKENS",
    "SPLUNK_MCP_ENDPOINT",
    "SPLUNK_MCP_TOKEN",
    "MCP_ENDPOINT",
    "MCP_TOKEN",
    "MCP_TIMEOUT_S",
    "MCP_VERIFY_TLS",
    "METRICS_DASHBOARD_MCP_ENDPOINT",
    "METRICS_DASHBOARD_MCP_TOKEN",
    "FLOW_INSPECTOR_MCP_ENDPOINT",
    "FLOW_INSPECTOR_MCP_TOKEN",
    "ANOMALY_DETECTOR_MCP_ENDPOINT",
    "ANOMALY_DETECTOR_MCP_TOKEN",
    "DEFAULT_EARLIEST_TIME",
    "DEFAULT_LATEST_TIME",
    "OBS_DEFAULT_EARLIEST_TIME",
    "PANEL_WORKERS",
    "APP_ACCESS_TOKEN",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Every test starts from an empty OpsAgent environment."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr("opsagent.config.load_dotenv", lambda *a, **k: None)
    monkeypatch.setattr(llm, "_CLIENT", None)
    load_config(refresh=True)
    yield
    load_config(refresh=True)
