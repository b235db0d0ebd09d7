"""
Configuration utilities for the OpsAgent pipeline.
Reads the environment once (with optional .env support) and exposes the
language-model, MCP backend, and time-range settings used by
planner → mcp_client → panels → compose.
"""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv

_LOGGER = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """Raised when an endpoint or credential required by a call is missing."""


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_MODEL = "Qwen/Qwen3-14B-FP8"
OBSERVABILITY_WINDOWS: Tuple[str, ...] = ("-15m", "-30m", "-60m")

# mcp name -> env var prefix for each observability backend.
OBSERVABILITY_MCP_ENV: Dict[str, str] = {
    "metrics-dashboard": "METRICS_DASHBOARD_MCP",
    "flow-inspector": "FLOW_INSPECTOR_MCP",
    "anomaly-detector": "ANOMALY_DETECTOR_MCP",
}


# ---------------------------------------------------------------------------
# Utility Functions
# ---------------------------------------------------------------------------

def clamp_int(value: Any, lo: int, hi: int, default: int) -> int:
    """Coerce ``value`` to an int inside ``[lo, hi]``; unparsable input yields ``default``."""
    if isinstance(value, bool) or value is None:
        return default
    try:
        number = float(str(value).strip()) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return max(lo, min(hi, int(math.floor(number))))


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def strip_quotes(value: Optional[str]) -> str:
    """Trim whitespace and one pair of surrounding quotes (common in .env files)."""
    text = (value or "").strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in {"'", '"'}:
        text = text[1:-1].strip()
    return text


def _first_env(*names: str) -> str:
    for name in names:
        value = strip_quotes(os.getenv(name))
        if value:
            return value
    return ""


def _base_url_from(chat_url: str, base_url: str) -> str:
    """Turn either a chat-completions URL or a server base URL into an OpenAI ``base_url``."""
    if chat_url:
        url = chat_url.rstrip("/")
        suffix = "/chat/completions"
        if url.endswith(suffix):
            url = url[: -len(suffix)]
        return url
    if base_url:
        url = base_url.rstrip("/")
        return url if url.endswith("/v1") else f"{url}/v1"
    return ""


# ---------------------------------------------------------------------------
# Dataclass Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Config:
    """Immutable configuration for one OpsAgent process."""

    llm_base_url: str
    llm_model: str
    llm_api_key: Optional[str]
    llm_verify_tls: bool
    disable_thinking: bool
    planner_timeout_ms: int
    planner_max_tokens: int
    explainer_timeout_ms: int
    explainer_max_tokens: int
    splunk_mcp_endpoint: str
    splunk_mcp_token: str
    mcp_timeout_s: float
    mcp_verify_tls: bool
    observability_mcp: Dict[str, Tuple[str, str]]
    default_earliest_time: str = "-15m"
    default_latest_time: str = "now"
    obs_default_earliest_time: str = "-15m"
    panel_workers: int = 1
    app_access_token: str = ""

    @property
    def planner_timeout_s(self) -> float:
        return self.planner_timeout_ms / 1000.0

    @property
    def explainer_timeout_s(self) -> float:
        return self.explainer_timeout_ms / 1000.0

    def resolve_llm_base_url(self) -> str:
        if not self.llm_base_url:
            raise ConfigurationError(
                "Language model endpoint is not configured (QWEN_ENDPOINT or QWEN_BASE_URL)."
            )
        return self.llm_base_url

    def resolve_splunk_mcp(self) -> Tuple[str, str]:
        if not self.splunk_mcp_endpoint:
            raise ConfigurationError("Missing SPLUNK_MCP_ENDPOINT (or MCP_ENDPOINT).")
        if not self.splunk_mcp_token:
            raise ConfigurationError("Missing SPLUNK_MCP_TOKEN (or MCP_TOKEN).")
        return self.splunk_mcp_endpoint, self.splunk_mcp_token

    def resolve_observability_mcp(self, mcp: str) -> Tuple[str, str]:
        endpoint, token = self.observability_mcp.get(mcp, ("", ""))
        if not endpoint:
            prefix = OBSERVABILITY_MCP_ENV.get(mcp, mcp.upper().replace("-", "_") + "_MCP")
            raise ConfigurationError(f"Missing {prefix}_ENDPOINT for MCP '{mcp}'.")
        return endpoint, token

    def describe(self) -> Dict[str, Any]:
        """Return which collaborators are configured, without secrets."""
        return {
            "llm": bool(self.llm_base_url),
            "model": self.llm_model,
            "splunk_mcp": bool(self.splunk_mcp_endpoint and self.splunk_mcp_token),
            "observability_mcp": {name: bool(pair[0]) for name, pair in self.observability_mcp.items()},
            "auth": bool(self.app_access_token),
        }


_cached_config: Optional[Config] = None


# ---------------------------------------------------------------------------
# Environment Handling
# ---------------------------------------------------------------------------

def _time_modifier(name: str, default: str) -> str:
    value = strip_quotes(os.getenv(name))
    return value or default


def load_config(refresh: bool = False) -> Config:
    """
    Load configuration from environment and cache the result.
    Parameters
    ----------
    refresh : bool
        If True, re-read environment variables and reinitialize Config.
    """
    global _cached_config
    if _cached_config is not None and not refresh:
        return _cached_config

    load_dotenv(override=False)

    llm_base_url = _base_url_from(
        _first_env("QWEN_ENDPOINT", "QWEN_CHAT_COMPLETIONS"),
        _first_env("QWEN_BASE_URL", "QWEN_URL"),
    )
    llm_model = _first_env("QWEN_MODEL") or DEFAULT_MODEL
    llm_api_key = _first_env("QWEN_API_KEY") or None

    observability_mcp = {
        mcp: (_first_env(f"{prefix}_ENDPOINT"), _first_env(f"{prefix}_TOKEN"))
        for mcp, prefix in OBSERVABILITY_MCP_ENV.items()
    }

    obs_earliest = _time_modifier("OBS_DEFAULT_EARLIEST_TIME", "-15m")
    if obs_earliest not in OBSERVABILITY_WINDOWS:
        _LOGGER.warning("Ignoring OBS_DEFAULT_EARLIEST_TIME=%s (allowed: %s)", obs_earliest, OBSERVABILITY_WINDOWS)
        obs_earliest = "-15m"

    try:
        mcp_timeout_s = float(os.getenv("MCP_TIMEOUT_S", "60"))
    except ValueError:
        _LOGGER.warning("Skipping malformed MCP_TIMEOUT_S: %s", os.getenv("MCP_TIMEOUT_S"))
        mcp_timeout_s = 60.0

    _cached_config = Config(
        llm_base_url=llm_base_url,
        llm_model=llm_model,
        llm_api_key=llm_api_key,
        llm_verify_tls=env_bool("QWEN_VERIFY_TLS", True),
        disable_thinking=env_bool("QWEN_DISABLE_THINKING", True),
        planner_timeout_ms=clamp_int(os.getenv("PLANNER_TIMEOUT_MS"), 2000, 300000, 45000),
        planner_max_tokens=clamp_int(os.getenv("PLANNER_MAX_TOKENS"), 64, 1500, 256),
        explainer_timeout_ms=clamp_int(os.getenv("EXPLAINER_TIMEOUT_MS"), 5000, 300000, 60000),
        explainer_max_tokens=clamp_int(os.getenv("EXPLAINER_MAX_TOKENS"), 128, 3000, 700),
        splunk_mcp_endpoint=_first_env("SPLUNK_MCP_ENDPOINT", "MCP_ENDPOINT"),
        splunk_mcp_token=_first_env("SPLUNK_MCP_TOKEN", "MCP_TOKEN"),
        mcp_timeout_s=mcp_timeout_s,
        mcp_verify_tls=env_bool("MCP_VERIFY_TLS", True),
        observability_mcp=observability_mcp,
        default_earliest_time=_time_modifier("DEFAULT_EARLIEST_TIME", "-15m"),
        default_latest_time=_time_modifier("DEFAULT_LATEST_TIME", "now"),
        obs_default_earliest_time=obs_earliest,
        panel_workers=clamp_int(os.getenv("PANEL_WORKERS"), 1, 4, 1),
        app_access_token=_first_env("APP_ACCESS_TOKEN"),
    )

    _LOGGER.debug(
        "Loaded configuration: llm=%s | model=%s | splunk_mcp=%s | panel_workers=%s",
        llm_base_url or "<unset>",
        llm_model,
        bool(_cached_config.splunk_mcp_endpoint),
        _cached_config.panel_workers,
    )
    return _cached_config


__all__ = [
    "Config",
    "ConfigurationError",
    "DEFAULT_MODEL",
    "OBSERVABILITY_WINDOWS",
    "clamp_int",
    "env_bool",
    "load_config",
    "strip_quotes",
]
