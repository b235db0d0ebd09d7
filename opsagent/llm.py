"""OpenAI-compatible chat-completions access for planning and narration calls."""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterator, List, Optional, Tuple

import httpx
import openai
import requests
from openai import OpenAI

from .config import load_config

_LOGGER = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Request aborted by timeout"
NO_THINK_PREFIX = "/no_think\n"

Messages = List[Dict[str, str]]


class DeadlineExceeded(TimeoutError):
    """Raised when a streamed completion runs past its wall-clock deadline."""


_CLIENT: Optional[OpenAI] = None
_CLIENT_KEY: Optional[Tuple[str, str, bool]] = None


def get_client() -> OpenAI:
    """Instantiate and cache the OpenAI client for the configured endpoint."""
    global _CLIENT, _CLIENT_KEY
    cfg = load_config()
    base_url = cfg.resolve_llm_base_url()
    key = (base_url, cfg.llm_api_key or "", cfg.llm_verify_tls)
    if _CLIENT is not None and _CLIENT_KEY == key:
        return _CLIENT
    _CLIENT = OpenAI(
        base_url=base_url,
        api_key=cfg.llm_api_key or "EMPTY",
        max_retries=0,
        http_client=httpx.Client(verify=cfg.llm_verify_tls),
    )
    _CLIENT_KEY = key
    return _CLIENT


def is_timeout(exc: BaseException) -> bool:
    return isinstance(exc, (openai.APITimeoutError, requests.Timeout, httpx.TimeoutException, TimeoutError))


def describe_error(exc: BaseException) -> str:
    """Human-readable error text; every timeout maps to the same message."""
    if is_timeout(exc):
        return TIMEOUT_MESSAGE
    return str(exc) or exc.__class__.__name__


def apply_no_think(messages: Messages) -> Messages:
    """Return a copy with the thinking switch prefixed to the last user message."""
    patched = [dict(message) for message in messages]
    for message in reversed(patched):
        if message.get("role") == "user":
            message["content"] = NO_THINK_PREFIX + str(message.get("content") or "")
            break
    return patched


def _request_options(messages: Messages) -> Tuple[Messages, Dict[str, Any]]:
    cfg = load_config()
    if not cfg.disable_thinking:
        return messages, {}
    extra_body = {"enable_thinking": False, "chat_template_kwargs": {"enable_thinking": False}}
    return apply_no_think(messages), extra_body


def complete(
    messages: Messages,
    *,
    max_tokens: int,
    timeout_s: float,
    temperature: float = 0.0,
    top_p: float = 1.0,
) -> str:
    """Run one non-streamed completion and return the message text."""
    cfg = load_config()
    client = get_client()
    payload, extra_body = _request_options(messages)
    resp = client.chat.completions.create(
        model=cfg.llm_model,
        messages=payload,
        temperature=temperature,
        top_p=top_p,
        max_tokens=max_tokens,
        stream=False,
        timeout=timeout_s,
        extra_body=extra_body or None,
    )
    if not resp.choices:
        return ""
    return resp.choices[0].message.content or ""


def stream_completion(
    messages: Messages,
    *,
    max_tokens: int,
    timeout_s: float,
    temperature: float = 0.2,
    top_p: float = 0.9,
) -> Iterator[str]:
    """Yield content deltas as they arrive; raise ``DeadlineExceeded`` past ``timeout_s``."""
    cfg = load_config()
    client = get_client()
    payload, extra_body = _request_options(messages)
    deadline = time.monotonic() + timeout_s
    stream = client.chat.completions.create(
        model=cfg.llm_model,
        messages=payload,
        temperature=temperature,
        top_p=top_p,
        max_tokens=max_tokens,
        stream=True,
        timeout=timeout_s,
        extra_body=extra_body or None,
    )
    try:
        for chunk in stream:
            if time.monotonic() > deadline:
                raise DeadlineExceeded(TIMEOUT_MESSAGE)
            if not getattr(chunk, "choices", None):
                continue
            delta = getattr(chunk.choices[0], "delta", None)
            text = getattr(delta, "content", None) if delta else None
            if text:
                yield text
    finally:
        stream.close()


__all__ = [
    "DeadlineExceeded",
    "NO_THINK_PREFIX",
    "TIMEOUT_MESSAGE",
    "apply_no_think",
    "complete",
    "describe_error",
    "get_client",
    "is_timeout",
    "stream_completion",
]
