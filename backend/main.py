"""FastAPI backend wiring for OpsAgent.

Exposes a single streaming chat endpoint that bridges requests into the
planning -> querying -> explaining pipeline and relays every frame as a
server-sent event.
"""
from __future__ import annotations

import hmac
import json
import logging
import time
from typing import Any, AsyncIterator, Dict

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from backend.models import ChatRequest, ErrorResponse
from opsagent.config import load_config
from opsagent.graph import stream as stream_pipeline


# ---------------------------------------------------------------------------
# FastAPI init + CORS
# ---------------------------------------------------------------------------

app = FastAPI(title="OpsAgent Backend", version="1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger("opsagent.backend")
if not logger.handlers:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@app.middleware("http")
async def telemetry_middleware(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start
    response.headers["X-Process-Time"] = f"{duration:.2f}s"
    logger.info("[HTTP] %s %s took %.2fs", request.method, request.url.path, duration)
    return response


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def format_sse(event: str, data: Dict[str, Any]) -> str:
    """Encode one frame as ``event: <type>`` plus a single JSON ``data:`` line."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"


def extract_bearer_token(request: Request) -> str:
    auth = request.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return (request.headers.get("x-app-token") or "").strip()


def is_authorized(request: Request) -> bool:
    required = load_config().app_access_token
    if not required:
        return True
    supplied = extract_bearer_token(request)
    return bool(supplied) and hmac.compare_digest(supplied.encode(), required.encode())


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
async def health():
    return {"status": "ok", **load_config().describe()}


@app.post("/api/chat")
async def chat(request: Request):
    if not is_authorized(request):
        logger.warning("[AUTH] Rejected request to %s", request.url.path)
        return _error(status.HTTP_401_UNAUTHORIZED, "Unauthorized")

    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    try:
        req = ChatRequest.model_validate(body)
    except ValidationError as exc:
        logger.info("[CHAT] Invalid body: %s", exc.errors()[:1])
        return _error(status.HTTP_400_BAD_REQUEST, "Invalid request body")

    if not req.message:
        return _error(status.HTTP_400_BAD_REQUEST, "Empty message")
    if req.stream is False:
        return _error(status.HTTP_400_BAD_REQUEST, "This endpoint expects stream=true")

    logger.info("[CHAT] workspace=%s chars=%d", req.workspace, len(req.message))

    async def event_stream() -> AsyncIterator[str]:
        async for frame in stream_pipeline(req.message, req.workspace):
            yield format_sse(frame["event"], frame["data"])

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


__all__ = ["app", "format_sse", "extract_bearer_token", "is_authorized"]
