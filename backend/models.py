from __future__ import annotations
from typing import Any, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatRequest(BaseModel):
    """Inbound body of ``POST /api/chat``. Unknown keys (e.g. ``history``) are ignored."""

    model_config = ConfigDict(extra="ignore")

    message: str = Field(default="", max_length=8000)
    workspace: Literal["security", "observability"] = "security"
    stream: Optional[bool] = None

    @field_validator("message", mode="before")
    @classmethod
    def _coerce_message(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("workspace", mode="before")
    @classmethod
    def _coerce_workspace(cls, value: Any) -> str:
        return "observability" if str(value or "").strip().lower() == "observability" else "security"


class ErrorResponse(BaseModel):
    error: str
