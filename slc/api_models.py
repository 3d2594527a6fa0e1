from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ScaleRequest(BaseModel):
    replicas: int = Field(..., ge=0, le=100)


class RolloutRequest(BaseModel):
    version: str = Field(..., description="Version label to roll out, e.g. v2")
    batch_size: int | None = Field(None, ge=1, le=100, description="Replicas replaced per batch (default from config)")
    wait: bool = Field(False, description="Block until the rollout finishes")


class CommandResponse(BaseModel):
    ok: bool
    outcome: str
    message: str
    error: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
