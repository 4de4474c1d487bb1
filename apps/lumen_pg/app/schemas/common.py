"""
schemas/common.py

Shared DTOs (error envelope, readiness payload).

Non-developer summary:
----------------------
This describes the common JSON shapes we return, like the {error:{...}} object.
Having a typed model helps keep responses consistent and testable.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorBody(BaseModel):
    code: str = Field(..., description="Stable error code (e.g., PERMISSION_DENIED)")
    message: str = Field(..., description="Human-readable message (safe for UI)")
    requestId: Optional[str] = Field(None, description="Echoed request correlation id")
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Optional structured context (e.g., which privilege was missing)",
    )


class ErrorEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    error: ErrorBody


class Readiness(BaseModel):
    status: str = Field(..., description="'ok' or 'degraded'")
    dependencies: Dict[str, Optional[bool]] = Field(
        default_factory=dict,
        description="Per dependency: True up, False down, None not configured",
    )
