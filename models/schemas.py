"""
API data models for the prompt relay.
Request bodies use the same camelCase keys as the queue wire format.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class PromptSubmitRequest(BaseModel):
    """Body of POST /api/prompts/submit. Either promptText or promptId is required."""
    model_config = ConfigDict(populate_by_name=True)

    prompt_text: Optional[str] = Field(None, alias="promptText")
    requested_model: Optional[str] = Field(None, alias="requestedModel")
    enhance: Optional[bool] = None
    prompt_id: Optional[str] = Field(None, alias="promptId")


class SubmitAccepted(BaseModel):
    message: str


class ErrorResponse(BaseModel):
    error: str


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    queue: str
    queue_connection: str
