"""Pydantic request models for the gateway endpoints."""

from typing import Any

from pydantic import BaseModel


class GenerateBody(BaseModel):
    model: str
    prompt: str
    json_schema: dict[str, Any] | None = None
    image_data: list[dict[str, Any]] | None = None
