"""Structured story generation over hosted, remote and local language models."""

from story_gateway.models import AdventureContext, GenerationRequest, GenerationResult, ProviderConfig
from story_gateway.router import Router, select_backend
from story_gateway.supervisor import LocalModelSupervisor

__all__ = [
    "AdventureContext",
    "GenerationRequest",
    "GenerationResult",
    "LocalModelSupervisor",
    "ProviderConfig",
    "Router",
    "select_backend",
]
