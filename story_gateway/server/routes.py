"""Gateway endpoints: health, local model listing, raw completion, routed generation."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from story_gateway.models import GenerationRequest
from story_gateway.router import Router
from story_gateway.supervisor import LocalModelSupervisor, completion_body

from .models import GenerateBody

router = APIRouter()


def get_supervisor(request: Request) -> LocalModelSupervisor:
    return request.app.state.supervisor


def get_router(request: Request) -> Router:
    return request.app.state.router


async def require_json(request: Request) -> None:
    """Reject POST bodies that are not declared as JSON."""
    content_type = request.headers.get("content-type", "")
    if content_type.split(";")[0].strip().lower() != "application/json":
        raise HTTPException(415, "Content-Type must be application/json")


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/models")
async def list_models(supervisor: LocalModelSupervisor = Depends(get_supervisor)):
    """List model files available to the local inference server."""
    return {"models": supervisor.list_available_models()}


@router.post("/generate", dependencies=[Depends(require_json)])
async def generate(
    body: GenerateBody,
    supervisor: LocalModelSupervisor = Depends(get_supervisor),
) -> dict[str, Any]:
    """Start or switch to the requested model and forward one completion.

    The child's JSON response is returned verbatim.
    """
    return await supervisor.complete(body.model, completion_body(
        body.prompt,
        body.json_schema,
        n_predict=supervisor.n_predict,
        image_data=body.image_data,
    ))


@router.post("/generation", dependencies=[Depends(require_json)])
async def generation(body: GenerationRequest, story_router: Router = Depends(get_router)):
    """Run a full GenerationRequest through the router."""
    result = await story_router.generate(body)
    return result.model_dump()
