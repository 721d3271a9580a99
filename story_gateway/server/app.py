from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from story_gateway.config import Settings, load_settings
from story_gateway.errors import SupervisorError
from story_gateway.router import Router
from story_gateway.supervisor import LocalModelSupervisor

from .routes import router

STATUS_BY_KIND = {
    "model_not_found": 404,
    "binary_not_found": 500,
    "process_start_timeout": 504,
}


async def supervisor_error_handler(request: Request, exc: SupervisorError) -> JSONResponse:
    return JSONResponse(
        {"error": str(exc), "kind": exc.kind},
        status_code=STATUS_BY_KIND.get(exc.kind, 502),
    )


def create_app(
    settings: Settings | None = None,
    supervisor: LocalModelSupervisor | None = None,
) -> FastAPI:
    resolved = settings or load_settings()
    supervisor = supervisor or LocalModelSupervisor(resolved)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await supervisor.shutdown()

    app = FastAPI(title=resolved.app_title, lifespan=lifespan)
    app.state.settings = resolved
    app.state.supervisor = supervisor
    app.state.router = Router(resolved, supervisor)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(resolved.cors_origins),
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )
    app.add_exception_handler(SupervisorError, supervisor_error_handler)
    app.include_router(router)
    return app
