import json
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .builtin_tools import build_default_registry
from .catalog import get_model, list_models
from .config import AppSettings, load_settings
from .model_backend import ModelBackend, build_backend
from .runner import SEOAgent, error_kind
from .schemas import ChatRequest
from .tools import ToolRegistry

logger = logging.getLogger("uvicorn.error")

BackendFactory = Callable[[AppSettings, str], ModelBackend]


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_registry(request: Request) -> ToolRegistry:
    return request.app.state.registry


def get_backend_factory(request: Request) -> BackendFactory:
    return request.app.state.backend_factory


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def _resolve_model(settings: AppSettings, model_id: Optional[str]) -> str:
    target = model_id or settings.default_model
    try:
        return get_model(target).id
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


router = APIRouter()


@router.post("/api/chat")
async def chat_route(
    payload: ChatRequest,
    settings: AppSettings = Depends(get_settings),
    registry: ToolRegistry = Depends(get_registry),
    backend_factory: BackendFactory = Depends(get_backend_factory),
):
    model_id = _resolve_model(settings, payload.model_id)
    if not payload.messages:
        raise HTTPException(status_code=400, detail="messages must not be empty")
    agent = SEOAgent(backend_factory(settings, model_id), registry, settings.agent)

    if payload.stream:
        events = agent.chat(payload.messages, stream=True, max_steps=payload.max_steps)

        async def event_generator():
            try:
                async for event in events:
                    yield sse_format(event.to_dict())
            except Exception as exc:
                logger.error("Chat stream failed (%s): %s", error_kind(exc), exc)
                yield sse_format({"type": "error", "error": str(exc), "kind": error_kind(exc)})
            finally:
                await events.aclose()
                await agent.close()
            yield sse_format({"type": "done"})

        return StreamingResponse(event_generator(), media_type="text/event-stream")

    try:
        result = await agent.chat(payload.messages, max_steps=payload.max_steps)
    except Exception as exc:
        logger.error("Chat failed (%s): %s", error_kind(exc), exc)
        return JSONResponse(status_code=502, content={"error": str(exc), "kind": error_kind(exc)})
    finally:
        await agent.close()
    return result.model_dump()


@router.get("/api/models")
async def models_route(settings: AppSettings = Depends(get_settings)):
    return {"default": settings.default_model, "models": [m.to_dict() for m in list_models()]}


@router.get("/api/tools")
async def tools_route(registry: ToolRegistry = Depends(get_registry)):
    return {"tools": [schema.model_dump() for schema in registry.schemas()]}


@router.get("/api/health")
async def health_route(
    settings: AppSettings = Depends(get_settings),
    backend_factory: BackendFactory = Depends(get_backend_factory),
):
    model = get_model(settings.default_model)
    backend = backend_factory(settings, model.id)
    try:
        ok, detail = await backend.check()
    finally:
        await backend.close()
    logger.info("Health check for %s (%s): ok=%s %s", model.id, model.provider, ok, detail)
    return {"ok": ok, "model": model.id, "provider": model.provider, "detail": detail}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


def create_app(
    settings: AppSettings,
    *,
    registry: Optional[ToolRegistry] = None,
    backend_factory: Optional[BackendFactory] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            if app.state.owns_http_client:
                await app.state.http_client.aclose()

    app = FastAPI(title="SEO Agent", lifespan=lifespan)
    app.state.settings = settings
    app.state.owns_http_client = http_client is None and registry is None
    app.state.http_client = http_client or (
        httpx.AsyncClient(timeout=httpx.Timeout(15.0, connect=settings.agent.connect_timeout_s))
        if registry is None
        else None
    )
    app.state.registry = registry if registry is not None else build_default_registry(app.state.http_client)
    app.state.backend_factory = backend_factory or (lambda s, model_id: build_backend(s, model_id))
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    try:
        uvicorn.run("seo_agent.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
    except KeyboardInterrupt:
        pass
