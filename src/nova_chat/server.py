"""FastAPI application: chat relay, image and personality proxies, saved sessions."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask

from .config import load_config, merge_config
from .designer import PersonalityDesigner
from .errors import InvalidRequestError, RelayError
from .images import ImageGenerator
from .models import (
    ChatRequest,
    ChatSession,
    ImageRequest,
    PersonalityDesignRequest,
    SessionCreate,
    SessionRename,
    SessionUpdate,
)
from .ocr import OcrClient, TextExtractor
from .personalities import CUSTOM_ID, PersonalityRegistry
from .sessions import UNSET, DiskSessionStore, SessionBackend
from .upstream import UpstreamClient, build_upstream_messages

logger = logging.getLogger(__name__)

ALLOW_HEADERS = "authorization, x-client-info, apikey, content-type"
ALLOW_METHODS = "GET, POST, PUT, PATCH, DELETE, OPTIONS"


# -----------------------------
# Utilities
# -----------------------------
def _cors_headers(origins: List[str]) -> Dict[str, str]:
    headers = {
        "Access-Control-Allow-Headers": ALLOW_HEADERS,
        "Access-Control-Allow-Methods": ALLOW_METHODS,
    }
    # Specific origin lists are echoed per request by CORSMiddleware.
    if "*" in origins:
        headers["Access-Control-Allow-Origin"] = "*"
    return headers


async def _relay_body(response: httpx.Response) -> AsyncIterator[bytes]:
    """Forward upstream bytes as they arrive; always release the upstream connection."""
    try:
        async for chunk in response.aiter_raw():
            yield chunk
    finally:
        await response.aclose()


def relay_response(response: httpx.Response, headers: Dict[str, str]) -> StreamingResponse:
    """Stream an open upstream response to the caller.

    The background task closes the upstream even when the caller disconnects
    before the body is first iterated; closing twice is harmless.
    """
    return StreamingResponse(
        _relay_body(response),
        media_type="text/event-stream",
        headers=headers,
        background=BackgroundTask(response.aclose),
    )


def _make_sessions(cfg: Dict[str, Any]) -> DiskSessionStore:
    data_dir = (cfg.get("sessions", {}) or {}).get("data_dir") or "data/sessions"
    return DiskSessionStore(data_dir)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    config: Optional[Dict[str, Any]] = None,
    upstream: Optional[UpstreamClient] = None,
    ocr: Optional[TextExtractor] = None,
    images: Optional[ImageGenerator] = None,
    designer: Optional[PersonalityDesigner] = None,
    sessions: Optional[SessionBackend] = None,
    registry: Optional[PersonalityRegistry] = None,
) -> FastAPI:
    cfg = merge_config(config) if config is not None else load_config(config_path)

    cors_origins = list(cfg.get("server", {}).get("cors_origins") or ["*"])
    cors = _cors_headers(cors_origins)

    # Services
    upstream = upstream or UpstreamClient.from_config(cfg)
    if ocr is None:
        ocr = OcrClient.from_config(cfg)
    images = images or ImageGenerator.from_config(cfg)
    designer = designer or PersonalityDesigner.from_config(cfg)
    sessions = sessions or _make_sessions(cfg)
    registry = registry or PersonalityRegistry.from_config(cfg)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        for client in (upstream, ocr, images, designer):
            closer = getattr(client, "aclose", None)
            if closer is not None:
                await closer()

    app = FastAPI(title="Nova Chat Relay", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def error_response(status: int, message: str) -> JSONResponse:
        return JSONResponse({"error": message}, status_code=status, headers=cors)

    @app.exception_handler(RelayError)
    async def relay_error_handler(_request: Request, exc: RelayError) -> JSONResponse:
        return error_response(exc.status, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Rejected request body: %s", exc.errors())
        return error_response(400, "Invalid request body")

    @app.exception_handler(Exception)
    async def unexpected_error_handler(_request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error: %s", exc)
        return error_response(500, "Internal server error")

    def preflight() -> PlainTextResponse:
        return PlainTextResponse("ok", headers=cors)

    for path in ("/chat", "/generate-image", "/generate-personality", "/sessions", "/sessions/{session_id}"):
        app.add_api_route(path, preflight, methods=["OPTIONS"], include_in_schema=False)

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "model": upstream.model,
            "multimodal": upstream.multimodal,
            "ocr": ocr is not None,
            "personalities": list(registry.ids),
        }

    # --------- relay ----------
    @app.post("/chat")
    async def chat(request: Request):
        # the credential check comes before the body is looked at
        upstream.require_api_key()
        try:
            req = ChatRequest.model_validate(await request.json())
        except (ValueError, ValidationError) as e:
            logger.info("Rejected chat body: %s", e)
            raise InvalidRequestError("Invalid request body") from e

        system_prompt = registry.resolve_system_prompt(req.personality, req.custom_personality)
        if req.personality == CUSTOM_ID and req.custom_personality is not None:
            logger.info(
                "Chat request received. Custom Personality: %s, Messages: %d",
                req.custom_personality.name,
                len(req.messages),
            )
        else:
            logger.info("Chat request received. Personality: %s, Messages: %d", req.personality, len(req.messages))

        messages = await build_upstream_messages(
            system_prompt, req.messages, multimodal=upstream.multimodal, ocr=ocr
        )
        response = await upstream.open_stream(messages)
        logger.info("Streaming response from %s...", upstream.provider)
        return relay_response(response, cors)

    # --------- side channels ----------
    @app.post("/generate-image")
    async def generate_image(req: ImageRequest) -> JSONResponse:
        result = await images.generate(req.prompt)
        return JSONResponse(result.model_dump(by_alias=True), headers=cors)

    @app.post("/generate-personality")
    async def generate_personality(req: PersonalityDesignRequest) -> JSONResponse:
        result = await designer.design(req.message, req.history)
        return JSONResponse(result.model_dump(mode="json"), headers=cors)

    # --------- sessions ----------
    def session_json(session: ChatSession, status: int = 200) -> JSONResponse:
        return JSONResponse(session.model_dump(mode="json"), status_code=status, headers=cors)

    @app.get("/sessions")
    def list_sessions() -> JSONResponse:
        return JSONResponse([s.model_dump(mode="json") for s in sessions.list()], headers=cors)

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str) -> JSONResponse:
        return session_json(sessions.get(session_id))

    @app.post("/sessions")
    def create_session(body: SessionCreate) -> JSONResponse:
        created = sessions.create(body.name, body.messages, body.personality, body.custom_personality)
        return session_json(created, status=201)

    @app.put("/sessions/{session_id}")
    def update_session(session_id: str, body: SessionUpdate) -> JSONResponse:
        given = body.model_fields_set
        updated = sessions.update(
            session_id,
            body.messages,
            body.personality if body.personality is not None else UNSET,
            body.custom_personality if "custom_personality" in given else UNSET,
        )
        return session_json(updated)

    @app.patch("/sessions/{session_id}")
    def rename_session(session_id: str, body: SessionRename) -> JSONResponse:
        return session_json(sessions.rename(session_id, body.name))

    @app.delete("/sessions/{session_id}")
    def delete_session(session_id: str) -> JSONResponse:
        sessions.delete(session_id)
        return JSONResponse({"ok": True}, headers=cors)

    return app
