"""
HTTP server for ChatCore.

Exposes a ``ChatCore`` over a small REST API so the orchestration core can be
driven without the desktop host. The server only translates between JSON and
core calls; every turn still runs through ``ChatCore.chat``.

Endpoints
---------
GET    /health        Health / readiness check.
POST   /chat          Run one turn (or a continuation).
POST   /chat/image    Run one multimodal turn.
GET    /history       Current history (images base64).
PUT    /history       Replace the history in one step.
DELETE /history       Clear the in-memory context.
GET    /modes         Channel modes advertised by plugins.

Usage (standalone)::

    from companion.config import get_settings
    from companion.conversation.core import ChatCore
    from companion.conversation.server import create_app
    import uvicorn

    core = ChatCore.from_settings(get_settings())
    uvicorn.run(create_app(core), host="127.0.0.1", port=8765)
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from companion import __version__
from companion.conversation.core import ChatCore
from companion.conversation.messages import Message
from companion.errors import (
    BackendError,
    BackendTimeoutError,
    CapabilityError,
    CompanionError,
    ConfigurationError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class ChatRequest(BaseModel):
    """Body for POST /chat."""

    prompt: str = Field(..., description="User message, or an action result for continuations.")
    is_function_call: bool = Field(
        default=False,
        description="Continue the current turn instead of starting a new one.",
    )


class ImageChatRequest(BaseModel):
    """Body for POST /chat/image."""

    prompt: str
    image_base64: str = Field(..., description="Base64-encoded image bytes.")
    mime: str = "image/png"


class ChatResponse(BaseModel):
    response_text: str
    token_count: int


class MessageModel(BaseModel):
    role: str
    content: str
    timestamp: float | None = None
    image: str | None = Field(default=None, description="Base64-encoded image bytes.")
    image_mime: str | None = None


class ChannelModeModel(BaseModel):
    mode_id: str
    display_name: str
    description: str


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    provider: str
    token_count: int
    state: str


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _status_for(exc: Exception) -> int:
    if isinstance(exc, CapabilityError):
        return 400
    if isinstance(exc, (ConfigurationError, ValueError)):
        return 422
    if isinstance(exc, BackendTimeoutError):
        return 504
    if isinstance(exc, BackendError):
        return 502
    return 500


def _http_error(exc: Exception) -> HTTPException:
    status = _status_for(exc)
    detail: dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, CompanionError):
        detail["backend"] = exc.backend
        detail["phase"] = exc.phase
    return HTTPException(status_code=status, detail=detail)


def _to_model(message: Message) -> MessageModel:
    data = message.to_dict()
    return MessageModel(**data)


def _from_model(model: MessageModel) -> Message:
    return Message.from_dict(model.model_dump(exclude_none=True))


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(core: ChatCore) -> FastAPI:
    """Create a FastAPI application wrapping *core*.

    Args:
        core: A fully initialised ``ChatCore``; the caller registers plugins
            before or after building the app.

    Returns:
        A configured ``FastAPI`` application ready to be served or used in
        tests via ``fastapi.testclient.TestClient``.
    """
    app = FastAPI(
        title="Companion Core API",
        description="REST interface for the companion chat core.",
        version=__version__,
    )

    async def _run_chat(call) -> ChatResponse:
        try:
            text = await call()
        except (CompanionError, ValueError) as exc:
            logger.warning("Chat request failed: %s", exc)
            raise _http_error(exc) from exc
        return ChatResponse(response_text=text, token_count=core.get_current_token_count())

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(
            status="ok",
            provider=core.name,
            token_count=core.get_current_token_count(),
            state=core.state.value,
        )

    @app.post("/chat", response_model=ChatResponse)
    async def chat(body: ChatRequest) -> ChatResponse:
        logger.info("POST /chat: prompt=%r is_function_call=%s", body.prompt, body.is_function_call)
        return await _run_chat(lambda: core.chat(body.prompt, body.is_function_call))

    @app.post("/chat/image", response_model=ChatResponse)
    async def chat_with_image(body: ImageChatRequest) -> ChatResponse:
        logger.info("POST /chat/image: prompt=%r mime=%s", body.prompt, body.mime)
        try:
            image = base64.b64decode(body.image_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise HTTPException(status_code=422, detail="image_base64 is not valid base64") from exc
        return await _run_chat(lambda: core.chat_with_image(body.prompt, image, body.mime))

    @app.get("/history", response_model=list[MessageModel])
    async def get_history() -> list[MessageModel]:
        return [_to_model(m) for m in core.get_chat_history()]

    @app.put("/history", response_model=list[MessageModel])
    async def put_history(body: list[MessageModel]) -> list[MessageModel]:
        logger.info("PUT /history: %d message(s)", len(body))
        try:
            messages = [_from_model(m) for m in body]
        except (ValueError, binascii.Error) as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        core.update_history(messages)
        return [_to_model(m) for m in core.get_chat_history()]

    @app.delete("/history", status_code=204)
    async def clear_history() -> None:
        logger.info("DELETE /history")
        core.clear_context()

    @app.get("/modes", response_model=list[ChannelModeModel])
    async def modes() -> list[ChannelModeModel]:
        return [
            ChannelModeModel(
                mode_id=mode.mode_id,
                display_name=mode.display_name,
                description=mode.description,
            )
            for mode in core.get_custom_modes()
        ]

    return app
