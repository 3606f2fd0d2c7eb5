"""FastAPI application relaying chat requests to the upstream LLM providers."""
from __future__ import annotations

import base64
import binascii
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .config import configure_logging, load_config
from .errors import ConfigurationError, InvalidInput, RelayError, UpstreamError
from .history import ConversationStore, Turn
from .providers import Attachment, create_from_config
from .router import DEFAULT_SYSTEM_PROMPT, ProviderRouter

logger = logging.getLogger(__name__)

MESSAGES_ERROR = "'messages' must be an array of objects [{role, content}]"


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    """Union of the request shapes accepted across endpoint revisions.

    Fields are untyped; the handlers turn shape errors into 400 responses.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message: Any = None
    is_premium: Optional[bool] = Field(default=False, alias="isPremium")
    messages: Any = None
    files: Any = None


class ChatResponse(BaseModel):
    reply: str


# -----------------------------
# Utilities
# -----------------------------
def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _user_id(header_value: Optional[str], default: str) -> str:
    value = (header_value or "").strip()
    return value or default


def _parse_turns(messages: Any) -> List[Turn]:
    if not isinstance(messages, list):
        raise InvalidInput(MESSAGES_ERROR)
    turns: List[Turn] = []
    for m in messages:
        if not isinstance(m, dict):
            raise InvalidInput(MESSAGES_ERROR)
        try:
            turns.append(Turn(str(m.get("role", "user")), m.get("content")))
        except (TypeError, ValueError) as e:
            raise InvalidInput(MESSAGES_ERROR) from e
    return turns


def _decode_files(files: Any) -> List[Attachment]:
    """Decode ``[{type, data}]`` where data is base64, optionally a data URL."""
    if files is None:
        return []
    if not isinstance(files, list):
        raise InvalidInput("'files' must be an array of objects [{type, data}]")
    out: List[Attachment] = []
    for i, f in enumerate(files):
        if not isinstance(f, dict) or not isinstance(f.get("data"), str):
            raise InvalidInput(f"files[{i}] must be an object with base64 'data'")
        mime = str(f.get("type") or "application/octet-stream")
        data = f["data"]
        if data.startswith("data:") and "," in data:
            header, data = data.split(",", 1)
            if mime == "application/octet-stream":
                mime = header[5:].split(";", 1)[0] or mime
        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InvalidInput(f"files[{i}] is not valid base64") from e
        out.append(Attachment(mime_type=mime, data=raw))
    return out


def _get_system_prompt(cfg: Dict[str, Any]) -> str:
    sys_prompt = cfg.get("identity", {}).get("system_prompt") or DEFAULT_SYSTEM_PROMPT
    return str(sys_prompt).strip()


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    store: Optional[ConversationStore] = None,
    providers: Optional[Dict[str, Any]] = None,
) -> FastAPI:
    """Build the relay app.

    ``store`` and ``providers`` (``{"primary", "secondary", "vision"}``) may be
    injected; otherwise they are created from config and the environment.
    """
    cfg = load_config(config_path)
    configure_logging(cfg)
    server_cfg = cfg.get("server", {})

    # Services
    if store is None:
        store = ConversationStore(int(cfg.get("history", {}).get("window", 20)))
    if providers is None:
        providers = create_from_config(cfg, dict(os.environ))
    if server_cfg.get("require_credentials") and providers.get("primary") is None:
        raise ConfigurationError("API_KEY not configured. Please set API_KEY environment variable.")

    router = ProviderRouter(
        store,
        providers.get("primary"),
        providers.get("secondary"),
        vision=providers.get("vision"),
        system_prompt=_get_system_prompt(cfg),
    )
    default_user = str(server_cfg.get("default_user") or "default")

    app = FastAPI(title="AskBot Backend API", version="1.0.0")
    app.state.router = router
    app.state.store = store
    app.add_middleware(
        CORSMiddleware,
        allow_origins=server_cfg.get("cors_origins") or ["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", "x-user-id"],
    )

    # -------- error mapping --------
    @app.exception_handler(RelayError)
    async def relay_error(request: Request, exc: RelayError) -> JSONResponse:
        message = exc.message
        if isinstance(exc, UpstreamError):
            message = f"Backend error: {exc.message}"
        return JSONResponse(status_code=exc.status_code, content={"error": message})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": "Invalid request body"})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error in %s", request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"error": f"Backend error: {exc}"})

    # -------- liveness --------
    @app.get("/")
    def root() -> Dict[str, Any]:
        return {
            "message": "AskBot Backend API is running!",
            "status": "online",
            "timestamp": _now(),
            "endpoints": {
                "health": "/test",
                "chat": "/api/chat",
                "generate": "/generate",
                "vision": "/api/chat/vision",
            },
        }

    @app.get("/test")
    def test() -> Dict[str, Any]:
        return {"message": "Backend is working!", "timestamp": _now()}

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "primary_configured": router.primary is not None,
            "secondary_configured": router.secondary is not None,
            "conversations": len(store),
        }

    @app.get("/debug-deepseek")
    def debug_deepseek() -> Dict[str, Any]:
        return router.probe_secondary()

    # -------- chat --------
    def _chat(req: ChatRequest, user_id: str) -> ChatResponse:
        if "messages" in req.model_fields_set:
            logger.info("Stateless relay: %s messages", len(req.messages) if isinstance(req.messages, list) else "?")
            return ChatResponse(reply=router.relay(_parse_turns(req.messages)))

        premium = bool(req.is_premium)
        logger.info(
            "Chat request: user=%s premium=%s message_len=%s",
            user_id, premium, len(req.message) if isinstance(req.message, str) else None,
        )
        try:
            text = router.generate(user_id, req.message, premium)
        except UpstreamError:
            logger.exception("Upstream failure for user=%s", user_id)
            raise
        return ChatResponse(reply=text)

    @app.post("/api/chat", response_model=ChatResponse)
    def chat(req: ChatRequest, x_user_id: Optional[str] = Header(default=None)):
        return _chat(req, _user_id(x_user_id, default_user))

    @app.post("/generate", response_model=ChatResponse)
    def generate(req: ChatRequest, x_user_id: Optional[str] = Header(default=None)):
        return _chat(req, _user_id(x_user_id, default_user))

    @app.post("/api/chat/vision", response_model=ChatResponse)
    def chat_vision(req: ChatRequest, x_user_id: Optional[str] = Header(default=None)):
        user_id = _user_id(x_user_id, default_user)
        attachments = _decode_files(req.files)
        images = [a for a in attachments if a.is_image]
        skipped = len(attachments) - len(images)
        if skipped:
            logger.info("Ignoring %d non-image attachment(s) for user=%s", skipped, user_id)
        if not images:
            return _chat(req, user_id)

        message = req.message if req.message is not None else ""
        logger.info("Vision request: user=%s images=%d", user_id, len(images))
        try:
            text = router.generate_multimodal(user_id, message, images)
        except UpstreamError:
            logger.exception("Vision upstream failure for user=%s", user_id)
            raise
        return ChatResponse(reply=text)

    return app
