"""
FastAPI application — the chatrelay entry point.

HTTP surface:
  POST/GET        /api/chat                  thread conversations
  POST/GET/DELETE /api/chat/project          per-project contexts
  GET             /api/health                liveness + provider state
  GET             /api/stats                 counters (stats:read)
  POST            /api/provider/reinitialize operator retry of the backend
  WS              /ws                        realtime gateway

Every JSON response uses one envelope:
  {"ok": true,  "data": ..., "message": "..."}
  {"ok": false, "error": {"code": ..., "message": ..., "details": ...}}
"""

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from uuid import uuid4

from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse

from chatrelay import __version__
from chatrelay.auth import ApiKeyAuthenticator, RateLimitStatus
from chatrelay.config import get_config
from chatrelay.contexts import ProjectContextRegistry
from chatrelay.conversation import ConversationStore, ReplyGenerator
from chatrelay.errors import (
    AuthenticationError,
    ChatRelayError,
    ContextNotFound,
    ConversationNotFound,
    PermissionDenied,
    RateLimitExceeded,
    ValidationError,
)
from chatrelay.gateway import RealtimeGateway
from chatrelay.providers import ResponseProvider, build_providers
from chatrelay.storage.models import make_context_id, utcnow
from chatrelay.storage.sqlite_store import SQLiteStore
from chatrelay.wiretap import FrameLog

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
sqlite_store: SQLiteStore | None = None
provider: ResponseProvider | None = None
replies: ReplyGenerator | None = None
conversations: ConversationStore | None = None
contexts: ProjectContextRegistry | None = None
authenticator: ApiKeyAuthenticator | None = None
gateway: RealtimeGateway | None = None
frame_log: FrameLog | None = None
_started_at: float = 0.0


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, log_cfg.get("level", "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


async def _build_services(cfg: dict):
    """Construct every collaborator from config. Called once by the lifespan."""
    global sqlite_store, provider, replies, conversations, contexts
    global authenticator, gateway, frame_log, _started_at

    storage_cfg = cfg.get("storage", {})
    sqlite_store = SQLiteStore(storage_cfg.get("sqlite_path", "./data/chatrelay.db"))
    history_limit = int(storage_cfg.get("history_limit", 100))

    provider, fallback = build_providers(cfg)
    prov_cfg = cfg.get("providers", {})
    replies = ReplyGenerator(
        provider=provider,
        fallback=fallback,
        fallback_enabled=prov_cfg.get("fallback_enabled", True),
    )
    conversations = ConversationStore(replies, storage=sqlite_store, history_limit=history_limit)
    contexts = ProjectContextRegistry(replies, storage=sqlite_store, history_limit=history_limit)
    authenticator = ApiKeyAuthenticator.from_config(cfg.get("auth", {}))

    wire_cfg = cfg.get("wiretap", {})
    frame_log = FrameLog(wire_cfg.get("path", "./data/frames.jsonl")) if wire_cfg.get("enabled", True) else None

    gw_cfg = cfg.get("gateway", {})
    gateway = RealtimeGateway(
        conversations,
        contexts,
        authenticator,
        frame_log=frame_log,
        stream_chunk_words=int(gw_cfg.get("stream_chunk_words", 5)),
        stream_chunk_delay=float(gw_cfg.get("stream_chunk_delay", 0.0)),
        server_name=cfg.get("server", {}).get("name", "chatrelay"),
    )

    if await provider.initialize():
        logger.info("Response provider '%s': online", provider.name)
    else:
        err = provider.get_last_error()
        logger.warning(
            "Response provider '%s': offline (%s). Heuristic fallback %s",
            provider.name,
            err.message if err else "unknown",
            "enabled" if replies.fallback_enabled else "DISABLED",
        )
    _started_at = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    cfg = get_config()
    _setup_logging(cfg)
    await _build_services(cfg)
    logger.info("chatrelay %s ready", __version__)

    yield

    await conversations.flush()
    await contexts.flush()
    if frame_log:
        frame_log.close()
    logger.info("chatrelay shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="chatrelay",
    description="Chat relay with realtime gateway and offline fallback",
    version=__version__,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _ok(data, message: str = "", headers: dict | None = None) -> JSONResponse:
    return JSONResponse({"ok": True, "data": data, "message": message}, headers=headers)


def _error(exc: ChatRelayError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitExceeded) and exc.status is not None:
        headers = exc.status.headers()
    return JSONResponse({"ok": False, "error": exc.to_dict()}, status_code=exc.status_code, headers=headers)


def _extract_key(request: Request) -> str:
    key = request.headers.get("X-API-Key")
    if not key:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.lower().startswith("bearer "):
            key = auth_header[7:].strip()
    if not key:
        key = request.query_params.get("apiKey")
    return key or ""


def _authenticate(request: Request, permission: str):
    """
    Validate the caller's key and permission. Anonymous callers pass only
    when allowed by config.
    """
    key = _extract_key(request)
    if not key:
        if authenticator.allow_anonymous:
            return
        raise AuthenticationError("API key required")
    if authenticator.validate(key) is None:
        raise AuthenticationError("Invalid API key")
    if not authenticator.has_permission(key, permission):
        raise PermissionDenied(f"API key lacks permission '{permission}'")


def _spend_rate(request: Request) -> RateLimitStatus | None:
    """
    Spend one unit of the caller's rate budget. Called once the request
    has been validated, so rejected bodies cost nothing. Returns the status
    for headers, or None for anonymous callers.
    """
    key = _extract_key(request)
    if not key:
        return None
    status = authenticator.check_rate_limit(key)
    if not status.allowed:
        raise RateLimitExceeded(status.reason or "Rate limit exceeded", status)
    return status


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _tap_http(direction: str, frame: dict, user_id: str = ""):
    if frame_log is not None:
        frame_log.log(direction, frame, user_id=user_id, channel="http")


def _internal_error(operation: str, e: Exception) -> JSONResponse:
    logger.exception("%s failed: %s", operation, e)
    return JSONResponse(
        {"ok": False, "error": {"code": "INTERNAL_ERROR", "message": f"Failed to process {operation}",
                                "details": {"originalError": str(e)}}},
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Thread chat
# ---------------------------------------------------------------------------

@app.post("/api/chat")
async def chat_send(request: Request):
    """Send a message on a thread and return the visible history."""
    try:
        _authenticate(request, "chat:write")
        body = await _json_body(request)
        message = body.get("message")
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Message is required and must be a string", {"field": "message"})
        user_id = body.get("userId") or "user"
        thread_id = body.get("threadId") or f"thread_{user_id}_{int(time.time() * 1000)}_{uuid4().hex[:9]}"
        rate = _spend_rate(request)

        _tap_http("in", {"type": "message", "content": message, "threadId": thread_id}, user_id)
        result = await conversations.send_message(thread_id, message, include_messages=True)
        _tap_http("out", {"type": "response", "content": result.reply, "threadId": thread_id}, user_id)
    except ChatRelayError as e:
        return _error(e)
    except Exception as e:
        return _internal_error("chat message", e)

    return _ok(
        {
            "threadId": result.thread_id,
            "messages": result.messages,
            "conversation": result.conversation,
            "degraded": result.degraded,
        },
        "Message processed successfully",
        headers=rate.headers() if rate else None,
    )


@app.get("/api/chat")
async def chat_history(request: Request, threadId: str = ""):
    """Visible history of one thread."""
    try:
        _authenticate(request, "chat:read")
        if not threadId:
            raise ValidationError("threadId is required", {"field": "threadId"})
        conversation = await conversations.get_conversation(threadId)
        if conversation is None:
            raise ConversationNotFound("Conversation not found", {"threadId": threadId})
    except ChatRelayError as e:
        return _error(e)

    return _ok({
        "threadId": threadId,
        "messages": [m.to_dict() for m in conversation.visible_messages()],
        "conversation": conversation.summary(),
    }, "Chat history retrieved")


# ---------------------------------------------------------------------------
# Project contexts
# ---------------------------------------------------------------------------

@app.post("/api/chat/project")
async def project_chat(request: Request):
    """action=switch loads/creates a context; action=send posts a message in it."""
    try:
        _authenticate(request, "chat:write")
        body = await _json_body(request)
        action = body.get("action") or "switch"
        user_id = body.get("userId")
        project_id = body.get("projectId")
        project_data = body.get("projectData") or {}
        context_id = body.get("contextId")

        if action not in ("switch", "send"):
            raise ValidationError('Invalid action. Use "switch" or "send"', {"field": "action"})
        if not isinstance(project_data, dict):
            raise ValidationError("projectData must be an object", {"field": "projectData"})
        if not context_id and not (user_id and project_id):
            raise ValidationError("userId and projectId (or contextId) are required")

        if action == "switch":
            if not (user_id and project_id):
                raise ValidationError("userId and projectId are required to switch", {"field": "projectId"})
            rate = _spend_rate(request)
            context = await contexts.switch_to_context(user_id, str(project_id), project_data)
            data = {
                "contextId": context.context_id,
                "projectId": context.project_id,
                "userId": context.user_id,
                "messages": [m.to_dict() for m in context.visible_messages()],
                "projectData": context.project_data,
            }
            return _ok(data, "Project context loaded", headers=rate.headers() if rate else None)

        message = body.get("message")
        if not isinstance(message, str) or not message.strip():
            raise ValidationError("Message is required for send action", {"field": "message"})
        rate = _spend_rate(request)
        if not context_id:
            context_id = make_context_id(user_id, str(project_id))
        if contexts.get_context(context_id) is None:
            if not (user_id and project_id):
                raise ContextNotFound("Project context not found", {"contextId": context_id})
            await contexts.switch_to_context(user_id, str(project_id), project_data)

        _tap_http("in", {"type": "message", "content": message, "contextId": context_id}, user_id or "")
        result = await contexts.send_message(context_id, message, include_messages=True)
        _tap_http("out", {"type": "response", "content": result.reply, "contextId": context_id}, user_id or "")
    except ChatRelayError as e:
        return _error(e)
    except Exception as e:
        return _internal_error("project chat request", e)

    return _ok(
        {
            "contextId": result.thread_id,
            "assistantMessage": result.assistant_message.to_dict(),
            "messages": result.messages,
            "conversation": result.conversation,
            "degraded": result.degraded,
        },
        "Message sent successfully",
        headers=rate.headers() if rate else None,
    )


@app.get("/api/chat/project")
async def project_chat_read(request: Request, contextId: str = "", userId: str = "", projectId: str = ""):
    """History of one context (contextId, or userId+projectId), or a user's context list (userId)."""
    try:
        _authenticate(request, "chat:read")
        if not contextId and userId and projectId:
            contextId = make_context_id(userId, projectId)

        if contextId:
            context = contexts.get_context(contextId)
            if context is None:
                raise ContextNotFound("Project conversation not found", {"contextId": contextId})
            messages = [m.to_dict() for m in context.visible_messages()]
            return _ok({
                "contextId": contextId,
                "projectId": context.project_id,
                "userId": context.user_id,
                "messages": messages,
                "projectData": context.project_data,
                "metadata": {
                    "messageCount": len(messages),
                    "lastActivity": context.last_activity,
                    "createdAt": context.created_at,
                },
            }, "Project chat history retrieved")

        if userId:
            user_contexts = contexts.get_user_contexts(userId)
            return _ok({
                "userId": userId,
                "contexts": user_contexts,
                "totalProjects": len(user_contexts),
            }, "User project contexts retrieved")

        raise ValidationError("contextId or userId is required")
    except ChatRelayError as e:
        return _error(e)


@app.delete("/api/chat/project")
async def project_chat_clear(request: Request, contextId: str = "", userId: str = "", projectId: str = ""):
    """Drop a context. Clearing an unknown context is not an error."""
    try:
        _authenticate(request, "chat:write")
        if not contextId and userId and projectId:
            contextId = make_context_id(userId, projectId)
        if not contextId:
            raise ValidationError("contextId is required", {"field": "contextId"})
        cleared = await contexts.clear(contextId)
    except ChatRelayError as e:
        return _error(e)

    return JSONResponse({
        "ok": True,
        "cleared": cleared,
        "data": {"contextId": contextId, "cleared": cleared},
        "message": "Project chat history cleared" if cleared else "No chat history to clear",
    })


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    """Health check."""
    return JSONResponse({
        "ok": True,
        "status": "ok",
        "version": __version__,
        "ai_available": replies.is_ai_available() if replies else False,
        "provider": provider.get_status() if provider else None,
        "connections": len(gateway.registry) if gateway else 0,
        "uptime_seconds": round(time.time() - _started_at, 1) if _started_at else 0,
        "timestamp": utcnow(),
    })


@app.get("/api/stats")
async def stats(request: Request):
    """Counters for conversations, contexts, connections, keys and storage."""
    try:
        _authenticate(request, "stats:read")
    except ChatRelayError as e:
        return _error(e)

    return _ok({
        "conversations": conversations.get_stats(),
        "contexts": contexts.get_stats(),
        "gateway": gateway.get_stats(),
        "api_keys": authenticator.get_stats(),
        "storage": sqlite_store.get_stats() if sqlite_store else {},
        "provider": provider.get_status() if provider else None,
    }, "Statistics retrieved")


@app.post("/api/provider/reinitialize")
async def reinitialize_provider(request: Request):
    """Operator action: forget the provider's standing error and verify again."""
    try:
        _authenticate(request, "provider:manage")
    except ChatRelayError as e:
        return _error(e)

    provider.reset()
    online = await provider.initialize()
    logger.info("Provider '%s' re-initialized: %s", provider.name, "online" if online else "offline")
    return _ok({
        "initialized": online,
        "provider": provider.get_status(),
        "info": provider.get_provider_info(),
    }, "Provider online" if online else "Provider still unavailable, using offline mode")


# ---------------------------------------------------------------------------
# Realtime gateway
# ---------------------------------------------------------------------------

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await gateway.handle(websocket)
