"""
Realtime gateway — the /ws endpoint.

Connection lifecycle:
  connecting     query params apiKey/userId read, socket accepted
  authenticated  key valid; otherwise closed with 1008 before any frame is read
  active         ConnectionEntry registered, "connected" frame sent, frames served
  closed         entry removed and outstanding work cancelled, whatever the cause

Inbound frames (JSON objects with a "type"):
  message  {content, threadId?, projectId?, projectData?, stream?}
  ping     answered with pong

Each message frame runs as its own task so a ping is answered while a reply
is still generating. Sends on one socket go through a per-connection lock.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from uuid import uuid4

from fastapi import WebSocket

from chatrelay.auth import ApiKeyAuthenticator, mask_key
from chatrelay.contexts import ProjectContextRegistry
from chatrelay.conversation import ConversationStore, SendResult, validate_text
from chatrelay.errors import ChatRelayError, ValidationError
from chatrelay.storage.models import utcnow
from chatrelay.tasks import BackgroundTasks
from chatrelay.wiretap import FrameLog

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008
_CHUNK_RE = re.compile(r"\S+\s*")


@dataclass
class ConnectionEntry:
    client_id: str
    user_id: str
    api_key: str
    connected_at: str = field(default_factory=utcnow)
    last_activity_at: str = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "clientId": self.client_id,
            "userId": self.user_id,
            "apiKey": mask_key(self.api_key),
            "connectedAt": self.connected_at,
            "lastActivityAt": self.last_activity_at,
        }


class ConnectionRegistry:
    """Live connections by client id. Insert, delete and stats reads share one lock."""

    def __init__(self):
        self._entries: dict[str, ConnectionEntry] = {}
        self._lock = threading.Lock()

    def add(self, entry: ConnectionEntry):
        with self._lock:
            self._entries[entry.client_id] = entry

    def remove(self, client_id: str) -> bool:
        with self._lock:
            return self._entries.pop(client_id, None) is not None

    def get(self, client_id: str) -> ConnectionEntry | None:
        with self._lock:
            return self._entries.get(client_id)

    def snapshot(self) -> list[ConnectionEntry]:
        with self._lock:
            return list(self._entries.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> dict:
        entries = self.snapshot()
        usage: dict[str, int] = {}
        for e in entries:
            masked = mask_key(e.api_key)
            usage[masked] = usage.get(masked, 0) + 1
        return {
            "total_connections": len(entries),
            "unique_users": len({e.user_id for e in entries}),
            "api_key_usage": usage,
            "oldest_connection": min((e.connected_at for e in entries), default=None),
        }


class _Connection:
    """Per-socket state: the entry, a send lock and the frame tasks in flight."""

    def __init__(self, websocket: WebSocket, entry: ConnectionEntry):
        self.websocket = websocket
        self.entry = entry
        self.send_lock = asyncio.Lock()
        self.tasks = BackgroundTasks(f"frame:{entry.client_id}")
        self.default_thread = f"thread_{entry.user_id}_{int(time.time() * 1000)}"


def new_client_id() -> str:
    return f"client_{int(time.time() * 1000)}_{uuid4().hex[:9]}"


def chunk_words(text: str, words_per_chunk: int) -> list[str]:
    """Split text into chunks of N words, keeping the original whitespace."""
    words = _CHUNK_RE.findall(text)
    if not words:
        return [text]
    n = max(1, words_per_chunk)
    return ["".join(words[i:i + n]) for i in range(0, len(words), n)]


class RealtimeGateway:
    """Serves /ws: authenticates, registers, and routes chat frames."""

    def __init__(
        self,
        conversations: ConversationStore,
        contexts: ProjectContextRegistry,
        authenticator: ApiKeyAuthenticator,
        frame_log: FrameLog | None = None,
        stream_chunk_words: int = 5,
        stream_chunk_delay: float = 0.0,
        server_name: str = "chatrelay",
    ):
        self.conversations = conversations
        self.contexts = contexts
        self.auth = authenticator
        self.frame_log = frame_log
        self.stream_chunk_words = stream_chunk_words
        self.stream_chunk_delay = stream_chunk_delay
        self.server_name = server_name
        self.registry = ConnectionRegistry()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def handle(self, websocket: WebSocket):
        api_key = websocket.query_params.get("apiKey") or ""
        user_id = websocket.query_params.get("userId") or "anonymous"

        await websocket.accept()
        if self.auth.validate(api_key) is None:
            logger.info("Rejected WebSocket connection for user %s: invalid API key", user_id)
            await websocket.close(code=POLICY_VIOLATION, reason="Invalid API key")
            return

        entry = ConnectionEntry(client_id=new_client_id(), user_id=user_id, api_key=api_key)
        conn = _Connection(websocket, entry)
        self.registry.add(entry)
        logger.info("Client %s (%s) connected", entry.client_id, user_id)

        try:
            await self._send(conn, {
                "type": "connected",
                "clientId": entry.client_id,
                "message": f"Connected to {self.server_name} Chat Server",
            })
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None and message.get("bytes") is not None:
                    raw = message["bytes"].decode("utf-8", errors="replace")
                await self._dispatch(conn, raw or "")
        except Exception as e:
            logger.error("WebSocket error for client %s: %s", entry.client_id, e)
        finally:
            self.registry.remove(entry.client_id)
            cancelled = conn.tasks.cancel_all()
            logger.info(
                "Client %s (%s) disconnected%s",
                entry.client_id, user_id,
                f", cancelled {cancelled} in-flight frame(s)" if cancelled else "",
            )

    async def _dispatch(self, conn: _Connection, raw: str):
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_error(conn, "Invalid JSON frame")
            return
        if not isinstance(frame, dict):
            await self._send_error(conn, "Frame must be a JSON object")
            return

        conn.entry.last_activity_at = utcnow()
        self._tap("in", conn, frame)
        frame_type = frame.get("type")

        if frame_type == "message":
            conn.tasks.spawn(self._handle_chat(conn, frame), name=f"message:{conn.entry.client_id}")
        elif frame_type == "ping":
            await self._send(conn, {"type": "pong", "timestamp": utcnow()})
        else:
            await self._send_error(conn, "Unknown message type", {"type": frame_type})

    # ------------------------------------------------------------------
    # Chat frames
    # ------------------------------------------------------------------

    async def _handle_chat(self, conn: _Connection, frame: dict):
        # Malformed frames are refused before they cost rate budget.
        try:
            validate_text(frame.get("content"), "message")
            project_data = frame.get("projectData")
            if project_data is not None and not isinstance(project_data, dict):
                raise ValidationError("projectData must be an object", {"field": "projectData"})
        except ValidationError as e:
            await self._send_error(conn, "Failed to process chat message", e.message)
            return

        status = self.auth.check_rate_limit(conn.entry.api_key)
        if not status.allowed:
            await self._send(conn, {
                "type": "error",
                "message": status.reason or "Rate limit exceeded",
                "details": status.to_dict(),
                "resetAt": status.reset_at_iso,
            })
            return

        stream = bool(frame.get("stream"))
        if stream:
            await self._send(conn, {"type": "status", "message": "Processing your message...", "progress": 0})

        try:
            result = await self._route(conn, frame)
        except ChatRelayError as e:
            logger.warning("Chat frame from %s failed: %s", conn.entry.client_id, e)
            await self._send_error(conn, "Failed to process chat message", e.message)
            return
        except Exception as e:
            logger.error("Unexpected error processing chat frame from %s: %s", conn.entry.client_id, e)
            await self._send_error(conn, "Failed to process chat message", str(e))
            return

        if stream:
            await self._stream(conn, result)
        else:
            await self._send(conn, {
                "type": "response",
                "threadId": result.thread_id,
                "content": result.reply,
                "timestamp": utcnow(),
            })

    async def _route(self, conn: _Connection, frame: dict) -> SendResult:
        content = frame.get("content")
        project_id = frame.get("projectId")
        if project_id:
            context = await self.contexts.switch_to_context(
                conn.entry.user_id, str(project_id), frame.get("projectData"),
            )
            return await self.contexts.send_message(context.context_id, content)
        thread_id = frame.get("threadId") or conn.default_thread
        return await self.conversations.send_message(thread_id, content)

    async def _stream(self, conn: _Connection, result: SendResult):
        if result.degraded:
            await self._send(conn, {
                "type": "narrative",
                "message": "Backend AI service is unavailable, answering in offline mode",
                "timestamp": utcnow(),
                "metadata": {"degraded": True},
            })
        chunks = chunk_words(result.reply, self.stream_chunk_words)
        await self._send(conn, {"type": "status", "message": "Generating response", "progress": 50})
        for i, chunk in enumerate(chunks):
            await self._send(conn, {
                "type": "chunk",
                "threadId": result.thread_id,
                "content": chunk,
                "isComplete": i == len(chunks) - 1,
            })
            if self.stream_chunk_delay:
                await asyncio.sleep(self.stream_chunk_delay)
        await self._send(conn, {"type": "complete", "threadId": result.thread_id, "timestamp": utcnow()})

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def _send(self, conn: _Connection, frame: dict):
        async with conn.send_lock:
            await conn.websocket.send_text(json.dumps(frame))
        self._tap("out", conn, frame)

    async def _send_error(self, conn: _Connection, message: str, details=None):
        frame = {"type": "error", "message": message}
        if details is not None:
            frame["details"] = details
        await self._send(conn, frame)

    def _tap(self, direction: str, conn: _Connection, frame: dict):
        if self.frame_log is not None:
            self.frame_log.log(direction, frame, client_id=conn.entry.client_id, user_id=conn.entry.user_id)

    def get_stats(self) -> dict:
        return self.registry.get_stats()
