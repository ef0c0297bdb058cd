"""
RealtimeClient — the caller-side counterpart of the gateway.

Two modes:
  websocket  persistent connection to /ws; replies arrive as events
             (response, narrative, status, chunk, complete, error)
  http       one round-trip per message against /api/chat

In websocket mode a dropped connection is retried with linear backoff
(reconnect_delay * attempt) up to max_reconnect_attempts, then the client
gives up for good and emits max_reconnect_attempts_reached once. A close
with 1008 means the key was refused: that emits error and is not retried.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable
from urllib.parse import urlencode

import httpx
import websockets

from chatrelay.errors import ChatRelayError, ValidationError

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008

# Frame type -> fields forwarded to the event handlers.
FRAME_FIELDS = {
    "connected": ("clientId", "message"),
    "response": ("content", "threadId", "timestamp"),
    "narrative": ("message", "timestamp", "metadata"),
    "status": ("message", "progress", "timestamp"),
    "chunk": ("content", "isComplete", "threadId"),
    "complete": ("timestamp", "threadId"),
}


class RealtimeClient:
    """Connects to a chatrelay server by WebSocket or plain HTTP."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        ws_url: str = "ws://localhost:8000",
        api_key: str = "",
        user_id: str = "anonymous",
        mode: str = "websocket",
        max_reconnect_attempts: int = 5,
        reconnect_delay: float = 1.0,
        timeout: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.ws_url = ws_url.rstrip("/")
        self.api_key = api_key
        self.user_id = user_id
        self.mode = mode
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.timeout = timeout

        self.ws = None
        self.is_connected = False
        self.reconnect_attempts = 0
        self.client_id: str | None = None
        self._handlers: dict[str, list[Callable]] = {}
        self._reader: asyncio.Task | None = None
        self._closing = False
        self._exhausted = False

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, handler: Callable[[Any], None]):
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Callable[[Any], None]):
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, data: Any = None):
        """Call every handler for the event. A failing handler does not stop the rest."""
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(data)
            except Exception as e:
                logger.error("Error in event handler for '%s': %s", event, e)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    @property
    def socket_url(self) -> str:
        query = urlencode({"apiKey": self.api_key, "userId": self.user_id})
        return f"{self.ws_url}/ws?{query}"

    async def connect(self) -> bool:
        """Open the WebSocket (websocket mode). HTTP mode has nothing to open."""
        if self.mode != "websocket":
            return self.is_connected
        if not self.api_key:
            raise ValidationError("API key is required for WebSocket connection")
        self._closing = False
        self._exhausted = False
        await self._open()
        return self.is_connected

    async def _open(self):
        self.ws = await websockets.connect(self.socket_url)
        self.is_connected = True
        self.reconnect_attempts = 0
        self.emit("open", {"userId": self.user_id})
        self._reader = asyncio.ensure_future(self._read_loop(self.ws))

    async def _read_loop(self, ws):
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("Ignoring unparseable frame: %.80s", raw)
                    continue
                if not isinstance(frame, dict):
                    logger.warning("Ignoring non-object frame: %.80s", raw)
                    continue
                self.handle_frame(frame)
        except websockets.exceptions.ConnectionClosed:
            pass

        if ws is not self.ws:
            return
        self.is_connected = False
        code = ws.close_code
        reason = ws.close_reason or ""
        self.emit("disconnected", {"code": code, "reason": reason})

        if code == POLICY_VIOLATION:
            logger.warning("Server refused the connection: %s", reason or "Invalid API key")
            self.emit("error", {"error": reason or "Invalid API key", "details": {"code": code}})
            return
        if not self._closing:
            await self.attempt_reconnection()

    async def attempt_reconnection(self) -> bool:
        """
        Reconnect with linear backoff. Returns True once connected, False when
        the attempt ceiling is hit (emits max_reconnect_attempts_reached once).
        """
        while not self._closing:
            if self._exhausted:
                return False
            if self.reconnect_attempts >= self.max_reconnect_attempts:
                self._exhausted = True
                logger.warning("Giving up after %d reconnection attempts", self.reconnect_attempts)
                self.emit("max_reconnect_attempts_reached", {"attempts": self.reconnect_attempts})
                return False

            self.reconnect_attempts += 1
            attempt = self.reconnect_attempts
            await asyncio.sleep(self.reconnect_delay * attempt)
            if self._closing:
                return False
            self.emit("reconnecting", {"attempt": attempt})
            try:
                await self._open()
                logger.info("Reconnected on attempt %d", attempt)
                return True
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                logger.warning("Reconnection attempt %d failed: %s", attempt, e)
        return False

    def handle_frame(self, frame: dict):
        frame_type = frame.get("type")
        if frame_type == "connected":
            self.client_id = frame.get("clientId")
        if frame_type in FRAME_FIELDS:
            self.emit(frame_type, {k: frame.get(k) for k in FRAME_FIELDS[frame_type]})
        elif frame_type == "error":
            self.emit("error", {"error": frame.get("message"), "details": frame.get("details")})
        elif frame_type == "pong":
            self.emit("pong", frame)
        else:
            logger.warning("Unknown frame type: %s", frame_type)

    async def disconnect(self):
        """Close the socket and stop any automatic reconnection."""
        self._closing = True
        self.reconnect_attempts = self.max_reconnect_attempts
        ws, self.ws = self.ws, None
        self.is_connected = False
        if ws is not None:
            await ws.close()
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
        self._reader = None

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_message(
        self,
        text: str,
        thread_id: str | None = None,
        project_id: str | None = None,
        stream: bool = False,
    ) -> dict:
        if not isinstance(text, str) or not text:
            raise ValidationError("Message must be a non-empty string")
        if self.mode == "websocket":
            return await self._send_ws(text, thread_id, project_id, stream)
        return await self._send_http(text, thread_id)

    async def _send_ws(self, text, thread_id, project_id, stream) -> dict:
        if not self.is_connected or self.ws is None:
            raise ChatRelayError("Not connected to WebSocket server")
        frame = {"type": "message", "content": text, "userId": self.user_id}
        if thread_id:
            frame["threadId"] = thread_id
        if project_id:
            frame["projectId"] = project_id
        if stream:
            frame["stream"] = True
        await self.ws.send(json.dumps(frame))
        return {"sent": True, "mode": "websocket"}

    async def _send_http(self, text: str, thread_id: str | None) -> dict:
        body = {"message": text, "userId": self.user_id}
        if thread_id:
            body["threadId"] = thread_id
        data = await self._request("POST", "/api/chat", json=body)
        messages = data.get("messages") or []
        return {
            "threadId": data.get("threadId"),
            "response": messages[-1]["content"] if messages else None,
            "messages": messages,
            "mode": "http",
        }

    async def get_chat_history(self, thread_id: str) -> dict | None:
        return await self._request("GET", "/api/chat", params={"threadId": thread_id})

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise ChatRelayError(f"HTTP request failed: {e}") from e

        try:
            payload = resp.json()
        except ValueError as e:
            raise ChatRelayError(f"HTTP {resp.status_code}: invalid JSON response") from e
        if not isinstance(payload, dict):
            raise ChatRelayError(f"HTTP {resp.status_code}: unexpected response body")
        if resp.status_code >= 400 or not payload.get("ok"):
            error = payload.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ChatRelayError(message or f"HTTP {resp.status_code}", {"status": resp.status_code})
        return payload.get("data") or {}

    async def ping(self):
        if self.is_connected and self.ws is not None:
            await self.ws.send(json.dumps({"type": "ping"}))

    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        return {
            "is_connected": self.is_connected,
            "mode": self.mode,
            "user_id": self.user_id,
            "client_id": self.client_id,
            "reconnect_attempts": self.reconnect_attempts,
            "has_api_key": bool(self.api_key),
        }

    def update_config(self, **kwargs):
        for name in ("api_key", "user_id", "base_url", "ws_url", "mode",
                     "max_reconnect_attempts", "reconnect_delay", "timeout"):
            if name in kwargs and kwargs[name] is not None:
                value = kwargs[name]
                if name in ("base_url", "ws_url"):
                    value = value.rstrip("/")
                setattr(self, name, value)
