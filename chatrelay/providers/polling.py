"""
Polling backend provider — asynchronous submit-then-poll job protocol.

  1. POST <backend_url><submit_path>     {message, userId, chatId, attachments?}
                                          -> {requestId}
  2. GET  <backend_url>/api/chat/status/<requestId>, once per poll_interval,
     until status is "complete" (extract the answer), "error" (fail) or the
     deadline passes (GenerationTimeout).

Both calls carry the X-API-Key header. One generate() call owns one
httpx.AsyncClient; cancelling the awaiting task closes it, which aborts the
outstanding request and ends the loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from urllib.parse import urlparse
from uuid import uuid4

import httpx

from chatrelay.errors import (
    GenerationError,
    GenerationTimeout,
    ProviderUnavailable,
    UnparseableResponse,
)
from chatrelay.providers.base import ResponseProvider
from chatrelay.providers.extract import PLACEHOLDER_REPLY, extract_answer
from chatrelay.storage.models import Message

logger = logging.getLogger(__name__)

DEFAULTS = {
    "backend_url": "",
    "submit_path": "/api/chat/send-streaming",
    "status_path": "/api/chat/status/{request_id}",
    "verify_path": "/api/verify",
    "api_key": "",
    "user_id": "chatrelay-user",
    "timeout": 30.0,
    "poll_interval": 1.0,
    "verify_timeout": 5.0,
    "strict_response_shapes": False,
}


@dataclass
class ProviderJob:
    """One in-flight backend job. Lives only inside a generate() call."""
    request_id: str
    submitted_at: float
    deadline: float

    def expired(self) -> bool:
        return time.monotonic() >= self.deadline


class PollingBackendProvider(ResponseProvider):
    """Remote agent backend reached through the async job protocol."""

    name = "backend"

    def __init__(self, config: dict | None = None):
        merged = {**DEFAULTS, **(config or {})}
        super().__init__(merged)
        self.backend_url = (merged["backend_url"] or "").rstrip("/")
        self.submit_path = merged["submit_path"]
        self.status_path = merged["status_path"]
        self.verify_path = merged["verify_path"]
        self.api_key = merged["api_key"]
        self.user_id = merged["user_id"]
        self.timeout = float(merged["timeout"])
        self.poll_interval = float(merged["poll_interval"])
        self.verify_timeout = float(merged["verify_timeout"])
        self.strict_response_shapes = bool(merged["strict_response_shapes"])
        self._init_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(self) -> bool:
        """
        Verify connectivity once. Concurrent callers share the attempt in
        flight; after a success further calls return True without I/O.
        """
        if self.is_available():
            return True
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.ensure_future(self._initialize())
        return await asyncio.shield(self._init_task)

    async def _initialize(self) -> bool:
        if not self.validate_config():
            self.is_initialized = False
            logger.warning("Backend provider config invalid: %s", self.last_error.message)
            return False

        ok, reason = await self.test_connection()
        if ok:
            self.is_initialized = True
            self.last_error = None
            logger.info("Backend provider initialized (%s)", self.backend_url)
            return True

        self.is_initialized = False
        self._record_error(
            reason,
            "connection_test",
            user_message=f"Backend AI service is unavailable ({reason}). Using offline mode.",
        )
        logger.warning(
            "Backend provider unavailable (%s) at %s, operating in offline mode",
            reason, self.backend_url,
        )
        return False

    async def test_connection(self) -> tuple[bool, str]:
        """
        Lightweight reachability check: the verify endpoint first, then a
        probe of the submit endpoint (anything but 404 means it exists).
        """
        try:
            async with httpx.AsyncClient(timeout=self.verify_timeout) as client:
                resp = await client.get(self._url(self.verify_path), headers=self._headers())
                if 200 <= resp.status_code < 300:
                    if resp.json().get("valid"):
                        return True, ""
                    return False, "API key is not valid"

                logger.info(
                    "Backend verify returned HTTP %d, probing submit endpoint",
                    resp.status_code,
                )
                probe = await client.post(
                    self._url(self.submit_path),
                    headers=self._headers(),
                    json={"message": "connection test", "userId": "test"},
                )
                if probe.status_code != 404:
                    return True, ""
                return False, f"Send endpoint not found ({probe.status_code})"
        except httpx.TimeoutException:
            return False, f"Connection timeout ({self.verify_timeout:g}s)"
        except httpx.ConnectError:
            return False, "Service unavailable"
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            return False, str(e) or e.__class__.__name__

    def validate_config(self) -> bool:
        if not self.backend_url:
            self._record_error("Backend URL is required", "validation")
            return False
        parsed = urlparse(self.backend_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            self._record_error("Invalid backend URL format", "validation")
            return False
        return True

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(self, messages: list[Message]) -> str:
        if not self.is_available():
            raise ProviderUnavailable("Backend provider is not available")
        if not messages:
            raise GenerationError("Invalid messages array provided")

        latest = next((m for m in reversed(messages) if m.role == "user"), None)
        if latest is None:
            raise GenerationError("No user message found")

        try:
            reply = await self._run_job(latest.content, messages)
        except GenerationError as e:
            self._record_error(e.message, "generation")
            raise
        self.last_error = None
        return reply

    async def _run_job(self, text: str, messages: list[Message]) -> str:
        payload = self._build_payload(text, messages)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                request_id = await self._submit(client, payload)
                return await self._poll(client, request_id)
        except httpx.TimeoutException as e:
            raise GenerationTimeout(f"Backend API timeout after {self.timeout:g}s") from e
        except httpx.HTTPError as e:
            raise GenerationError(f"Failed to call backend API: {e}") from e

    def _build_payload(self, text: str, messages: list[Message]) -> dict:
        payload = {
            "message": text,
            "userId": self.user_id,
            "chatId": f"chat_{uuid4().hex[:12]}",
        }
        if len(messages) > 1:
            payload["attachments"] = [{
                "type": "context",
                "title": "Conversation History",
                "body": {
                    "previousMessages": [
                        {"role": m.role, "content": m.content} for m in messages[:-1]
                    ],
                },
                "hidden": True,
                "description": "Previous conversation context",
            }]
        return payload

    async def _submit(self, client: httpx.AsyncClient, payload: dict) -> str:
        resp = await client.post(
            self._url(self.submit_path), headers=self._headers(), json=payload,
        )
        if not 200 <= resp.status_code < 300:
            raise GenerationError(
                f"Backend send API error ({resp.status_code}): {resp.text[:200]}"
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise GenerationError(f"Backend returned invalid JSON response: {e}") from e

        request_id = data.get("requestId") if isinstance(data, dict) else None
        if not request_id:
            raise GenerationError("Backend did not return requestId")
        logger.debug("Backend job submitted: %s", request_id)
        return request_id

    async def _poll(self, client: httpx.AsyncClient, request_id: str) -> str:
        now = time.monotonic()
        job = ProviderJob(request_id=request_id, submitted_at=now, deadline=now + self.timeout)
        status_url = self._url(self.status_path.format(request_id=request_id))
        polls = 0

        while True:
            resp = await client.get(status_url, headers=self._headers())
            if not 200 <= resp.status_code < 300:
                raise GenerationError(f"Status check failed ({resp.status_code})")
            try:
                data = resp.json()
            except ValueError as e:
                raise GenerationError(f"Backend status endpoint returned invalid JSON: {e}") from e
            if not isinstance(data, dict):
                raise GenerationError("Backend status endpoint returned a non-object body")

            polls += 1
            status = data.get("status")
            logger.debug("Poll %d for %s: %s (%s)", polls, request_id, status, data.get("progress", 0))

            if status == "complete":
                return self._extract(data, request_id)
            if status == "error":
                raise GenerationError(
                    data.get("message") or "Backend processing error",
                    details={"request_id": request_id},
                )
            if job.expired():
                raise GenerationTimeout(
                    f"Backend response timeout after {self.timeout:g}s",
                    details={"request_id": request_id, "polls": polls},
                )
            await asyncio.sleep(self.poll_interval)

    def _extract(self, data: dict, request_id: str) -> str:
        answer, source = extract_answer(data)
        if answer:
            logger.debug("Job %s answer found via %s", request_id, source)
            return answer

        logger.warning(
            "Job %s completed with no recognizable answer field (keys: %s)",
            request_id, sorted(data.keys()),
        )
        if self.strict_response_shapes:
            raise UnparseableResponse(
                "Backend response matched no known shape",
                details={"request_id": request_id, "keys": sorted(data.keys())},
            )
        return PLACEHOLDER_REPLY

    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.backend_url}{path}"

    def _headers(self) -> dict:
        return {
            "X-API-Key": self.api_key,
            "Content-Type": "application/json",
        }

    def get_provider_info(self) -> dict:
        return {
            "name": "Backend API",
            "description": "Remote agent backend via submit-then-poll jobs",
            "backend_url": self.backend_url,
            "endpoint": self.submit_path,
            "timeout": self.timeout,
        }

    def get_capabilities(self) -> dict:
        return {
            "supports_chat": True,
            "supports_streaming": False,
            "max_message_length": 4096,
            "features": ["conversation", "context-awareness", "backend-integration"],
        }

    def reset(self):
        super().reset()
        self._init_task = None
