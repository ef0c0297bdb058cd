"""
ConversationStore — per-thread message logs in front of the providers.

Flow for one send_message():
  1. Validate thread id and text
  2. Find the conversation (memory, then storage) or start a new one
  3. Append the user message
  4. Ask the active provider for a reply; on any failure fall back to the
     local heuristic provider with the offline-mode notice
  5. Append the assistant message and persist both in the background
  6. Return the reply with a conversation summary

Calls for the same thread are serialized by a per-thread lock. Different
threads never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from chatrelay.errors import ConversationNotFound, ProviderUnavailable, ValidationError
from chatrelay.providers.base import ResponseProvider
from chatrelay.providers.heuristic import LocalHeuristicProvider
from chatrelay.storage.base import MessageStore
from chatrelay.storage.models import Conversation, Message, utcnow
from chatrelay.tasks import BackgroundTasks, KeyedLocks

logger = logging.getLogger(__name__)

GREETING = "Hello! I'm your AI assistant. How can I help you today?"

OFFLINE_NOTICE = (
    "🔄 **Operating in Offline Mode**\n\n"
    "{reply}\n\n"
    "---\n"
    "*Note: AI backend is currently unavailable. Responses are generated "
    "using offline fallback logic.*"
)


@dataclass
class SendResult:
    """Outcome of one send_message() call."""
    thread_id: str
    assistant_message: Message
    conversation: dict
    degraded: bool = False
    messages: list[dict] | None = None

    @property
    def reply(self) -> str:
        return self.assistant_message.content

    def to_dict(self) -> dict:
        body = {
            "threadId": self.thread_id,
            "assistantMessage": self.reply,
            "conversation": self.conversation,
            "degraded": self.degraded,
        }
        if self.messages is not None:
            body["messages"] = self.messages
        return body


class ReplyGenerator:
    """
    Active provider plus the heuristic fallback.
    Shared by the conversation and project-context managers so an operator
    provider swap or re-initialize affects both.
    """

    def __init__(
        self,
        provider: ResponseProvider | None = None,
        fallback: LocalHeuristicProvider | None = None,
        fallback_enabled: bool = True,
    ):
        self.provider = provider
        self.fallback = fallback or LocalHeuristicProvider()
        self.fallback_enabled = fallback_enabled
        self.fallbacks = 0

    def is_ai_available(self) -> bool:
        return self.provider is not None and self.provider.is_available()

    async def reply(self, messages: list[Message], project_data: dict | None = None) -> tuple[str, bool]:
        """Return (text, degraded). degraded is True when the fallback answered."""
        provider = self.provider
        if provider is not None and provider.is_available():
            try:
                return await provider.generate(messages), False
            except Exception as e:
                if not self.fallback_enabled:
                    raise
                logger.warning("Provider '%s' failed, falling back: %s", provider.name, e)
        else:
            if not self.fallback_enabled:
                raise ProviderUnavailable("No response provider is available")
            last = provider.get_last_error() if provider is not None else None
            if last is not None and last.user_message:
                logger.info("Offline mode: %s", last.user_message)
            else:
                logger.debug("Offline mode: no provider available")

        self.fallbacks += 1
        text = await self.fallback.generate(messages, project_data)
        return OFFLINE_NOTICE.format(reply=text), True


def validate_text(value, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid {field_name} provided", {"field": field_name})
    return value


class ConversationStore:
    """Owns every thread-keyed Conversation in the process."""

    def __init__(
        self,
        replies: ReplyGenerator | None = None,
        storage: MessageStore | None = None,
        history_limit: int = 100,
    ):
        self.replies = replies or ReplyGenerator()
        self.storage = storage
        self.history_limit = history_limit
        self._conversations: dict[str, Conversation] = {}
        self._locks = KeyedLocks()
        self._background = BackgroundTasks("persist")

    # ------------------------------------------------------------------
    # Provider
    # ------------------------------------------------------------------

    def set_provider(self, provider: ResponseProvider | None):
        """Swap the active provider. In-flight calls finish on the old one."""
        self.replies.provider = provider
        logger.info("Conversation provider set to %s", provider.name if provider else None)

    def is_ai_available(self) -> bool:
        return self.replies.is_ai_available()

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_message(self, thread_id: str, text: str, include_messages: bool = False) -> SendResult:
        validate_text(thread_id, "threadId")
        validate_text(text, "message")

        async with self._locks.get(thread_id):
            conversation, created = await self._get_or_create(thread_id)
            pending: list[Message] = list(conversation.messages) if created else []

            user_msg = Message(role="user", content=text)
            # The exchange is committed only once the reply exists.
            try:
                reply, degraded = await self.replies.reply(conversation.messages + [user_msg])
            except BaseException:
                if created:
                    self._conversations.pop(thread_id, None)
                raise

            conversation.append(user_msg)
            assistant_msg = Message(role="assistant", content=reply)
            conversation.append(assistant_msg)
            conversation.last_activity = assistant_msg.timestamp

            pending += [user_msg, assistant_msg]
            self._persist(thread_id, pending)

            return SendResult(
                thread_id=thread_id,
                assistant_message=assistant_msg,
                conversation=conversation.summary(),
                degraded=degraded,
                messages=[m.to_dict() for m in conversation.visible_messages()] if include_messages else None,
            )

    async def _get_or_create(self, thread_id: str) -> tuple[Conversation, bool]:
        conversation = await self.get_conversation(thread_id)
        if conversation is not None:
            return conversation, False
        conversation = Conversation(thread_id=thread_id)
        conversation.append(Message(role="system", content=GREETING, hidden=True, kind="greeting"))
        self._conversations[thread_id] = conversation
        logger.debug("Created conversation %s", thread_id)
        return conversation, True

    # ------------------------------------------------------------------
    # Persistence (fire-and-forget)
    # ------------------------------------------------------------------

    def _persist(self, thread_id: str, messages: list[Message]):
        if self.storage is None or not messages:
            return
        self._background.spawn(self._write(thread_id, messages), name=f"persist:{thread_id}")

    async def _write(self, thread_id: str, messages: list[Message]):
        for message in messages:
            await asyncio.to_thread(self.storage.create, message.to_record(thread_id))

    async def _load(self, thread_id: str) -> Conversation | None:
        if self.storage is None:
            return None
        try:
            records = await asyncio.to_thread(self.storage.list_by_thread, thread_id, self.history_limit)
        except Exception as e:
            logger.warning("Failed to load history for %s: %s", thread_id, e)
            return None
        if not records:
            return None
        messages = [Message.from_record(r) for r in records]
        conversation = Conversation(
            thread_id=thread_id,
            messages=messages,
            created_at=messages[0].timestamp,
            last_activity=messages[-1].timestamp,
        )
        conversation.metadata["message_count"] = len(messages)
        logger.debug("Restored %d messages for %s from storage", len(messages), thread_id)
        return conversation

    async def flush(self):
        """Wait for outstanding persistence writes."""
        await self._background.drain()

    # ------------------------------------------------------------------
    # Reads and housekeeping
    # ------------------------------------------------------------------

    async def get_conversation(self, thread_id: str) -> Conversation | None:
        """Memory first, then storage. A storage hit is cached."""
        conversation = self._conversations.get(thread_id)
        if conversation is not None:
            return conversation
        conversation = await self._load(thread_id)
        if conversation is not None:
            self._conversations[thread_id] = conversation
        return conversation

    async def visible_messages(self, thread_id: str) -> list[Message]:
        conversation = await self.get_conversation(thread_id)
        if conversation is None:
            raise ConversationNotFound(f"Conversation not found: {thread_id}")
        return conversation.visible_messages()

    def get_all_conversations(self) -> list[dict]:
        return sorted(
            (c.summary() for c in self._conversations.values()),
            key=lambda s: s["lastActivity"],
            reverse=True,
        )

    async def delete_conversation(self, thread_id: str) -> bool:
        existed = self._conversations.pop(thread_id, None) is not None
        self._locks.discard(thread_id)
        if self.storage is not None:
            try:
                removed = await asyncio.to_thread(self.storage.delete_thread, thread_id)
            except Exception as e:
                logger.warning("Failed to delete stored history for %s: %s", thread_id, e)
            else:
                existed = existed or removed > 0
        return existed

    def clear_all(self):
        """Forget every in-memory conversation. Stored history is kept."""
        count = len(self._conversations)
        self._conversations.clear()
        logger.info("Cleared %d in-memory conversations", count)

    def get_stats(self) -> dict:
        conversations = list(self._conversations.values())
        total_messages = sum(len(c.messages) for c in conversations)
        return {
            "total_conversations": len(conversations),
            "total_messages": total_messages,
            "average_messages_per_conversation": (
                total_messages / len(conversations) if conversations else 0
            ),
            "oldest_conversation": min((c.created_at for c in conversations), default=None),
            "newest_activity": max((c.last_activity for c in conversations), default=None),
            "ai_available": self.is_ai_available(),
            "fallback_replies": self.replies.fallbacks,
            "pending_writes": self._background.pending,
            "failed_writes": self._background.failures,
            "checked_at": utcnow(),
        }
