"""
ProjectContextRegistry — one isolated conversation per (user, project).

The context id is a pure function of the pair (see make_context_id), so a
switch always resolves to the same object. The first switch registers the
context synchronously, before any await, then primes it:

  hidden system message   project summary + assistant instructions
  restored history        earlier exchanges from the storage collaborator
  welcome message         visible greeting naming the project

A concurrent switch for the same pair waits for that priming to finish and
receives the same context. Later switches only merge project data.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from chatrelay.conversation import ReplyGenerator, SendResult, validate_text
from chatrelay.errors import ChatRelayError, ContextNotFound, ValidationError
from chatrelay.providers.base import ResponseProvider
from chatrelay.providers.heuristic import as_list
from chatrelay.storage.base import MessageStore
from chatrelay.storage.models import Message, ProjectChatContext, make_context_id, utcnow
from chatrelay.tasks import BackgroundTasks, KeyedLocks

logger = logging.getLogger(__name__)

ACTIVE_DAYS = 7


def build_context_message(project: dict) -> str:
    """System priming text for a project. Never shown to callers."""
    if project.get("budget_amount"):
        budget = f"{project['budget_amount']} {project.get('budget_currency') or 'USD'}"
    else:
        budget = "Not set"

    deliverables = as_list(project.get("deliverables"))
    if deliverables:
        lines = []
        for d in deliverables:
            if isinstance(d, dict):
                lines.append(f"- {d.get('name') or d.get('title')}: {d.get('description') or 'No description'}")
            else:
                lines.append(f"- {d}")
        deliverable_block = "\n".join(lines)
    else:
        deliverable_block = "- No deliverables defined yet"

    return (
        "PROJECT CONTEXT INFORMATION:\n"
        "==========================\n\n"
        f"Project Name: {project.get('name') or 'Unknown'}\n"
        f"Project ID: {project.get('id') or 'Unknown'}\n"
        f"Description: {project.get('description') or 'No description available'}\n"
        f"Status: {project.get('status') or 'Unknown'}\n"
        f"Start Date: {project.get('start_date') or 'Not set'}\n"
        f"End Date: {project.get('end_date') or 'Not set'}\n"
        f"Budget: {budget}\n"
        f"Client: {project.get('client_name') or 'Unknown'}\n"
        f"Industry: {project.get('client_industry') or 'Unknown'}\n\n"
        "PROJECT DELIVERABLES:\n"
        f"{deliverable_block}\n\n"
        "ASSISTANT INSTRUCTIONS:\n"
        "- You are an AI assistant helping with this specific project\n"
        "- Provide contextual advice and insights based on the project information above\n"
        "- Help with project planning, analysis, risk assessment, and deliverable creation\n"
        "- When asked about \"this project\" or \"the project\", refer to the information above\n"
        "- Maintain awareness of the project context throughout the conversation\n"
        "- If the user switches projects, you will receive new context information\n\n"
        f"Current timestamp: {utcnow()}\n"
    )


def build_welcome_message(project: dict) -> str:
    return (
        f"Hello! I'm your AI assistant for the project \"{project.get('name') or 'Current Project'}\". "
        "I'm here to help you with project-related questions, analysis, and guidance. "
        "What would you like to know about this project?"
    )


class ProjectContextRegistry:
    """Owns every (user, project) context in the process."""

    def __init__(
        self,
        replies: ReplyGenerator | None = None,
        storage: MessageStore | None = None,
        history_limit: int = 100,
    ):
        self.replies = replies or ReplyGenerator()
        self.storage = storage
        self.history_limit = history_limit
        self._contexts: dict[str, ProjectChatContext] = {}
        self._priming: dict[str, asyncio.Future] = {}
        self._user_projects: dict[str, set[str]] = {}
        self._locks = KeyedLocks()
        self._background = BackgroundTasks("persist")

    def set_provider(self, provider: ResponseProvider | None):
        self.replies.provider = provider
        logger.info("Project chat provider set to %s", provider.name if provider else None)

    def is_ai_available(self) -> bool:
        return self.replies.is_ai_available()

    # ------------------------------------------------------------------
    # Switching
    # ------------------------------------------------------------------

    async def switch_to_context(
        self, user_id: str, project_id: str, project_data: dict | None = None,
    ) -> ProjectChatContext:
        validate_text(user_id, "userId")
        validate_text(project_id, "projectId")
        if project_data is not None and not isinstance(project_data, dict):
            raise ValidationError("projectData must be an object", {"field": "projectData"})
        project_data = dict(project_data or {})
        context_id = make_context_id(user_id, project_id)
        self._user_projects.setdefault(user_id, set()).add(project_id)

        context = self._contexts.get(context_id)
        if context is None:
            # Register before the first await so a concurrent switch finds it.
            context = ProjectChatContext(
                user_id=user_id,
                project_id=project_id,
                project_data=project_data,
                metadata={
                    "title": f"Project: {project_data.get('name') or 'Unnamed Project'}",
                    "message_count": 0,
                    "type": "project",
                    "tags": ["project-chat", project_id],
                },
            )
            self._contexts[context_id] = context
            priming = asyncio.get_running_loop().create_future()
            self._priming[context_id] = priming
            try:
                await self._prime(context)
            except BaseException as e:
                # Half-primed contexts are dropped so the next switch starts over.
                self._contexts.pop(context_id, None)
                if isinstance(e, Exception):
                    priming.set_exception(e)
                else:
                    priming.set_exception(ChatRelayError("Project context priming was cancelled"))
                # Waiters re-raise it; nobody else needs to retrieve it.
                priming.exception()
                logger.warning("Priming project context %s failed: %s", context_id, e)
                raise
            else:
                priming.set_result(None)
            finally:
                del self._priming[context_id]
            logger.info("Created project context %s", context_id)
            return context

        priming = self._priming.get(context_id)
        if priming is not None:
            await asyncio.shield(priming)
        context.project_data = {**context.project_data, **project_data}
        context.last_activity = utcnow()
        return context

    async def _prime(self, context: ProjectChatContext):
        context.append(Message(
            role="system",
            content=build_context_message(context.project_data),
            hidden=True,
            kind="context-initialization",
        ))
        for message in await self._load(context.context_id):
            context.append(message)
        context.append(Message(
            role="assistant",
            content=build_welcome_message(context.project_data),
            kind="welcome",
        ))

    async def _load(self, context_id: str) -> list[Message]:
        if self.storage is None:
            return []
        try:
            records = await asyncio.to_thread(self.storage.list_by_thread, context_id, self.history_limit)
        except Exception as e:
            logger.warning("Failed to restore history for context %s: %s", context_id, e)
            return []
        restored = [Message.from_record(r) for r in records if not r.get("hidden")]
        if restored:
            logger.debug("Restored %d messages for context %s", len(restored), context_id)
        return restored

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_message(self, context_id: str, text: str, include_messages: bool = False) -> SendResult:
        validate_text(context_id, "contextId")
        validate_text(text, "message")
        context = self._contexts.get(context_id)
        if context is None:
            raise ContextNotFound(f"Project context not found: {context_id}")
        priming = self._priming.get(context_id)
        if priming is not None:
            await asyncio.shield(priming)

        async with self._locks.get(context_id):
            user_msg = Message(role="user", content=text)
            # The exchange is committed only once the reply exists.
            reply, degraded = await self.replies.reply(context.messages + [user_msg], context.project_data)

            context.append(user_msg)
            assistant_msg = Message(role="assistant", content=reply)
            context.append(assistant_msg)
            context.last_activity = assistant_msg.timestamp
            self._persist(context_id, [user_msg, assistant_msg])

            return SendResult(
                thread_id=context_id,
                assistant_message=assistant_msg,
                conversation=context.summary(),
                degraded=degraded,
                messages=[m.to_dict() for m in context.visible_messages()] if include_messages else None,
            )

    def _persist(self, context_id: str, messages: list[Message]):
        if self.storage is None:
            return
        self._background.spawn(self._write(context_id, messages), name=f"persist:{context_id}")

    async def _write(self, context_id: str, messages: list[Message]):
        for message in messages:
            await asyncio.to_thread(self.storage.create, message.to_record(context_id))

    async def flush(self):
        await self._background.drain()

    # ------------------------------------------------------------------
    # Reads and housekeeping
    # ------------------------------------------------------------------

    def get_context(self, context_id: str) -> ProjectChatContext | None:
        return self._contexts.get(context_id)

    def visible_messages(self, context_id: str) -> list[Message]:
        context = self._contexts.get(context_id)
        if context is None:
            raise ContextNotFound(f"Project context not found: {context_id}")
        return context.visible_messages()

    def get_user_contexts(self, user_id: str) -> list[dict]:
        """The user's contexts, most recently active first."""
        contexts = [
            self._contexts[make_context_id(user_id, p)]
            for p in self._user_projects.get(user_id, ())
            if make_context_id(user_id, p) in self._contexts
        ]
        contexts.sort(key=lambda c: c.last_activity, reverse=True)
        return [c.summary() for c in contexts]

    async def clear(self, context_id: str) -> bool:
        """Drop a context and its stored history. False if it did not exist."""
        context = self._contexts.pop(context_id, None)
        if context is None:
            return False
        self._locks.discard(context_id)
        projects = self._user_projects.get(context.user_id)
        if projects is not None:
            projects.discard(context.project_id)
        if self.storage is not None:
            try:
                await asyncio.to_thread(self.storage.delete_thread, context_id)
            except Exception as e:
                logger.warning("Failed to delete stored history for context %s: %s", context_id, e)
        logger.info("Cleared project context %s", context_id)
        return True

    def get_stats(self) -> dict:
        contexts = list(self._contexts.values())
        total_messages = sum(len(c.messages) for c in contexts)
        cutoff = (datetime.now(timezone.utc) - timedelta(days=ACTIVE_DAYS)).isoformat()
        return {
            "total_contexts": len(contexts),
            "total_users": len({c.user_id for c in contexts}),
            "total_messages": total_messages,
            "average_messages_per_context": total_messages / len(contexts) if contexts else 0,
            "active_contexts": sum(1 for c in contexts if c.last_activity >= cutoff),
            "priming": len(self._priming),
        }
