"""
Local heuristic provider — the offline fallback.

Keyword matching over the latest user message against a fixed, ordered
topic table. No network, always available, deterministic: the same input
always produces the same reply.
"""

from __future__ import annotations

import logging
import re

from chatrelay.providers.base import ResponseProvider
from chatrelay.storage.models import Message

logger = logging.getLogger(__name__)

# (topic, pattern) in match order. Whole words only, so "this" is not "hi".
TOPICS: list[tuple[str, re.Pattern]] = [
    ("status", re.compile(r"\b(status|progress)\b", re.IGNORECASE)),
    ("deliverables", re.compile(r"\b(deliverables?|deadlines?)\b", re.IGNORECASE)),
    ("budget", re.compile(r"\b(budget|costs?)\b", re.IGNORECASE)),
    ("team", re.compile(r"\b(team|resources?)\b", re.IGNORECASE)),
    ("greeting", re.compile(r"\b(hello|hi|hey|how are you)\b", re.IGNORECASE)),
]


def classify(text: str) -> str:
    """Return the topic for a message, or "unknown"."""
    for topic, pattern in TOPICS:
        if pattern.search(text or ""):
            return topic
    return "unknown"


def as_list(value) -> list:
    """Project list fields arrive untyped: None is empty, a scalar is one item."""
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _budget(project: dict) -> str:
    amount = project.get("budget_amount")
    if not amount:
        return "Not specified"
    return f"{amount} {project.get('budget_currency') or 'USD'}"


def _deliverable_name(item) -> str:
    if isinstance(item, dict):
        return str(item.get("name") or item.get("title") or "Untitled")
    return str(item)


def _status_reply(text: str, project: dict) -> str:
    if not project:
        return (
            "I can't reach the live assistant right now, so I don't have current status data.\n\n"
            "• Ask again shortly for a full status update\n"
            "• Or tell me which item you want to check and I'll note it\n\n"
            "What would you like to track?"
        )
    name = project.get("name") or "this project"
    deliverables = as_list(project.get("deliverables"))
    if deliverables:
        listed = ", ".join(_deliverable_name(d) for d in deliverables)
        deliverable_line = f"**Deliverables** ({len(deliverables)}): {listed}"
    else:
        deliverable_line = "**Deliverables**: None defined yet"
    return (
        f"Based on the current information for \"{name}\":\n\n"
        f"**Project Status**: {project.get('status') or 'Status not defined'}\n"
        f"**Timeline**: {project.get('start_date') or 'TBD'} to {project.get('end_date') or 'TBD'}\n"
        f"**Budget**: {_budget(project)}\n\n"
        f"{deliverable_line}\n\n"
        "What specific aspect of the project would you like to explore further?"
    )


def _deliverables_reply(text: str, project: dict) -> str:
    name = project.get("name") or "this project"
    deliverables = as_list(project.get("deliverables"))
    if not deliverables:
        body = "No deliverables have been defined yet. Would you like help creating some?"
    else:
        lines = []
        for i, item in enumerate(deliverables, 1):
            info = item if isinstance(item, dict) else {}
            lines.append(
                f"{i}. **{_deliverable_name(item)}**\n"
                f"   - Type: {info.get('type') or 'Not specified'}\n"
                f"   - Status: {info.get('status') or 'Unknown'}\n"
                f"   - Due: {info.get('due_date') or 'Not set'}"
            )
        body = "\n\n".join(lines)
    return (
        f"For \"{name}\", here's what I can tell you about deliverables:\n\n"
        f"{body}\n\n"
        "How can I assist you with the deliverables planning?"
    )


def _budget_reply(text: str, project: dict) -> str:
    name = project.get("name") or "this project"
    follow_up = (
        "I can help you analyze budget allocation, track expenses, or plan resource distribution."
        if project.get("budget_amount")
        else "Would you like help setting up a budget framework?"
    )
    return (
        f"Regarding the budget for \"{name}\":\n\n"
        "**Budget Information**:\n"
        f"- Amount: {_budget(project)}\n"
        f"- Type: {project.get('budget_type') or 'Not specified'}\n"
        f"- Client: {project.get('client_name') or 'Not specified'}\n\n"
        f"{follow_up}"
    )


def _team_reply(text: str, project: dict) -> str:
    name = project.get("name") or "this project"
    members = as_list(project.get("team_members"))
    if members:
        member_line = "- Team Members: " + ", ".join(
            str(m.get("name", m)) if isinstance(m, dict) else str(m) for m in members
        )
    else:
        member_line = "- Additional team members: Not specified"
    return (
        f"For team and resources on \"{name}\":\n\n"
        "**Project Team**:\n"
        f"- Internal Owner: {project.get('internal_owner') or 'Not assigned'}\n"
        f"- Client Contact: {project.get('client_owner') or 'Not specified'}\n"
        f"{member_line}\n\n"
        "How can I help you with team planning or resource allocation?"
    )


def _greeting_reply(text: str, project: dict) -> str:
    scope = f" for \"{project['name']}\"" if project.get("name") else ""
    return (
        f"Hello! I'm your assistant{scope}. I'm running in offline mode right now, "
        "but I can still help with:\n\n"
        "• **Status**: where things stand and what's next\n"
        "• **Deliverables**: what is due and when\n"
        "• **Budget**: amounts, allocation and tracking\n"
        "• **Team**: owners, contacts and resourcing\n\n"
        "How can I help you today?"
    )


def _unknown_reply(text: str, project: dict) -> str:
    scope = f" with \"{project['name']}\"" if project.get("name") else ""
    return (
        f"I understand you're asking about \"{text}\". I'm here to help{scope}.\n\n"
        "While I'm in offline mode I can still assist with:\n\n"
        "• Planning and strategy\n"
        "• Deliverable creation and management\n"
        "• Timeline and milestone planning\n"
        "• Budget and resource analysis\n\n"
        "Could you tell me a bit more about what you need?"
    )


TEMPLATES = {
    "status": _status_reply,
    "deliverables": _deliverables_reply,
    "budget": _budget_reply,
    "team": _team_reply,
    "greeting": _greeting_reply,
    "unknown": _unknown_reply,
}


class LocalHeuristicProvider(ResponseProvider):
    """Keyword-pattern responder. Always available, never raises."""

    name = "heuristic"

    def __init__(self, config: dict | None = None):
        super().__init__(config)
        self.is_initialized = True

    async def initialize(self) -> bool:
        self.is_initialized = True
        return True

    def is_available(self) -> bool:
        return True

    async def generate(self, messages: list[Message], project_data: dict | None = None) -> str:
        return self.respond(_latest_user_text(messages), project_data)

    def respond(self, text: str, project_data: dict | None = None) -> str:
        project = project_data if isinstance(project_data, dict) else {}
        topic = classify(text)
        logger.debug("Heuristic reply topic=%s", topic)
        try:
            return TEMPLATES[topic](text, project)
        except Exception as e:
            logger.warning("Heuristic '%s' template failed on project data: %s", topic, e)
            return _unknown_reply(text, {})

    def get_provider_info(self) -> dict:
        return {"name": "Local heuristic", "description": "Offline keyword responder"}

    def get_capabilities(self) -> dict:
        return {
            "supports_chat": True,
            "supports_streaming": False,
            "topics": [t for t, _ in TOPICS] + ["unknown"],
        }

    def reset(self):
        self.last_error = None


def _latest_user_text(messages: list[Message]) -> str:
    for m in reversed(messages or []):
        if m.role == "user":
            return m.content
    return ""
