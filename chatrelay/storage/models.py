"""
Data models for conversation state.
These define the shape of data flowing between the providers, the
conversation/context managers and the storage collaborator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

ROLES = ("user", "assistant", "system", "narrative")


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_message_id() -> str:
    return f"msg_{uuid4().hex}"


def make_context_id(user_id: str, project_id: str) -> str:
    """Context id for a (user, project) pair. Pure: same pair, same id."""
    return f"{user_id}-{project_id}"


@dataclass(frozen=True)
class Message:
    """A single message in a conversation. Immutable once appended."""
    role: str
    content: str
    id: str = field(default_factory=new_message_id)
    timestamp: str = field(default_factory=utcnow)
    hidden: bool = False
    kind: str = "text"   # "text", "context-initialization", "welcome", "greeting"

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role!r}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "hidden": self.hidden,
        }

    def to_record(self, thread_id: str) -> dict:
        """Shape handed to the storage collaborator's create()."""
        return {
            "message_id": self.id,
            "thread_id": thread_id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "hidden": self.hidden,
        }

    @classmethod
    def from_record(cls, record: dict) -> "Message":
        return cls(
            id=record["message_id"],
            role=record["role"],
            content=record["content"],
            timestamp=record["timestamp"],
            hidden=bool(record.get("hidden", False)),
        )


@dataclass
class Conversation:
    """A thread: ordered messages sharing a thread_id."""
    thread_id: str
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow)
    last_activity: str = field(default_factory=utcnow)
    metadata: dict = field(default_factory=lambda: {
        "title": "New Conversation",
        "message_count": 0,
        "tags": [],
    })

    def append(self, message: Message):
        self.messages.append(message)
        self.metadata["message_count"] = len(self.messages)

    def visible_messages(self) -> list[Message]:
        return [m for m in self.messages if not m.hidden]

    def summary(self) -> dict:
        """Caller-facing summary, no message replay."""
        return {
            "threadId": self.thread_id,
            "messageCount": len(self.messages),
            "lastActivity": self.last_activity,
            "createdAt": self.created_at,
            "metadata": dict(self.metadata),
        }


@dataclass
class ProjectChatContext:
    """Isolated conversation for one (user, project) pair."""
    user_id: str
    project_id: str
    project_data: dict = field(default_factory=dict)
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow)
    last_activity: str = field(default_factory=utcnow)
    metadata: dict = field(default_factory=dict)

    @property
    def context_id(self) -> str:
        return make_context_id(self.user_id, self.project_id)

    def append(self, message: Message):
        self.messages.append(message)
        self.metadata["message_count"] = len(self.messages)

    def visible_messages(self) -> list[Message]:
        return [m for m in self.messages if not m.hidden]

    def summary(self) -> dict:
        return {
            "contextId": self.context_id,
            "projectId": self.project_id,
            "projectName": self.project_data.get("name"),
            "messageCount": len(self.messages),
            "lastActivity": self.last_activity,
            "createdAt": self.created_at,
        }
