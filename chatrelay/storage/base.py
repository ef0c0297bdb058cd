"""
MessageStore — abstract base for the chat-message persistence collaborator.

The core only needs two primitives:
  create         — append one message record
  list_by_thread — read back the most recent records for a thread/context

Records are plain dicts:
  {message_id, thread_id, role, content, timestamp, hidden}
Project contexts use their context id as thread_id.
"""

from abc import ABC, abstractmethod


class MessageStore(ABC):
    """Append/read log of chat messages, keyed by thread."""

    @abstractmethod
    def create(self, record: dict) -> None:
        """Append a single message record."""
        ...

    @abstractmethod
    def list_by_thread(self, thread_id: str, limit: int = 100) -> list[dict]:
        """Return up to `limit` most recent records for a thread, oldest first."""
        ...

    def delete_thread(self, thread_id: str) -> int:
        """Remove a thread's records. Stores without deletion keep them."""
        return 0
