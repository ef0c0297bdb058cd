"""
Base provider abstraction.
All response providers implement this interface so the conversation
managers can treat them uniformly and swap them at runtime.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field, asdict

from chatrelay.storage.models import Message, utcnow

logger = logging.getLogger(__name__)

# ErrorInfo types that leave a provider unavailable until reset()/initialize().
# A failed generation is recorded but does not take the provider offline.
STANDING_ERROR_TYPES = ("validation", "initialization", "connection_test")


@dataclass
class ErrorInfo:
    """Structured record of the last provider failure."""
    message: str
    type: str
    user_message: str = ""
    timestamp: str = field(default_factory=utcnow)

    @property
    def standing(self) -> bool:
        return self.type in STANDING_ERROR_TYPES

    def to_dict(self) -> dict:
        return asdict(self)


class ResponseProvider(abc.ABC):
    """
    Abstract base for response providers.
    A provider turns an ordered message history into one reply string.
    """

    name = "provider"

    def __init__(self, config: dict | None = None):
        self.config = config or {}
        self.is_initialized = False
        self.last_error: ErrorInfo | None = None

    @abc.abstractmethod
    async def initialize(self) -> bool:
        """Prepare the provider. Returns False (never raises) when it cannot serve."""
        ...

    def is_available(self) -> bool:
        """True only if initialized and there is no standing error."""
        return self.is_initialized and not (self.last_error and self.last_error.standing)

    @abc.abstractmethod
    async def generate(self, messages: list[Message]) -> str:
        """
        Generate a reply for the message history.
        Raises ProviderUnavailable if not available, GenerationError on faults.
        """
        ...

    def get_last_error(self) -> ErrorInfo | None:
        return self.last_error

    def _record_error(self, message: str, type: str, user_message: str = "") -> ErrorInfo:
        self.last_error = ErrorInfo(message=message, type=type, user_message=user_message)
        return self.last_error

    def validate_config(self) -> bool:
        return True

    def get_provider_info(self) -> dict:
        return {"name": self.name}

    def get_capabilities(self) -> dict:
        return {"supports_chat": True, "supports_streaming": False}

    def reset(self):
        """Forget initialization state and errors (operator re-initialize)."""
        self.is_initialized = False
        self.last_error = None

    def get_status(self) -> dict:
        return {
            "provider": self.name,
            "is_initialized": self.is_initialized,
            "is_available": self.is_available(),
            "has_error": self.last_error is not None,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} available={self.is_available()}>"
