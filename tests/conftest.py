"""Shared fixtures."""

import pytest

from chatrelay.conversation import ConversationStore, ReplyGenerator
from chatrelay.contexts import ProjectContextRegistry
from chatrelay.errors import GenerationError
from chatrelay.providers.base import ResponseProvider
from chatrelay.storage.sqlite_store import SQLiteStore


class ScriptedProvider(ResponseProvider):
    """Provider that replies from a script, or raises, without any network."""

    name = "scripted"

    def __init__(self, replies=None, fail=False, available=True):
        super().__init__({})
        self.replies = list(replies or ["scripted reply"])
        self.fail = fail
        self.available = available
        self.calls = []

    async def initialize(self) -> bool:
        self.is_initialized = self.available
        return self.available

    def is_available(self) -> bool:
        return self.available

    async def generate(self, messages):
        self.calls.append(list(messages))
        if self.fail:
            self._record_error("backend exploded", "generation")
            raise GenerationError("backend exploded")
        return self.replies[min(len(self.calls), len(self.replies)) - 1]


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite store per test."""
    return SQLiteStore(str(tmp_path / "test.db"))


@pytest.fixture
def scripted():
    return ScriptedProvider()


@pytest.fixture
def conversations(scripted, store):
    return ConversationStore(ReplyGenerator(provider=scripted), storage=store)


@pytest.fixture
def registry(scripted, store):
    return ProjectContextRegistry(ReplyGenerator(provider=scripted), storage=store)


@pytest.fixture
def make_provider():
    """The ScriptedProvider class, for tests that need more than one."""
    return ScriptedProvider
