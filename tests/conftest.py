"""
Shared pytest fixtures and fakes for Parley tests.

The fakes stand in for the two collaborators the store talks to: the
persistence gateway (kept in memory) and the provider adapters (scripted
deltas, usage and errors). SDK-level fakes mimic decoded stream frames,
which expose ``model_dump()`` like the vendor SDK models do.
"""

import asyncio
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from parley.core.orchestrator import CompletionOrchestrator
from parley.core.store import ConversationStore
from parley.session.models import Conversation, ConversationMetadata, TokenUsage
from parley.storage.gateway import PersistenceGateway
from parley.utils.errors import PersistenceError

# =============================================================================
# Persistence
# =============================================================================


class InMemoryGateway(PersistenceGateway):
    """Dict-backed gateway. Operations named in ``fail`` raise PersistenceError."""

    def __init__(self):
        self.index: Optional[List[ConversationMetadata]] = None
        self.conversations: Dict[str, Conversation] = {}
        self.active_id: Optional[str] = None
        self.fail: set = set()
        self.calls: List[str] = []

    def _check(self, operation: str):
        self.calls.append(operation)
        if operation in self.fail:
            raise PersistenceError(f"{operation} failed")

    def get_metadata_index(self):
        self._check("get_metadata_index")
        return None if self.index is None else list(self.index)

    def put_metadata_index(self, entries):
        self._check("put_metadata_index")
        self.index = list(entries)

    def get_conversation(self, conversation_id):
        self._check("get_conversation")
        return self.conversations.get(conversation_id)

    def put_conversation(self, conversation):
        self._check("put_conversation")
        self.conversations[conversation.id] = conversation

    def delete_conversation(self, conversation_id):
        self._check("delete_conversation")
        self.conversations.pop(conversation_id, None)

    def get_active_conversation_id(self):
        self._check("get_active_conversation_id")
        return self.active_id

    def put_active_conversation_id(self, conversation_id):
        self._check("put_active_conversation_id")
        self.active_id = conversation_id


# =============================================================================
# Providers
# =============================================================================


class FakeProvider:
    """Scripted adapter: yields ``deltas``, then raises ``error`` or records ``usage``.

    With ``gate`` set, the stream pauses after the first delta until the
    event is set, which lets tests act while a reply is in flight. With
    ``close_gate`` set, ``aclose`` waits for that event the way a real
    client suspends while shutting down its connections.
    """

    name = "fake"

    def __init__(
        self,
        deltas=(),
        usage: Optional[TokenUsage] = None,
        error: Optional[Exception] = None,
        title: str = "Friendly Greeting",
        title_error: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
        close_gate: Optional[asyncio.Event] = None,
    ):
        self.deltas = list(deltas)
        self.usage = usage
        self.error = error
        self.title = title
        self.title_error = title_error
        self.gate = gate
        self.close_gate = close_gate
        self.stream_calls: List[Any] = []
        self.completion_calls: List[Any] = []
        self.stream_closed = False
        self.closing = False
        self.closed = False
        self._last_usage: Optional[TokenUsage] = None

    def require_api_key(self) -> str:
        return "test-key"

    async def stream_completion(self, messages, model):
        self.stream_calls.append((list(messages), model))
        self._last_usage = None
        try:
            for position, delta in enumerate(self.deltas):
                yield delta
                if self.gate is not None and position == 0:
                    await self.gate.wait()
            if self.error is not None:
                raise self.error
            self._last_usage = self.usage
        finally:
            self.stream_closed = True

    async def get_completion(self, messages, model):
        self.completion_calls.append((list(messages), model))
        if self.title_error is not None:
            raise self.title_error
        return self.title, None

    def get_last_stream_usage(self):
        return self._last_usage

    async def aclose(self):
        self.closing = True
        if self.close_gate is not None:
            await self.close_gate.wait()
        self.closed = True


class FakeProviderManager:
    """Hands out queued FakeProviders, then fresh default ones."""

    DISPLAY_NAMES = {"gpt-4o-mini": "GPT-4o Mini", "claude-3-haiku": "Claude 3 Haiku"}

    def __init__(self):
        self.queue: List[FakeProvider] = []
        self.created: List[FakeProvider] = []

    def create(self, provider):
        adapter = self.queue.pop(0) if self.queue else FakeProvider(deltas=["Hi"])
        self.created.append(adapter)
        return adapter

    def display_name(self, provider, model):
        return self.DISPLAY_NAMES.get(model, model)


async def wait_until(predicate, attempts: int = 200):
    """Yield to the event loop until ``predicate()`` holds."""
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


# =============================================================================
# SDK stream fakes
# =============================================================================


class FakeFrame:
    """Decoded SDK frame exposing model_dump()."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data

    def model_dump(self, **kwargs):
        return self._data


class FakeSDKStream:
    """Async-iterable SDK stream with an awaitable close()."""

    def __init__(self, frames, error: Optional[Exception] = None):
        self._frames = [f if isinstance(f, FakeFrame) else FakeFrame(f) for f in frames]
        self._error = error
        self.close = AsyncMock()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self._frames:
            yield frame
        if self._error is not None:
            raise self._error


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_credentials(monkeypatch):
    """Keep tests away from the real keyring and any exported API keys."""
    monkeypatch.setattr("parley.config.config_manager.keyring.get_password", lambda *a: None)
    for name in ("OPENAI", "ANTHROPIC", "GEMINI"):
        monkeypatch.delenv(f"{name}_API_KEY", raising=False)
        monkeypatch.delenv(f"{name}_API_ENDPOINT", raising=False)


@pytest.fixture
def gateway():
    return InMemoryGateway()


@pytest.fixture
def provider_manager():
    return FakeProviderManager()


@pytest.fixture
def store(gateway, provider_manager):
    store = ConversationStore(
        gateway,
        provider_manager,
        CompletionOrchestrator(throttle_ms=0),
        cache_size=5,
        max_history=50,
        snapshot_interval=0,
    )
    store.load()
    return store
