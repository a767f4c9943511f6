"""Conversation state: the active conversation, an LRU cache and the metadata index."""

import asyncio
import json
import time
from collections import OrderedDict
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from parley.core.orchestrator import CompletionOrchestrator, CompletionProgress, outbound_history
from parley.core.provider_manager import ProviderManager
from parley.providers.base import BaseProvider
from parley.session.models import (
    Conversation,
    ConversationMetadata,
    ExportSnapshot,
    Message,
    Provider,
)
from parley.storage.gateway import PersistenceGateway, conversation_key
from parley.utils.errors import (
    ConversationBusyError,
    ConversationNotFoundError,
    ParleyError,
    PersistenceError,
    ValidationError,
)
from parley.utils.logging import get_logger

logger = get_logger(__name__)

TITLE_PROMPT = (
    "What would be a short and relevant title for this chat? You must strictly answer "
    "with only the title, no other text is allowed. Do not include any quotation marks "
    "in your response."
)
INTERRUPTED = "Response was interrupted"
CANCELLED = "Request cancelled"

Listener = Callable[[], None]


@dataclass(eq=False)
class _InFlight:
    """Bookkeeping for one streaming reply. Identity is the staleness ticket."""

    placeholder_id: str
    task: Optional["asyncio.Task[Any]"] = None
    abandoned: bool = False


def clean_title(raw: str) -> str:
    return raw.strip().replace('"', "").replace("'", "").strip()


class ConversationStore:
    """Owns every conversation mutation and drives persistence and notifications.

    Assumes a single writer on one event loop. At most one reply streams per
    conversation; switching away from, deleting, importing over or clearing a
    conversation abandons its stream, after which the stream mutates nothing.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        provider_manager: ProviderManager,
        orchestrator: Optional[CompletionOrchestrator] = None,
        cache_size: int = 5,
        max_history: int = 50,
        snapshot_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._gateway = gateway
        self._providers = provider_manager
        self._orchestrator = orchestrator or CompletionOrchestrator()
        self.cache_size = max(1, cache_size)
        self.max_history = max_history
        self.snapshot_interval = snapshot_interval
        self._clock = clock

        self._index: List[ConversationMetadata] = []
        self._cache: "OrderedDict[str, Conversation]" = OrderedDict()
        self._active_id: Optional[str] = None
        self._inflight: Dict[str, _InFlight] = {}
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------ reads

    @property
    def metadata_index(self) -> List[ConversationMetadata]:
        return list(self._index)

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self._active_id

    @property
    def active_conversation(self) -> Optional[Conversation]:
        if self._active_id is None:
            return None
        return self._cache.get(self._active_id)

    @property
    def is_busy(self) -> bool:
        return self._active_id is not None and self._active_id in self._inflight

    def is_streaming(self, conversation_id: str) -> bool:
        return conversation_id in self._inflight

    def cached_ids(self) -> List[str]:
        """Cached conversation ids, least recently used first"""
        return list(self._cache)

    def get_conversation(self, conversation_id: str) -> Conversation:
        return self._lookup(conversation_id)

    # ---------------------------------------------------------- notifications

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a zero-argument listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self):
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Store listener failed")

    # ---------------------------------------------------------------- helpers

    @staticmethod
    def _sorted(entries: List[ConversationMetadata]) -> List[ConversationMetadata]:
        return sorted(entries, key=lambda e: e.updated_at, reverse=True)

    def _index_ids(self) -> List[str]:
        return [entry.id for entry in self._index]

    def _with_entry(self, conversation: Conversation) -> List[ConversationMetadata]:
        entry = ConversationMetadata.from_conversation(conversation)
        others = [e for e in self._index if e.id != conversation.id]
        return self._sorted([entry, *others])

    def _split_history(
        self, entries: List[ConversationMetadata]
    ) -> Tuple[List[ConversationMetadata], List[ConversationMetadata]]:
        if not self.max_history or len(entries) <= self.max_history:
            return entries, []
        return entries[: self.max_history], entries[self.max_history :]

    def _lookup(self, conversation_id: str) -> Conversation:
        """Cached copy if present, else the persisted one. Does not touch the cache."""
        cached = self._cache.get(conversation_id)
        if cached is not None:
            return cached
        if conversation_id not in self._index_ids():
            raise ConversationNotFoundError(conversation_id)
        conversation = self._gateway.get_conversation(conversation_id)
        if conversation is None:
            logger.warning(f"Index entry {conversation_id} has no stored conversation")
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def _remember(self, conversation: Conversation):
        self._cache[conversation.id] = conversation
        self._cache.move_to_end(conversation.id)
        for cached_id in list(self._cache):
            if len(self._cache) <= self.cache_size:
                break
            if cached_id == self._active_id or cached_id in self._inflight:
                continue
            del self._cache[cached_id]
            logger.debug(f"Evicted conversation {cached_id} from cache")

    def _store(self, conversation: Conversation, entries: List[ConversationMetadata]):
        self._gateway.put_conversation(conversation)
        self._gateway.put_metadata_index(entries)

    def _snapshot(self, conversation: Conversation):
        """Best-effort save; the in-memory copy stays authoritative."""
        try:
            self._store(conversation, self._index)
        except PersistenceError as e:
            logger.warning(f"Could not save progress for {conversation.id}: {e}")

    def _settle_interrupted(self, conversation: Conversation) -> Conversation:
        if conversation.id in self._inflight:
            return conversation
        if not any(m.is_loading for m in conversation.messages):
            return conversation
        messages = tuple(
            m.model_copy(update={"is_loading": False, "error": m.error or INTERRUPTED})
            if m.is_loading
            else m
            for m in conversation.messages
        )
        logger.info(f"Settled interrupted reply in conversation {conversation.id}")
        return conversation.model_copy(update={"messages": messages})

    def _abandon(self, conversation_id: Optional[str]):
        if conversation_id is None:
            return
        flight = self._inflight.pop(conversation_id, None)
        if flight is None:
            return
        flight.abandoned = True
        if flight.task is not None:
            flight.task.cancel()
        logger.info(f"Abandoned streaming reply for conversation {conversation_id}")

    def _abandon_all(self):
        for conversation_id in list(self._inflight):
            self._abandon(conversation_id)

    def _is_current(self, conversation_id: str, flight: _InFlight) -> bool:
        return self._inflight.get(conversation_id) is flight

    def _activate(self, conversation: Conversation):
        """Make ``conversation`` active in memory, repairing stale loading messages."""
        settled = self._settle_interrupted(conversation)
        self._active_id = settled.id
        self._remember(settled)
        if settled is not conversation:
            self._index = self._with_entry(settled)
            self._snapshot(settled)

    # ------------------------------------------------------------- lifecycle

    def load(self):
        """Read the persisted index and restore the active conversation."""
        self._abandon_all()
        entries = self._sorted(self._gateway.get_metadata_index() or [])
        ids = [entry.id for entry in entries]
        active_id = self._gateway.get_active_conversation_id()
        if active_id not in ids:
            active_id = ids[0] if ids else None

        self._index = entries
        self._cache.clear()
        self._active_id = None
        if active_id is not None:
            try:
                self._activate(self._lookup(active_id))
            except ConversationNotFoundError:
                logger.warning(f"Could not restore active conversation {active_id}")
        logger.debug(f"Loaded {len(entries)} conversations")
        self._notify()

    async def close(self):
        """Cancel streaming replies and drop listeners."""
        tasks = [f.task for f in self._inflight.values() if f.task is not None]
        self._abandon_all()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._listeners.clear()

    # ---------------------------------------------------------- conversations

    def create_conversation(self, provider: Union[Provider, str], model: str) -> str:
        provider = Provider(provider)
        title = f"Chat with {self._providers.display_name(provider, model)}"
        conversation = Conversation(title=title, provider=provider, model=model)
        entries, dropped = self._split_history(self._with_entry(conversation))

        self._gateway.put_conversation(conversation)
        try:
            self._gateway.put_metadata_index(entries)
        except PersistenceError:
            self._discard_blob(conversation.id)
            raise
        self._gateway.put_active_conversation_id(conversation.id)
        for entry in dropped:
            self._discard_blob(entry.id)

        self._abandon(self._active_id)
        for entry in dropped:
            self._abandon(entry.id)
            self._cache.pop(entry.id, None)
        self._index = entries
        self._active_id = conversation.id
        self._remember(conversation)
        logger.info(f"Created conversation {conversation.id} ({provider.value}/{model})")
        self._notify()
        return conversation.id

    def _discard_blob(self, conversation_id: str):
        try:
            self._gateway.delete_conversation(conversation_id)
        except PersistenceError as e:
            logger.error(f"Could not remove stored conversation {conversation_id}: {e}")

    def delete_conversation(self, conversation_id: str):
        if conversation_id not in self._index_ids():
            raise ConversationNotFoundError(conversation_id)
        remaining = [e for e in self._index if e.id != conversation_id]

        next_active: Optional[Conversation] = None
        changes_active = self._active_id == conversation_id
        if changes_active and remaining:
            next_active = self._lookup(remaining[0].id)

        self._gateway.put_metadata_index(remaining)
        self._gateway.delete_conversation(conversation_id)
        if changes_active:
            self._gateway.put_active_conversation_id(next_active.id if next_active else None)

        self._abandon(conversation_id)
        self._cache.pop(conversation_id, None)
        self._index = remaining
        if changes_active:
            self._active_id = None
            if next_active is not None:
                self._activate(next_active)
        logger.info(f"Deleted conversation {conversation_id}")
        self._notify()

    def set_active_conversation(self, conversation_id: str):
        if conversation_id == self._active_id:
            return
        conversation = self._lookup(conversation_id)
        self._gateway.put_active_conversation_id(conversation_id)

        self._abandon(self._active_id)
        self._activate(conversation)
        logger.debug(f"Activated conversation {conversation_id}")
        self._notify()

    def _update(self, conversation_id: str, **changes: Any):
        current = self._lookup(conversation_id)
        updated = current.model_copy(update={**changes, "updated_at": datetime.now()})
        entries = self._with_entry(updated)
        self._store(updated, entries)

        self._index = entries
        if conversation_id in self._cache:
            self._cache[conversation_id] = updated
        self._notify()

    def update_title(self, conversation_id: str, title: str):
        title = title.strip()
        if not title:
            raise ValidationError("Title must not be empty")
        self._update(conversation_id, title=title)

    def update_provider(self, conversation_id: str, provider: Union[Provider, str], model: str):
        """Switch provider/model for future replies; earlier messages keep theirs."""
        self._update(conversation_id, provider=Provider(provider), model=model)

    # -------------------------------------------------------------- messaging

    async def send_message(self, text: str) -> Optional[Message]:
        """
        Send ``text`` on the active conversation and stream the reply into it.

        Returns the final assistant message, or None if the stream was
        abandoned. A failed completion is not raised; it ends up in the
        message's ``error`` field.

        Raises:
            ValidationError: ``text`` is blank.
            ConversationNotFoundError: there is no active conversation.
            ConversationBusyError: a reply is already streaming here.
            ConfigurationError: the provider is disabled or has no API key.
            PersistenceError: the finished conversation could not be saved.
        """
        if not text or not text.strip():
            raise ValidationError("Message is empty")
        conversation_id = self._active_id
        if conversation_id is None:
            raise ConversationNotFoundError(None)
        if conversation_id in self._inflight:
            raise ConversationBusyError(conversation_id)

        conversation = self._cache[conversation_id]
        adapter = self._providers.create(conversation.provider)
        try:
            adapter.require_api_key()
        except ParleyError:
            await self._release(adapter)
            raise

        placeholder = Message(role="assistant", is_loading=True)
        conversation = conversation.append_messages(Message(role="user", content=text), placeholder)
        flight = _InFlight(placeholder_id=placeholder.id)
        self._inflight[conversation_id] = flight
        self._cache[conversation_id] = conversation
        self._index = self._with_entry(conversation)
        self._notify()
        self._snapshot(conversation)

        flight.task = asyncio.create_task(self._stream_reply(conversation, flight, adapter))
        try:
            final = await flight.task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if flight.abandoned and not (current and current.cancelling()):
                return None
            raise

        if final is None:
            return None
        reply = final.find_message(placeholder.id)
        if reply.error is None and len(final.messages) == 2 and conversation_id in self._index_ids():
            await self._generate_title(final)
        return reply

    def _apply_progress(
        self, conversation_id: str, placeholder_id: str, progress: CompletionProgress
    ) -> Conversation:
        conversation = self._cache[conversation_id]
        message = conversation.find_message(placeholder_id)
        updated = message.model_copy(
            update={
                "content": progress.content,
                "is_loading": progress.is_loading,
                "error": progress.error,
                "token_usage": progress.usage,
            }
        )
        conversation = conversation.replace_message(updated)
        self._cache[conversation_id] = conversation
        self._index = self._with_entry(conversation)
        self._notify()
        return conversation

    async def _stream_reply(
        self, conversation: Conversation, flight: _InFlight, adapter: BaseProvider
    ) -> Optional[Conversation]:
        conversation_id = conversation.id
        placeholder_id = flight.placeholder_id
        last_snapshot = self._clock()
        finished: Optional[Conversation] = None

        try:
            progress_stream = self._orchestrator.stream_completion(
                adapter, conversation.messages, conversation.model, placeholder_id
            )
            async with aclosing(progress_stream):
                async for progress in progress_stream:
                    if not self._is_current(conversation_id, flight):
                        return None
                    if progress.is_terminal:
                        finished = self._finish(conversation_id, placeholder_id, progress)
                        break
                    current = self._apply_progress(conversation_id, placeholder_id, progress)
                    if self._clock() - last_snapshot >= self.snapshot_interval:
                        last_snapshot = self._clock()
                        self._snapshot(current)
        except asyncio.CancelledError:
            if self._is_current(conversation_id, flight):
                del self._inflight[conversation_id]
                partial = self._cache[conversation_id].find_message(placeholder_id)
                stopped = self._apply_progress(
                    conversation_id,
                    placeholder_id,
                    CompletionProgress(content=partial.content, is_loading=False, error=CANCELLED),
                )
                self._snapshot(stopped)
            raise
        finally:
            await self._release(adapter)

        if finished is None and self._is_current(conversation_id, flight):
            partial = self._cache[conversation_id].find_message(placeholder_id)
            finished = self._finish(
                conversation_id,
                placeholder_id,
                CompletionProgress(
                    content=partial.content, is_loading=False, error="Response ended unexpectedly"
                ),
            )
        return finished

    def _finish(
        self, conversation_id: str, placeholder_id: str, progress: CompletionProgress
    ) -> Conversation:
        """Apply the terminal event and save it before the next suspension point.

        Commands issued while the adapter closes then act on the saved state.
        """
        del self._inflight[conversation_id]
        finished = self._apply_progress(conversation_id, placeholder_id, progress)
        self._store(finished, self._index)
        return finished

    @staticmethod
    async def _release(adapter: BaseProvider):
        try:
            await adapter.aclose()
        except Exception as e:
            logger.debug(f"Closing {adapter.name} client failed: {e}")

    async def _generate_title(self, conversation: Conversation):
        """Ask the conversation's own model for a title; failures keep the default."""
        adapter = self._providers.create(conversation.provider)
        request = [*outbound_history(conversation.messages, None), Message(role="user", content=TITLE_PROMPT)]
        try:
            raw, _ = await adapter.get_completion(request, conversation.model)
            title = clean_title(raw)
            if title:
                self.update_title(conversation.id, title)
                logger.debug(f"Titled conversation {conversation.id}: {title}")
        except Exception as e:
            logger.warning(f"Title generation failed for {conversation.id}: {e}")
        finally:
            await self._release(adapter)

    # ---------------------------------------------------------- import/export

    def export_all(self) -> ExportSnapshot:
        conversations = []
        for entry in self._index:
            try:
                conversations.append(self._settle_interrupted(self._lookup(entry.id)))
            except ConversationNotFoundError as e:
                raise PersistenceError(f"Cannot export: {e}") from e
        return ExportSnapshot(
            conversations=conversations, active_conversation_id=self._active_id
        )

    def export_json(self) -> str:
        return self.export_all().model_dump_json(by_alias=True, indent=2)

    @staticmethod
    def _parse_snapshot(
        payload: Union[str, bytes, Mapping[str, Any], ExportSnapshot]
    ) -> ExportSnapshot:
        if isinstance(payload, ExportSnapshot):
            snapshot = payload
        else:
            snapshot = ConversationStore._validate_payload(payload)

        seen = set()
        for conversation in snapshot.conversations:
            conversation_key(conversation.id)
            if conversation.id in seen:
                raise ValidationError(f"Duplicate conversation id in import: {conversation.id}")
            seen.add(conversation.id)
        return snapshot

    @staticmethod
    def _validate_payload(payload: Union[str, bytes, Mapping[str, Any]]) -> ExportSnapshot:
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError as e:
                raise ValidationError(f"Import payload is not valid JSON: {e}") from e
        if not isinstance(payload, Mapping) or not isinstance(payload.get("chats"), list):
            raise ValidationError("Import payload must be an object with a 'chats' array")
        try:
            return ExportSnapshot.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(f"Import payload is malformed: {e}") from e

    def import_all(self, payload: Union[str, bytes, Mapping[str, Any], ExportSnapshot]):
        """Replace every conversation with the snapshot's.

        The payload is fully validated before anything is removed.
        """
        snapshot = self._parse_snapshot(payload)
        conversations = {c.id: c for c in snapshot.conversations}
        entries, dropped = self._split_history(
            self._sorted([ConversationMetadata.from_conversation(c) for c in conversations.values()])
        )
        kept_ids = {e.id for e in entries}
        active_id = snapshot.active_conversation_id
        if active_id not in kept_ids:
            active_id = next((c.id for c in snapshot.conversations if c.id in kept_ids), None)
        if dropped:
            logger.info(f"Import keeps the {len(entries)} most recent conversations")

        self._abandon_all()
        previous_ids = self._index_ids()
        try:
            self._gateway.put_metadata_index([])
            self._gateway.put_active_conversation_id(None)
            for conversation_id in previous_ids:
                self._gateway.delete_conversation(conversation_id)
            for entry in entries:
                self._gateway.put_conversation(conversations[entry.id])
            self._gateway.put_metadata_index(entries)
            self._gateway.put_active_conversation_id(active_id)
        except PersistenceError:
            logger.error("Import failed part-way; reloading stored state")
            self.load()
            raise

        self._index = entries
        self._cache.clear()
        self._active_id = None
        if active_id is not None:
            self._activate(conversations[active_id])
        logger.info(f"Imported {len(entries)} conversations")
        self._notify()

    def clear_all(self):
        self._abandon_all()
        previous_ids = self._index_ids()
        self._gateway.put_metadata_index([])
        self._gateway.put_active_conversation_id(None)
        for conversation_id in previous_ids:
            self._discard_blob(conversation_id)

        self._index = []
        self._cache.clear()
        self._active_id = None
        logger.info(f"Cleared {len(previous_ids)} conversations")
        self._notify()
