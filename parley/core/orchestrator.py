import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, List, Optional, Sequence

from parley.providers.base import BaseProvider
from parley.session.models import Message, TokenUsage
from parley.utils.errors import ParleyError
from parley.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CompletionProgress:
    """One progress report for a streaming completion."""

    content: str
    is_loading: bool
    usage: Optional[TokenUsage] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return not self.is_loading


def outbound_history(messages: Sequence[Message], placeholder_id: Optional[str]) -> List[Message]:
    """Messages worth sending: no placeholder, nothing still loading, no empty failures."""
    return [
        m
        for m in messages
        if m.id != placeholder_id and not m.is_loading and not (m.error and not m.content)
    ]


class CompletionOrchestrator:
    """Drives one adapter stream to exactly one terminal progress event."""

    def __init__(self, throttle_ms: int = 50, clock: Callable[[], float] = time.monotonic):
        self.throttle = throttle_ms / 1000
        self._clock = clock

    async def stream_completion(
        self,
        adapter: BaseProvider,
        messages: Sequence[Message],
        model: str,
        placeholder_id: Optional[str] = None,
    ) -> AsyncIterator[CompletionProgress]:
        """
        Stream a completion as accumulated-content progress events.

        Loading events are throttled to one per throttle window; the last
        delta is always reported before the terminal event. Adapter errors
        end the stream with a terminal event carrying the partial content
        and the error text instead of raising.

        If the consumer stops iterating, the adapter stream is closed and no
        terminal event is produced.
        """
        history = outbound_history(messages, placeholder_id)
        content = ""
        last_emit: Optional[float] = None
        unreported = False

        stream = adapter.stream_completion(history, model)
        try:
            try:
                async for delta in stream:
                    content += delta
                    now = self._clock()
                    if last_emit is None or now - last_emit >= self.throttle:
                        last_emit = now
                        unreported = False
                        yield CompletionProgress(content=content, is_loading=True)
                    else:
                        unreported = True
            finally:
                await stream.aclose()
            usage = adapter.get_last_stream_usage()
        except ParleyError as e:
            logger.warning(f"Completion with {model} failed: {e}")
            yield CompletionProgress(content=content, is_loading=False, error=str(e))
            return
        except Exception as e:
            logger.exception(f"Unexpected error while streaming from {model}")
            yield CompletionProgress(content=content, is_loading=False, error=str(e) or repr(e))
            return

        if unreported:
            yield CompletionProgress(content=content, is_loading=True)
        yield CompletionProgress(content=content, is_loading=False, usage=usage)
