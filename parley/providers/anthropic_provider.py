from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import anthropic
import httpx
from anthropic import AsyncAnthropic

from parley.session.models import Message, Provider, TokenUsage
from parley.utils.errors import ParleyError, ProviderError, TransportError
from parley.utils.logging import get_logger

from .base import BaseProvider
from .usage import anthropic_usage

logger = get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 1000

MATH_INSTRUCTION = (
    "When including mathematical expressions or equations in your response, use LaTeX "
    "notation. For inline equations, use single dollar signs like $x^2$. For display "
    "equations, use double dollar signs like $$E=mc^2$$."
)


def with_math_instruction(messages: Sequence[Message]) -> List[Message]:
    """Append the LaTeX instruction to the first system message, or prepend one."""
    result = list(messages)
    for index, message in enumerate(result):
        if message.role == "system":
            result[index] = message.model_copy(
                update={"content": f"{message.content}\n\n{MATH_INSTRUCTION}"}
            )
            return result
    return [Message(role="system", content=MATH_INSTRUCTION), *result]


class AnthropicProvider(BaseProvider):
    """Anthropic (Claude) Messages API provider"""

    provider = Provider.ANTHROPIC
    env_prefix = "ANTHROPIC"
    known_models = {
        "claude-3-opus": "Claude 3 Opus",
        "claude-3-sonnet": "Claude 3 Sonnet",
        "claude-3-haiku": "Claude 3 Haiku",
    }
    default_max_attempts = 3
    default_read_timeout = 90.0
    sdk_errors = (anthropic.APIError, httpx.HTTPError)

    def __init__(self, config: Dict, **kwargs):
        super().__init__(config, **kwargs)
        self.client = (
            AsyncAnthropic(
                api_key=self.api_key,
                base_url=config.get("endpoint"),
                timeout=self.timeout,
                max_retries=0,
                default_headers={"anthropic-version": ANTHROPIC_VERSION},
            )
            if self.api_key
            else None
        )

    def _translate_error(self, error: Exception) -> ParleyError:
        if isinstance(error, anthropic.APIStatusError):
            return ProviderError(
                f"Anthropic API error ({error.status_code}): {error.message}",
                status_code=error.status_code,
                body=error.response.text,
            )
        if isinstance(error, anthropic.APIConnectionError):
            return TransportError(f"Could not reach Anthropic: {error}")
        translated = self._translate_transport_error(error)
        if translated is not None:
            return translated
        return ProviderError(f"Anthropic request failed: {error}")

    def _request_body(self, messages: Sequence[Message], model: str) -> Dict[str, Any]:
        prepared = with_math_instruction(messages)
        system = "\n\n".join(m.content for m in prepared if m.role == "system")
        return {
            "model": model,
            "system": system,
            "messages": self.to_wire([m for m in prepared if m.role != "system"]),
            "max_tokens": self.config.get("max_tokens") or DEFAULT_MAX_TOKENS,
            "temperature": self.temperature,
        }

    async def stream_completion(self, messages: Sequence[Message], model: str) -> AsyncIterator[str]:
        """Streaming completion, falling back to a single request if the stream fails early"""
        self.require_api_key()
        self._last_usage = None
        body = self._request_body(messages, model)
        usage: Dict[str, Any] = {}
        produced = False

        try:
            stream = await self._call_with_retry(
                lambda: self.client.messages.create(**body, stream=True), "stream"
            )
            try:
                async for event in stream:
                    text = self._handle_event(event.model_dump(), usage)
                    if text:
                        produced = True
                        yield text
            except self.sdk_errors as e:
                raise self._translate_error(e) from e
            finally:
                await stream.close()
        except ParleyError as stream_error:
            if produced:
                raise
            logger.warning(f"Anthropic stream failed ({stream_error}); retrying without streaming")
            try:
                content, fallback_usage = await self._call_non_streaming(body, model)
            except ParleyError as fallback_error:
                logger.error(f"Anthropic non-streaming fallback failed: {fallback_error}")
                raise stream_error from fallback_error
            self._last_usage = fallback_usage
            if content:
                yield content
            return

        self._last_usage = anthropic_usage(usage, model, self.pricing)

    @staticmethod
    def _handle_event(event: Dict[str, Any], usage: Dict[str, Any]) -> Optional[str]:
        """Collect usage from one stream event and return its text, if any."""
        event_type = event.get("type")
        if event_type == "message_start":
            message_usage = (event.get("message") or {}).get("usage") or {}
            usage.update({k: v for k, v in message_usage.items() if v is not None})
        elif event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "text":
                return block.get("text") or None
        elif event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta":
                return delta.get("text") or None
        elif event_type == "message_delta":
            delta_usage = event.get("usage") or {}
            usage.update({k: v for k, v in delta_usage.items() if v is not None})
            return (event.get("delta") or {}).get("text") or None
        elif event_type == "error":
            error = event.get("error") or {}
            raise ProviderError(
                f"Anthropic stream error: {error.get('message', 'unknown error')}",
                body=str(error),
            )
        return None

    async def _call_non_streaming(
        self, body: Dict[str, Any], model: str
    ) -> Tuple[str, Optional[TokenUsage]]:
        response = await self._call(lambda: self.client.messages.create(**body))
        payload = response.model_dump()
        content = "".join(
            block.get("text") or ""
            for block in payload.get("content") or []
            if block.get("type") == "text"
        )
        return content, anthropic_usage(payload.get("usage"), model, self.pricing)

    async def get_completion(
        self, messages: Sequence[Message], model: str
    ) -> Tuple[str, Optional[TokenUsage]]:
        """Non-streaming completion"""
        self.require_api_key()
        body = self._request_body(messages, model)
        return await self._call_with_retry(
            lambda: self._call_non_streaming(body, model), "completion"
        )
