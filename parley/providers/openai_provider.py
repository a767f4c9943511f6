from collections import deque
from typing import Any, AsyncIterator, Deque, Dict, Iterable, Optional, Sequence, Tuple

import httpx
import openai
from openai import AsyncOpenAI

from parley.session.models import Message, Provider, TokenUsage
from parley.utils.errors import ParleyError, ProviderError, TransportError
from parley.utils.logging import get_logger

from .base import BaseProvider
from .usage import build_usage, find_openai_usage, openai_usage

logger = get_logger(__name__)

# Usage can arrive a few frames before [DONE], not only in the final one.
USAGE_SCAN_FRAMES = 8


def _as_frame(chunk: Any) -> Dict[str, Any]:
    if isinstance(chunk, dict):
        return chunk
    return chunk.model_dump()


class OpenAIProvider(BaseProvider):
    """OpenAI-compatible chat completions provider"""

    provider = Provider.OPENAI
    env_prefix = "OPENAI"
    known_models = {
        "gpt-4o-mini": "GPT-4o Mini",
        "gpt-4o": "GPT-4o",
        "gpt-4": "GPT-4",
        "gpt-4-turbo": "GPT-4 Turbo",
        "gpt-3.5-turbo": "GPT-3.5 Turbo",
    }
    sdk_errors = (openai.APIError, httpx.HTTPError)

    def __init__(self, config: Dict, **kwargs):
        super().__init__(config, **kwargs)
        self.client = (
            AsyncOpenAI(
                api_key=self.api_key,
                base_url=config.get("endpoint"),
                timeout=self.timeout,
                max_retries=0,
            )
            if self.api_key
            else None
        )

    def _translate_error(self, error: Exception) -> ParleyError:
        if isinstance(error, openai.APIStatusError):
            return ProviderError(
                f"OpenAI API error ({error.status_code}): {error.message}",
                status_code=error.status_code,
                body=error.response.text,
            )
        if isinstance(error, openai.APIConnectionError):
            # APITimeoutError is a subclass
            return TransportError(f"Could not reach OpenAI: {error}")
        translated = self._translate_transport_error(error)
        if translated is not None:
            return translated
        return ProviderError(f"OpenAI request failed: {error}")

    def _request_body(self, messages: Sequence[Message], model: str, stream: bool) -> Dict:
        body: Dict[str, Any] = {
            "model": model,
            "messages": self.to_wire(messages),
            "temperature": self.temperature,
            "stream": stream,
        }
        if self.config.get("max_tokens"):
            body["max_tokens"] = self.config["max_tokens"]
        if stream and self.config.get("stream_usage", True):
            body["stream_options"] = {"include_usage": True}
        return body

    async def stream_completion(self, messages: Sequence[Message], model: str) -> AsyncIterator[str]:
        """Streaming completion"""
        self.require_api_key()
        self._last_usage = None
        body = self._request_body(messages, model, stream=True)

        stream = await self._call_with_retry(
            lambda: self.client.chat.completions.create(**body), "stream"
        )
        recent: Deque[Dict[str, Any]] = deque(maxlen=USAGE_SCAN_FRAMES)
        try:
            async for chunk in stream:
                frame = _as_frame(chunk)
                recent.append(frame)
                choices = frame.get("choices") or []
                if not choices:
                    continue
                delta = (choices[0].get("delta") or {}).get("content")
                if delta:
                    yield delta
        except self.sdk_errors as e:
            raise self._translate_error(e) from e
        finally:
            await stream.close()

        usage = self._usage_from_frames(recent, model)
        if usage is None and self.config.get("usage_fallback", True):
            usage = await self._recover_usage(messages, model)
        self._last_usage = usage

    def _usage_from_frames(self, frames: Iterable[Dict[str, Any]], model: str) -> Optional[TokenUsage]:
        for frame in reversed(list(frames)):
            usage = openai_usage(frame, model, self.pricing)
            if usage is not None:
                return usage
        return None

    async def _recover_usage(self, messages: Sequence[Message], model: str) -> Optional[TokenUsage]:
        """Ask for a single token to learn the prompt size of the streamed request.

        This is a real, billed request. Only the prompt count is kept: the
        probe's completion count says nothing about the streamed answer.
        """
        body = self._request_body(messages, model, stream=False)
        body["max_tokens"] = 1
        try:
            response = await self._call(lambda: self.client.chat.completions.create(**body))
        except ParleyError as e:
            logger.warning(f"Usage fallback request failed for {model}: {e}")
            return None

        raw = find_openai_usage(_as_frame(response))
        if not raw:
            logger.debug(f"Usage fallback for {model} returned no usage")
            return None
        prompt_tokens = raw.get("prompt_tokens", raw.get("input_tokens"))
        if not isinstance(prompt_tokens, int):
            return None
        return build_usage(
            Provider.OPENAI,
            model,
            prompt_tokens,
            None,
            None,
            self.pricing,
            raw={**raw, "estimated": True},
        )

    async def get_completion(
        self, messages: Sequence[Message], model: str
    ) -> Tuple[str, Optional[TokenUsage]]:
        """Non-streaming completion"""
        self.require_api_key()
        body = self._request_body(messages, model, stream=False)
        response = await self._call_with_retry(
            lambda: self.client.chat.completions.create(**body), "completion"
        )

        payload = _as_frame(response)
        choices = payload.get("choices") or []
        if not choices:
            raise ProviderError("OpenAI response contained no choices", body=str(payload))
        content = (choices[0].get("message") or {}).get("content") or ""
        return content, openai_usage(payload, model, self.pricing)
