from typing import Any, AsyncIterator, Dict, Optional, Sequence, Tuple

import httpx
from google import genai
from google.genai import errors, types

from parley.session.models import Message, Provider, TokenUsage
from parley.utils.errors import ParleyError, ProviderError
from parley.utils.logging import get_logger

from .base import BaseProvider
from .usage import gemini_usage

logger = get_logger(__name__)

DEFAULT_PERSONA = "You are a helpful, accurate, and thoughtful AI assistant."


def flatten_prompt(messages: Sequence[Message]) -> str:
    """Render the history as one prompt: system instructions first, then the turns."""
    lines = []
    system = [m.content for m in messages if m.role == "system"]
    if system:
        lines.append("System instructions:")
        lines.extend(system)
    else:
        lines.append(DEFAULT_PERSONA)
    lines.append("")
    for message in messages:
        if message.role == "system":
            continue
        speaker = "User" if message.role == "user" else "Assistant"
        lines.append(f"{speaker}: {message.content}")
    return "\n".join(lines) + "\n"


def _usage_dict(metadata: Any) -> Optional[Dict[str, Any]]:
    if metadata is None:
        return None
    if isinstance(metadata, dict):
        return metadata
    return metadata.model_dump(exclude_none=True)


class GeminiProvider(BaseProvider):
    """Google Gemini provider built on the google-genai SDK"""

    provider = Provider.GEMINI
    env_prefix = "GEMINI"
    known_models = {
        "gemini-1.5-pro": "Gemini 1.5 Pro",
        "gemini-1.5-flash": "Gemini 1.5 Flash",
    }
    sdk_errors = (errors.APIError, httpx.HTTPError)

    def __init__(self, config: Dict, **kwargs):
        super().__init__(config, **kwargs)
        self.client = (
            genai.Client(
                api_key=self.api_key,
                # milliseconds
                http_options=types.HttpOptions(timeout=int(self.timeout.read * 1000)),
            )
            if self.api_key
            else None
        )

    def _translate_error(self, error: Exception) -> ParleyError:
        if isinstance(error, errors.APIError):
            return ProviderError(
                f"Gemini API error ({error.code}): {error.message}",
                status_code=error.code,
                body=str(error.details) if error.details else None,
            )
        translated = self._translate_transport_error(error)
        if translated is not None:
            return translated
        return ProviderError(f"Gemini request failed: {error}")

    def _generation_config(self) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            temperature=self.temperature,
            max_output_tokens=self.config.get("max_tokens"),
        )

    async def stream_completion(self, messages: Sequence[Message], model: str) -> AsyncIterator[str]:
        """Streaming completion; usage is read once the stream has drained"""
        self.require_api_key()
        self._last_usage = None
        prompt = flatten_prompt(messages)
        config = self._generation_config()

        stream = await self._call_with_retry(
            lambda: self.client.aio.models.generate_content_stream(
                model=model, contents=prompt, config=config
            ),
            "stream",
        )
        metadata = None
        try:
            async for chunk in stream:
                if chunk.usage_metadata is not None:
                    metadata = chunk.usage_metadata
                if chunk.text:
                    yield chunk.text
        except self.sdk_errors as e:
            raise self._translate_error(e) from e
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        self._last_usage = gemini_usage(_usage_dict(metadata), model, self.pricing)

    async def get_completion(
        self, messages: Sequence[Message], model: str
    ) -> Tuple[str, Optional[TokenUsage]]:
        """Non-streaming completion"""
        self.require_api_key()
        prompt = flatten_prompt(messages)
        response = await self._call_with_retry(
            lambda: self.client.aio.models.generate_content(
                model=model, contents=prompt, config=self._generation_config()
            ),
            "completion",
        )
        usage = gemini_usage(_usage_dict(response.usage_metadata), model, self.pricing)
        return response.text or "", usage

    async def aclose(self):
        if self.client is not None:
            await self.client.aio.aclose()
