"""
Tests for Gemini provider.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from google.genai import errors

from parley.providers.gemini_provider import DEFAULT_PERSONA, GeminiProvider, flatten_prompt
from parley.session.models import Message
from parley.utils.errors import ConfigurationError, ProviderError


@pytest.fixture
def gemini_config():
    return {
        "enabled": True,
        "api_key": "gm-test",
        "default_model": "gemini-1.5-flash",
        "temperature": 0.5,
        "max_tokens": 256,
        "backoff_seconds": 0,
    }


@pytest.fixture
def history():
    return [
        Message(role="user", content="Hi"),
        Message(role="assistant", content="Hello!"),
        Message(role="user", content="Tell me a joke"),
    ]


def chunk(text, usage=None):
    return SimpleNamespace(text=text, usage_metadata=usage)


async def chunks(*items):
    for item in items:
        yield item


async def collect(stream):
    return [delta async for delta in stream]


class TestFlattenPrompt:
    """History is rendered as a single text prompt"""

    def test_default_persona(self, history):
        assert flatten_prompt(history) == (
            f"{DEFAULT_PERSONA}\n\nUser: Hi\nAssistant: Hello!\nUser: Tell me a joke\n"
        )

    def test_system_instructions_first(self):
        messages = [
            Message(role="user", content="Hi"),
            Message(role="system", content="Answer in French."),
        ]
        assert flatten_prompt(messages) == "System instructions:\nAnswer in French.\n\nUser: Hi\n"


class TestGeminiProviderInit:
    @patch("parley.providers.gemini_provider.genai.Client")
    def test_timeout_in_milliseconds(self, mock_client, gemini_config):
        GeminiProvider(gemini_config)

        kwargs = mock_client.call_args.kwargs
        assert kwargs["api_key"] == "gm-test"
        assert kwargs["http_options"].timeout == 60000

    @patch("parley.providers.gemini_provider.genai.Client")
    def test_no_client_without_key(self, mock_client, gemini_config):
        provider = GeminiProvider({**gemini_config, "api_key": None})
        mock_client.assert_not_called()
        with pytest.raises(ConfigurationError):
            provider.require_api_key()


class TestGeminiStreaming:
    @pytest.mark.asyncio
    @patch("parley.providers.gemini_provider.genai.Client")
    async def test_stream_yields_text_and_final_usage(self, mock_client, gemini_config, history):
        provider = GeminiProvider(gemini_config)
        provider.client.aio.models.generate_content_stream = AsyncMock(
            return_value=chunks(
                chunk("Why did", {"prompt_token_count": 12}),
                chunk(None),
                chunk(" the chicken...", {"prompt_token_count": 12, "candidates_token_count": 6, "total_token_count": 18}),
            )
        )

        deltas = await collect(provider.stream_completion(history, "gemini-1.5-flash"))

        assert deltas == ["Why did", " the chicken..."]
        kwargs = provider.client.aio.models.generate_content_stream.call_args.kwargs
        assert kwargs["model"] == "gemini-1.5-flash"
        assert kwargs["contents"].endswith("User: Tell me a joke\n")
        assert kwargs["config"].temperature == 0.5
        assert kwargs["config"].max_output_tokens == 256
        usage = provider.get_last_stream_usage()
        assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (12, 6, 18)

    @pytest.mark.asyncio
    @patch("parley.providers.gemini_provider.genai.Client")
    async def test_api_error_becomes_provider_error(self, mock_client, gemini_config, history):
        provider = GeminiProvider(gemini_config)
        provider.client.aio.models.generate_content_stream = AsyncMock(
            side_effect=errors.ClientError(
                400,
                {"error": {"code": 400, "message": "API key not valid", "status": "INVALID_ARGUMENT"}},
            )
        )

        with pytest.raises(ProviderError) as exc_info:
            await collect(provider.stream_completion(history, "gemini-1.5-flash"))

        assert exc_info.value.status_code == 400
        provider.client.aio.models.generate_content_stream.assert_awaited_once()


class TestGeminiCompletion:
    @pytest.mark.asyncio
    @patch("parley.providers.gemini_provider.genai.Client")
    async def test_get_completion(self, mock_client, gemini_config, history):
        provider = GeminiProvider(gemini_config)
        provider.client.aio.models.generate_content = AsyncMock(
            return_value=SimpleNamespace(
                text="Chicken Jokes",
                usage_metadata={"promptTokenCount": 20, "candidatesTokenCount": 3},
            )
        )

        content, usage = await provider.get_completion(history, "gemini-1.5-flash")

        assert content == "Chicken Jokes"
        assert usage.total_tokens == 23

    @pytest.mark.asyncio
    @patch("parley.providers.gemini_provider.genai.Client")
    async def test_aclose_closes_async_client(self, mock_client, gemini_config):
        provider = GeminiProvider(gemini_config)
        provider.client.aio.aclose = AsyncMock()

        await provider.aclose()

        provider.client.aio.aclose.assert_awaited_once()
