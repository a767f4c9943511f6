"""
Tests for OpenAI provider.
"""

from unittest.mock import AsyncMock, patch

import httpx
import openai
import pytest

from parley.providers.openai_provider import OpenAIProvider
from parley.session.models import Message
from parley.utils.errors import ConfigurationError, ProviderError, TransportError
from conftest import FakeFrame, FakeSDKStream

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


@pytest.fixture
def openai_config():
    return {
        "enabled": True,
        "api_key": "sk-test",
        "endpoint": None,
        "default_model": "gpt-4o-mini",
        "temperature": 0.7,
        "max_attempts": 1,
        "backoff_seconds": 0,
        "usage_fallback": True,
        "stream_usage": True,
    }


@pytest.fixture
def history():
    return [
        Message(role="system", content="Be brief."),
        Message(role="user", content="Hello"),
    ]


def delta_frame(text):
    return {"choices": [{"index": 0, "delta": {"content": text}}]}


async def collect(stream):
    return [delta async for delta in stream]


class TestOpenAIProviderInit:
    """Test OpenAI provider initialization"""

    @patch("parley.providers.openai_provider.AsyncOpenAI")
    def test_init_builds_client_without_sdk_retries(self, mock_openai, openai_config):
        provider = OpenAIProvider({**openai_config, "endpoint": "https://proxy.local/v1"})

        mock_openai.assert_called_once()
        kwargs = mock_openai.call_args.kwargs
        assert kwargs["api_key"] == "sk-test"
        assert kwargs["base_url"] == "https://proxy.local/v1"
        assert kwargs["max_retries"] == 0
        assert kwargs["timeout"].read == 60.0
        assert provider.name == "openai"

    @patch("parley.providers.openai_provider.AsyncOpenAI")
    def test_init_without_key(self, mock_openai, openai_config):
        provider = OpenAIProvider({**openai_config, "api_key": None})

        mock_openai.assert_not_called()
        assert provider.client is None
        assert not provider.validate_config()
        with pytest.raises(ConfigurationError) as exc_info:
            provider.require_api_key()
        assert "OPENAI_API_KEY" in str(exc_info.value)

    @pytest.mark.asyncio
    @patch("parley.providers.openai_provider.AsyncOpenAI")
    async def test_list_models(self, mock_openai, openai_config):
        models = await OpenAIProvider(openai_config).list_models()
        assert "gpt-4o-mini" in [m.id for m in models]
        assert all(m.provider == "openai" for m in models)


class TestOpenAIStreaming:
    """Test streamed completions and usage capture"""

    @pytest.mark.asyncio
    @patch("parley.providers.openai_provider.AsyncOpenAI")
    async def test_stream_yields_deltas_and_usage(self, mock_openai, openai_config, history):
        stream = FakeSDKStream(
            [
                delta_frame("Hel"),
                delta_frame("lo"),
                {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
                {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2, "total_tokens": 7}},
            ]
        )
        provider = OpenAIProvider(openai_config)
        provider.client.chat.completions.create = AsyncMock(return_value=stream)

        assert await collect(provider.stream_completion(history, "gpt-4o-mini")) == ["Hel", "lo"]

        body = provider.client.chat.completions.create.call_args.kwargs
        assert body["stream"] is True
        assert body["stream_options"] == {"include_usage": True}
        assert body["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hello"},
        ]
        stream.close.assert_awaited_once()

        usage = provider.get_last_stream_usage()
        assert (usage.prompt_tokens, usage.completion_tokens, usage.total_tokens) == (5, 2, 7)
        provider.client.chat.completions.create.assert_awaited_once()

    @pytest.mark.asyncio
    @patch("parley.providers.openai_provider.AsyncOpenAI")
    async def test_usage_found_before_last_frame(self, mock_openai, openai_config, history):
        stream = FakeSDKStream(
            [
                delta_frame("Hi"),
                {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 1}},
                {"choices": []},
            ]
        )
        provider = OpenAIProvider(openai_config)
        provider.client.chat.completions.create = AsyncMock(return_value=stream)

        await collect(provider.stream_completion(history, "gpt-4o-mini"))

        assert provider.get_last_stream_usage().total_tokens == 4

    @pytest.mark.asyncio
    @patch("parley.providers.openai_provider.AsyncOpenAI")
    async def test_missing_usage_falls_back_to_probe(self, mock_openai, openai_config, history):
        stream = FakeSDKStream([delta_frame("Hi")])
        probe = FakeFrame(
            {"choices": [{"message": {"content": "H"}}], "usage": {"prompt_tokens": 9, "completion_tokens": 1}}
        )
        provider = OpenAIProvider(openai_config)
        provider.client.chat.completions.create = AsyncMock(side_effect=[stream, probe])

        await collect(provider.stream_completion(history, "gpt-4o-mini"))

        probe_body = provider.client.chat.completions.create.call_args_list[1].kwargs
        assert probe_body["max_tokens"] == 1
        assert probe_body["stream"] is False
        usage = provider.get_last_stream_usage()
        assert usage.prompt_tokens == 9
        assert usage.completion_tokens is None
        assert usage.raw_provider_data["estimated"] is True

    @pytest.mark.asyncio
    @patch("parley.providers.openai_provider.AsyncOpenAI")
    async def test_probe_failure_leaves_usage_empty(self, mock_openai, openai_config, history):
        provider = OpenAIProvider(openai_config)
        provider.client.chat.completions.create = AsyncMock(
            side_effect=[FakeSDKStream([delta_frame("Hi")]), openai.APIConnectionError(request=REQUEST)]
        )

        assert await collect(provider.stream_completion(history, "gpt-4o-mini")) == ["Hi"]
        assert provider.get_last_stream_usage() is None

    @pytest.mark.asyncio
    @patch("parley.providers.openai_provider.AsyncOpenAI")
    async def test_fallback_disabled(self, mock_openai, openai_config, history):
        provider = OpenAIProvider({**openai_config, "usage_fallback": False, "stream_usage": False})
        provider.client.chat.completions.create = AsyncMock(
            return_value=FakeSDKStream([delta_frame("Hi")])
        )

        await collect(provider.stream_completion(history, "gpt-4o-mini"))

        provider.client.chat.completions.create.assert_awaited_once()
        assert "stream_options" not in provider.client.chat.completions.create.call_args.kwargs
        assert provider.get_last_stream_usage() is None

    @pytest.mark.asyncio
    @patch("parley.providers.openai_provider.AsyncOpenAI")
    async def test_early_close_closes_sdk_stream(self, mock_openai, openai_config, history):
        stream = FakeSDKStream([delta_frame("a"), delta_frame("b"), delta_frame("c")])
        provider = OpenAIProvider(openai_config)
        provider.client.chat.completions.create = AsyncMock(return_value=stream)

        deltas = provider.stream_completion(history, "gpt-4o-mini")
        assert await deltas.__anext__() == "a"
        await deltas.aclose()

        stream.close.assert_awaited_once()
        assert provider.client.chat.completions.create.await_count == 1


class TestOpenAIErrors:
    """Test translation of SDK errors"""

    @pytest.mark.asyncio
    @patch("parley.providers.openai_provider.AsyncOpenAI")
    async def test_status_error_becomes_provider_error(self, mock_openai, openai_config, history):
        response = httpx.Response(401, request=REQUEST, text='{"error": "bad key"}')
        provider = OpenAIProvider(openai_config)
        provider.client.chat.completions.create = AsyncMock(
            side_effect=openai.AuthenticationError("bad key", response=response, body=None)
        )

        with pytest.raises(ProviderError) as exc_info:
            await collect(provider.stream_completion(history, "gpt-4o-mini"))

        assert exc_info.value.status_code == 401
        assert exc_info.value.body == '{"error": "bad key"}'

    @pytest.mark.asyncio
    @patch("parley.providers.openai_provider.AsyncOpenAI")
    async def test_connection_error_becomes_transport_error(self, mock_openai, openai_config, history):
        provider = OpenAIProvider(openai_config)
        provider.client.chat.completions.create = AsyncMock(
            side_effect=openai.APIConnectionError(request=REQUEST)
        )

        with pytest.raises(TransportError):
            await collect(provider.stream_completion(history, "gpt-4o-mini"))
        provider.client.chat.completions.create.assert_awaited_once()

    @pytest.mark.asyncio
    @patch("parley.providers.openai_provider.AsyncOpenAI")
    async def test_configured_attempts_retry_transient_errors(self, mock_openai, openai_config, history):
        provider = OpenAIProvider({**openai_config, "max_attempts": 2})
        provider.client.chat.completions.create = AsyncMock(
            side_effect=[openai.APIConnectionError(request=REQUEST), FakeSDKStream([delta_frame("ok")])]
        )

        assert await collect(provider.stream_completion(history, "gpt-4o-mini")) == ["ok"]

    @pytest.mark.asyncio
    @patch("parley.providers.openai_provider.AsyncOpenAI")
    async def test_missing_key_raises_before_request(self, mock_openai, openai_config, history):
        provider = OpenAIProvider({**openai_config, "api_key": None})
        with pytest.raises(ConfigurationError):
            await collect(provider.stream_completion(history, "gpt-4o-mini"))


class TestOpenAICompletion:
    @pytest.mark.asyncio
    @patch("parley.providers.openai_provider.AsyncOpenAI")
    async def test_get_completion(self, mock_openai, openai_config, history):
        provider = OpenAIProvider({**openai_config, "max_tokens": 200})
        provider.client.chat.completions.create = AsyncMock(
            return_value=FakeFrame(
                {
                    "choices": [{"message": {"role": "assistant", "content": "Greeting Title"}}],
                    "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
                }
            )
        )

        content, usage = await provider.get_completion(history, "gpt-4o")

        assert content == "Greeting Title"
        assert usage.total_tokens == 15
        body = provider.client.chat.completions.create.call_args.kwargs
        assert body["max_tokens"] == 200
        assert body["stream"] is False
        assert "stream_options" not in body

    @pytest.mark.asyncio
    @patch("parley.providers.openai_provider.AsyncOpenAI")
    async def test_get_completion_without_choices(self, mock_openai, openai_config, history):
        provider = OpenAIProvider(openai_config)
        provider.client.chat.completions.create = AsyncMock(return_value=FakeFrame({"choices": []}))

        with pytest.raises(ProviderError):
            await provider.get_completion(history, "gpt-4o")
