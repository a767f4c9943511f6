from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import httpx
from pydantic import BaseModel

from parley.providers.usage import DEFAULT_PRICING, PricingTable
from parley.session.models import Message, Provider, TokenUsage
from parley.utils.errors import ConfigurationError, ParleyError, ProviderError, TransportError
from parley.utils.logging import get_logger
from parley.utils.retry import RetryPolicy, call_with_retry

logger = get_logger(__name__)

T = TypeVar("T")


class ModelInfo(BaseModel):
    """Standardized model information"""

    id: str
    name: str
    provider: str


class BaseProvider(ABC):
    """Abstract base for all AI providers.

    An instance keeps a single usage slot for the last stream it produced,
    so one instance must only drive one stream at a time.
    """

    provider: Provider
    env_prefix: str = ""
    known_models: Dict[str, str] = {}
    default_max_attempts = 1
    default_read_timeout = 60.0

    # SDK exceptions translated by _translate_error
    sdk_errors: Tuple[type, ...] = (httpx.HTTPError,)

    def __init__(self, config: Dict, pricing: PricingTable = DEFAULT_PRICING):
        self.config = config
        self.name = self.provider.value
        self.pricing = pricing
        self.api_key: Optional[str] = config.get("api_key") or None
        self.retry_policy = RetryPolicy(
            max_attempts=config.get("max_attempts") or self.default_max_attempts,
            backoff_seconds=config.get("backoff_seconds", 2.0),
        )
        self._last_usage: Optional[TokenUsage] = None

    @property
    def temperature(self) -> float:
        return self.config.get("temperature", 0.7)

    @property
    def timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self.config.get("connect_timeout", 30.0),
            read=self.config.get("read_timeout", self.default_read_timeout),
            write=self.config.get("write_timeout", 30.0),
            pool=self.config.get("connect_timeout", 30.0),
        )

    def validate_config(self) -> bool:
        """Check if an API key is set"""
        return bool(self.api_key)

    def is_available(self) -> bool:
        """Check if provider is enabled and configured"""
        return self.config.get("enabled", False) and self.validate_config()

    def require_api_key(self) -> str:
        if not self.api_key:
            key_name = f"{self.env_prefix}_API_KEY"
            raise ConfigurationError(
                f"{key_name} is not configured",
                hint=f"Run 'parley config set-key {self.name}' or export {key_name}",
            )
        return self.api_key

    async def list_models(self) -> List[ModelInfo]:
        """Return the known model catalog"""
        return [
            ModelInfo(id=model_id, name=name, provider=self.name)
            for model_id, name in self.known_models.items()
        ]

    def display_name(self, model: str) -> str:
        return self.known_models.get(model, model)

    def get_last_stream_usage(self) -> Optional[TokenUsage]:
        """Usage captured by the most recently completed stream, if any."""
        return self._last_usage

    @staticmethod
    def to_wire(messages: Sequence[Message]) -> List[Dict[str, str]]:
        return [{"role": m.role, "content": m.content} for m in messages]

    @abstractmethod
    def stream_completion(self, messages: Sequence[Message], model: str) -> AsyncIterator[str]:
        """Yield text deltas for a streaming completion.

        Each call opens a fresh transport. Closing the generator early closes it.
        """
        pass

    @abstractmethod
    async def get_completion(
        self, messages: Sequence[Message], model: str
    ) -> Tuple[str, Optional[TokenUsage]]:
        """Send a single non-streaming request and return its text and usage"""
        pass

    @abstractmethod
    def _translate_error(self, error: Exception) -> ParleyError:
        """Map an SDK exception onto the Parley error taxonomy"""
        pass

    def _translate_transport_error(self, error: Exception) -> Optional[ParleyError]:
        if isinstance(error, httpx.TimeoutException):
            return TransportError(f"{self.name} request timed out: {error}")
        if isinstance(error, httpx.TransportError):
            return TransportError(f"Could not reach {self.name}: {error}")
        if isinstance(error, httpx.HTTPStatusError):
            return ProviderError(
                f"{self.name} returned HTTP {error.response.status_code}",
                status_code=error.response.status_code,
                body=error.response.text,
            )
        return None

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Await one SDK call, translating its exceptions"""
        try:
            return await operation()
        except self.sdk_errors as e:
            raise self._translate_error(e) from e

    async def _call_with_retry(self, operation: Callable[[], Awaitable[T]], label: str) -> T:
        return await call_with_retry(
            lambda: self._call(operation), self.retry_policy, label=f"{self.name} {label}"
        )

    async def aclose(self):
        """Release the underlying HTTP client"""
        client: Any = getattr(self, "client", None)
        close = getattr(client, "close", None)
        if close is not None:
            await close()
