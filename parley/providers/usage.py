"""Token usage extraction and cost calculation.

Each provider reports usage in its own shape. The ``*_usage`` functions
normalise a raw usage payload into a :class:`TokenUsage`, pricing it with a
:class:`PricingTable`.
"""

from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from parley.session.models import Provider, TokenUsage
from parley.utils.logging import get_logger

logger = get_logger(__name__)

# USD per 1000 tokens
DEFAULT_RATES: Dict[str, float] = {
    # OpenAI
    "gpt-4o-mini_prompt": 0.00015,
    "gpt-4o-mini_completion": 0.0006,
    "gpt-4o_prompt": 0.0025,
    "gpt-4o_completion": 0.01,
    "gpt-4-turbo_prompt": 0.01,
    "gpt-4-turbo_completion": 0.03,
    "gpt-4_prompt": 0.03,
    "gpt-4_completion": 0.06,
    "gpt-3.5-turbo_prompt": 0.0005,
    "gpt-3.5-turbo_completion": 0.0015,
    # Anthropic
    "claude-3-opus_prompt": 0.015,
    "claude-3-opus_completion": 0.075,
    "claude-3-sonnet_prompt": 0.003,
    "claude-3-sonnet_completion": 0.015,
    "claude-3-haiku_prompt": 0.00025,
    "claude-3-haiku_completion": 0.00125,
    # Gemini
    "gemini-1.5-pro_prompt": 0.00125,
    "gemini-1.5-pro_completion": 0.005,
    "gemini-1.5-flash_prompt": 0.000075,
    "gemini-1.5-flash_completion": 0.0003,
    "gemini-pro_prompt": 0.00125,
    "gemini-pro_completion": 0.00375,
    "gemini-ultra_prompt": 0.01,
    "gemini-ultra_completion": 0.03,
    # Fallback
    "default_prompt": 0.001,
    "default_completion": 0.002,
}

PROMPT = "prompt"
COMPLETION = "completion"


class PricingTable:
    """Immutable ``"{model}_{prompt|completion}" -> rate`` mapping."""

    def __init__(self, rates: Optional[Mapping[str, float]] = None):
        self._rates = MappingProxyType(dict(DEFAULT_RATES if rates is None else rates))
        suffixes = (f"_{PROMPT}", f"_{COMPLETION}")
        models = {
            key[: -len(suffix)]
            for key in self._rates
            for suffix in suffixes
            if key.endswith(suffix)
        }
        models.discard("default")
        # Longest first so "gpt-4o-mini" wins over "gpt-4o" and "gpt-4".
        self._models: Tuple[str, ...] = tuple(sorted(models, key=len, reverse=True))

    @classmethod
    def with_overrides(cls, overrides: Optional[Mapping[str, float]]) -> "PricingTable":
        rates = dict(DEFAULT_RATES)
        rates.update(overrides or {})
        return cls(rates)

    @property
    def rates(self) -> Mapping[str, float]:
        return self._rates

    def rate(self, model: str, direction: str) -> float:
        """Rate per 1000 tokens for ``model`` in ``direction`` (prompt or completion)."""
        exact = self._rates.get(f"{model}_{direction}")
        if exact is not None:
            return exact
        for known in self._models:
            if model.startswith(known):
                rate = self._rates.get(f"{known}_{direction}")
                if rate is not None:
                    return rate
        return self._rates.get(f"default_{direction}", 0.0)

    def price(
        self,
        model: str,
        prompt_tokens: Optional[int],
        completion_tokens: Optional[int],
        total_tokens: Optional[int],
    ) -> Tuple[Optional[float], Optional[float], Optional[float]]:
        """Return ``(prompt_cost, completion_cost, total_cost)``."""
        prompt_rate = self.rate(model, PROMPT)
        completion_rate = self.rate(model, COMPLETION)

        prompt_cost = prompt_tokens / 1000 * prompt_rate if prompt_tokens is not None else None
        completion_cost = (
            completion_tokens / 1000 * completion_rate if completion_tokens is not None else None
        )

        if prompt_cost is not None and completion_cost is not None:
            total_cost = prompt_cost + completion_cost
        elif total_tokens is not None:
            total_cost = total_tokens / 1000 * (prompt_rate + completion_rate) / 2
        else:
            total_cost = None
        return prompt_cost, completion_cost, total_cost


DEFAULT_PRICING = PricingTable()


def _first_count(data: Mapping[str, Any], keys: Iterable[str]) -> Optional[int]:
    for key in keys:
        value = data.get(key)
        # bool is an int subclass; never a token count
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return int(value)
    return None


def build_usage(
    provider: Provider,
    model: str,
    prompt_tokens: Optional[int],
    completion_tokens: Optional[int],
    total_tokens: Optional[int],
    pricing: PricingTable = DEFAULT_PRICING,
    raw: Optional[Dict[str, Any]] = None,
) -> Optional[TokenUsage]:
    """Price the counts and wrap them in a TokenUsage; None when no count is known."""
    if total_tokens is None and prompt_tokens is not None and completion_tokens is not None:
        total_tokens = prompt_tokens + completion_tokens
    if prompt_tokens is None and completion_tokens is None and total_tokens is None:
        return None

    prompt_cost, completion_cost, total_cost = pricing.price(
        model, prompt_tokens, completion_tokens, total_tokens
    )
    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
        prompt_cost=prompt_cost,
        completion_cost=completion_cost,
        total_cost=total_cost,
        provider=provider,
        model=model,
        raw_provider_data=raw,
    )


def find_openai_usage(payload: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """Locate the usage block in an OpenAI-style response or stream frame."""
    usage = payload.get("usage")
    if isinstance(usage, dict):
        return usage
    for wrapper in ("response", "result"):
        inner = payload.get(wrapper)
        if isinstance(inner, dict) and isinstance(inner.get("usage"), dict):
            return inner["usage"]
    for alias in ("token_usage", "tokenUsage"):
        if isinstance(payload.get(alias), dict):
            return payload[alias]
    return None


def openai_usage(
    payload: Mapping[str, Any], model: str, pricing: PricingTable = DEFAULT_PRICING
) -> Optional[TokenUsage]:
    usage = find_openai_usage(payload)
    if usage is None:
        return None
    return build_usage(
        Provider.OPENAI,
        model,
        _first_count(usage, ("prompt_tokens", "promptTokens", "input_tokens", "inputTokens")),
        _first_count(
            usage, ("completion_tokens", "completionTokens", "output_tokens", "outputTokens")
        ),
        _first_count(usage, ("total_tokens", "totalTokens")),
        pricing,
        raw=dict(usage),
    )


def anthropic_usage(
    usage: Optional[Mapping[str, Any]], model: str, pricing: PricingTable = DEFAULT_PRICING
) -> Optional[TokenUsage]:
    """Build usage from an Anthropic ``usage`` block (``input_tokens``/``output_tokens``)."""
    if not usage:
        return None
    return build_usage(
        Provider.ANTHROPIC,
        model,
        _first_count(usage, ("input_tokens",)),
        _first_count(usage, ("output_tokens",)),
        None,
        pricing,
        raw=dict(usage),
    )


def gemini_usage(
    usage: Optional[Mapping[str, Any]], model: str, pricing: PricingTable = DEFAULT_PRICING
) -> Optional[TokenUsage]:
    """Build usage from Gemini ``usage_metadata`` (snake_case or camelCase keys)."""
    if not usage:
        return None
    return build_usage(
        Provider.GEMINI,
        model,
        _first_count(usage, ("prompt_token_count", "promptTokenCount")),
        _first_count(usage, ("candidates_token_count", "candidatesTokenCount")),
        _first_count(usage, ("total_token_count", "totalTokenCount")),
        pricing,
        raw=dict(usage),
    )
