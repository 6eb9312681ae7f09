"""Model invocation abstraction for pluggable model backends."""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from flowrun.runtime.trace_schemas import TokenUsage

# Called once per streamed token (or chunk) of model output
TokenCallback = Callable[[str], Awaitable[None]]


@dataclass
class ModelConfig:
    """Per-call model settings, built from a model_call node's config."""

    model: str
    system: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ModelResponse:
    """Response from a model call."""

    text: str
    finish_reason: str = "stop"
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""


class ModelInvoker(ABC):
    """
    Abstract model backend - plug in any provider.

    Implementations should handle:
    - API authentication
    - Streaming tokens through ``on_token`` as they arrive
    - Mapping provider failures to ProviderError with the right kind
      (rate_limited and timeout are retried, invalid_request is not)
    """

    @abstractmethod
    async def invoke(
        self,
        prompt: str,
        model_config: ModelConfig,
        on_token: TokenCallback | None = None,
    ) -> ModelResponse:
        """
        Generate a completion for ``prompt``.

        Args:
            prompt: Rendered user prompt
            model_config: Model name and sampling settings
            on_token: Awaited for every streamed chunk of text

        Returns:
            ModelResponse with the full text, finish reason and usage

        Raises:
            ProviderError: the provider call failed
        """
