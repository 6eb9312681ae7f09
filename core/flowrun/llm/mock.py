"""Scripted model backend for tests and offline runs."""

import asyncio
import logging
from collections.abc import Callable

from flowrun.errors import ProviderError
from flowrun.llm.provider import ModelConfig, ModelInvoker, ModelResponse, TokenCallback
from flowrun.runtime.trace_schemas import TokenUsage

logger = logging.getLogger(__name__)


class MockModelInvoker(ModelInvoker):
    """
    Returns scripted responses, streamed word by word.

    Args:
        response: Text returned for every call (ignored when ``responder`` is set)
        responder: ``(prompt, model_config) -> text`` for prompt-dependent replies
        failures: Errors raised by the first calls, in order, before any success
        token_delay: Pause between streamed tokens (seconds)

    Example:
        invoker = MockModelInvoker(
            response="0.9",
            failures=[ProviderError("busy", ProviderErrorKind.RATE_LIMITED)],
        )
    """

    def __init__(
        self,
        response: str = "This is a mock response.",
        responder: Callable[[str, ModelConfig], str] | None = None,
        failures: list[ProviderError] | None = None,
        token_delay: float = 0.0,
    ):
        self.response = response
        self.responder = responder
        self.failures = list(failures or [])
        self.token_delay = token_delay
        self.calls: list[tuple[str, ModelConfig]] = []

    async def invoke(
        self,
        prompt: str,
        model_config: ModelConfig,
        on_token: TokenCallback | None = None,
    ) -> ModelResponse:
        self.calls.append((prompt, model_config))
        if self.failures:
            error = self.failures.pop(0)
            logger.debug("Mock model raising scripted failure: %s", error)
            raise error

        text = self.responder(prompt, model_config) if self.responder else self.response
        if on_token is not None:
            for i, word in enumerate(text.split(" ")):
                if self.token_delay:
                    await asyncio.sleep(self.token_delay)
                await on_token(word if i == 0 else " " + word)

        return ModelResponse(
            text=text,
            finish_reason="stop",
            usage=TokenUsage(input_tokens=len(prompt.split()), output_tokens=len(text.split())),
            model=model_config.model,
        )
