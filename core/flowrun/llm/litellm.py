"""LiteLLM-backed model invoker.

Streams completions through ``litellm.acompletion`` so any provider
LiteLLM supports (OpenAI, Anthropic, Azure, Ollama, ...) can back
model_call nodes. Model names use LiteLLM's "provider/model" form.
"""

import logging

import litellm

from flowrun.errors import ProviderError, ProviderErrorKind
from flowrun.llm.provider import ModelConfig, ModelInvoker, ModelResponse, TokenCallback
from flowrun.runtime.trace_schemas import TokenUsage

logger = logging.getLogger(__name__)


class LiteLLMInvoker(ModelInvoker):
    """
    Model invoker using LiteLLM.

    Example:
        invoker = LiteLLMInvoker(api_key=get_api_key())
        capabilities = Capabilities(model=invoker)
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        request_timeout: float | None = None,
    ):
        self.api_key = api_key
        self.api_base = api_base
        self.request_timeout = request_timeout

    async def invoke(
        self,
        prompt: str,
        model_config: ModelConfig,
        on_token: TokenCallback | None = None,
    ) -> ModelResponse:
        messages = []
        if model_config.system:
            messages.append({"role": "system", "content": model_config.system})
        messages.append({"role": "user", "content": prompt})

        kwargs = {
            "model": model_config.model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
            **model_config.extra,
        }
        if model_config.temperature is not None:
            kwargs["temperature"] = model_config.temperature
        if model_config.max_tokens is not None:
            kwargs["max_tokens"] = model_config.max_tokens
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.request_timeout:
            kwargs["timeout"] = self.request_timeout

        parts: list[str] = []
        finish_reason = ""
        usage = TokenUsage()
        try:
            stream = await litellm.acompletion(**kwargs)
            async for chunk in stream:
                if chunk.choices:
                    choice = chunk.choices[0]
                    content = getattr(choice.delta, "content", None)
                    if content:
                        parts.append(content)
                        if on_token is not None:
                            await on_token(content)
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
                chunk_usage = getattr(chunk, "usage", None)
                if chunk_usage:
                    usage = TokenUsage(
                        input_tokens=chunk_usage.prompt_tokens or 0,
                        output_tokens=chunk_usage.completion_tokens or 0,
                    )
        except litellm.RateLimitError as e:
            raise ProviderError(str(e), ProviderErrorKind.RATE_LIMITED) from e
        except litellm.Timeout as e:
            raise ProviderError(str(e), ProviderErrorKind.TIMEOUT) from e
        except (
            litellm.BadRequestError,
            litellm.AuthenticationError,
            litellm.NotFoundError,
            litellm.ContextWindowExceededError,
        ) as e:
            raise ProviderError(str(e), ProviderErrorKind.INVALID_REQUEST) from e
        except (litellm.APIConnectionError, litellm.APIError) as e:
            raise ProviderError(str(e), ProviderErrorKind.UNKNOWN) from e

        text = "".join(parts)
        logger.debug(
            "Model %s finished (%s), %d tokens",
            model_config.model,
            finish_reason or "stop",
            usage.total_tokens,
            extra={"model": model_config.model, "tokens_used": usage.total_tokens},
        )
        return ModelResponse(
            text=text,
            finish_reason=finish_reason or "stop",
            usage=usage,
            model=model_config.model,
        )
