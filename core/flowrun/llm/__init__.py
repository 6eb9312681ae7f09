"""Model invocation capability."""

from flowrun.llm.mock import MockModelInvoker
from flowrun.llm.provider import ModelConfig, ModelInvoker, ModelResponse, TokenCallback

__all__ = [
    "ModelInvoker",
    "ModelConfig",
    "ModelResponse",
    "TokenCallback",
    "MockModelInvoker",
]

try:
    from flowrun.llm.litellm import LiteLLMInvoker  # noqa: F401

    __all__.append("LiteLLMInvoker")
except ImportError:
    pass
