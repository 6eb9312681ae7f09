"""Model call node: renders a prompt and streams a completion."""

import logging
from typing import Any

from flowrun.graph.node import ModelCallConfig, NodeSpec
from flowrun.llm.provider import ModelConfig
from flowrun.nodes.base import Emit, NodeContext, NodeExecutor, NodeResult, render_template

logger = logging.getLogger(__name__)


class ModelCallExecutor(NodeExecutor):
    """
    Renders ``config.prompt`` (and ``config.system``) from the node's
    inputs, invokes the run's ModelInvoker and forwards every token
    through ``emit``. Provider errors propagate as ProviderError so the
    retry policy can tell rate limits from bad requests.
    """

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], emit: Emit, ctx: NodeContext
    ) -> NodeResult:
        config: ModelCallConfig = node.parsed_config()
        invoker = ctx.capabilities.require_model()

        prompt = render_template(config.prompt, inputs)
        model_config = ModelConfig(
            model=config.model or ctx.default_model,
            system=render_template(config.system, inputs) if config.system else "",
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            extra=dict(config.extra),
        )

        async def on_token(token: str) -> None:
            if ctx.cancel_token is not None:
                ctx.cancel_token.raise_if_cancelled()
            await emit(token)

        logger.info(f"      🤖 {model_config.model} (attempt {ctx.attempt})")
        response = await invoker.invoke(prompt, model_config, on_token)

        return NodeResult(
            outputs={"text": response.text, "finish_reason": response.finish_reason},
            usage=response.usage,
        )
