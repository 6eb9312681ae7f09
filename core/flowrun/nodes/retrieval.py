"""Retrieval node: searches a knowledge-base collection."""

from typing import Any

from flowrun.errors import RetrievalError
from flowrun.graph.node import NodeSpec, RetrievalConfig
from flowrun.nodes.base import Emit, NodeContext, NodeExecutor, NodeResult


class RetrievalExecutor(NodeExecutor):
    """
    Outputs:
        results: list of {"content", "score", "metadata"} dicts, best first
        context: the chunk contents joined with blank lines, ready for a prompt
    """

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], emit: Emit, ctx: NodeContext
    ) -> NodeResult:
        config: RetrievalConfig = node.parsed_config()
        retriever = ctx.capabilities.require_retriever()

        query = inputs.get(config.query_input)
        if not query:
            raise RetrievalError(f"Retrieval node '{node.id}' has no query in '{config.query_input}'")

        chunks = await retriever.search(str(query), config.collection_id, config.top_k)
        chunks = chunks[: config.top_k]
        return NodeResult(
            outputs={
                "results": [c.to_dict() for c in chunks],
                "context": "\n\n".join(c.content for c in chunks),
            }
        )
