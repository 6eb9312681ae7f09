"""HTTP request node."""

import logging
from typing import Any

import httpx

from flowrun.errors import HttpRequestError
from flowrun.graph.node import HttpRequestConfig, NodeSpec
from flowrun.nodes.base import Emit, NodeContext, NodeExecutor, NodeResult, render_template

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})


class HttpRequestExecutor(NodeExecutor):
    """
    Sends one HTTP request built from the node's config and inputs.

    URL, header and query values are templates rendered from inputs; the
    input named by ``body_input`` is sent as the JSON body. 429/5xx
    responses and transport errors are retryable, other 4xx are not.
    """

    async def execute(
        self, node: NodeSpec, inputs: dict[str, Any], emit: Emit, ctx: NodeContext
    ) -> NodeResult:
        config: HttpRequestConfig = node.parsed_config()

        url = render_template(config.url, inputs)
        headers = {k: render_template(v, inputs) for k, v in config.headers.items()}
        params = {k: render_template(v, inputs) for k, v in config.query.items()}
        body = inputs.get(config.body_input) if config.body_input else None

        request_kwargs: dict[str, Any] = {"headers": headers, "params": params}
        if body is not None:
            request_kwargs["json"] = body

        logger.info(f"      🌐 {config.method} {url}")
        client = ctx.capabilities.http_client
        try:
            if client is not None:
                response = await client.request(config.method, url, **request_kwargs)
            else:
                async with httpx.AsyncClient() as own_client:
                    response = await own_client.request(config.method, url, **request_kwargs)
        except httpx.TimeoutException as e:
            raise HttpRequestError(f"{config.method} {url} timed out", retryable=True) from e
        except httpx.TransportError as e:
            raise HttpRequestError(f"{config.method} {url} failed: {e}", retryable=True) from e

        if response.status_code >= 400:
            raise HttpRequestError(
                f"{config.method} {url} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
                retryable=response.status_code in RETRYABLE_STATUS,
            )

        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                payload: Any = response.json()
            except ValueError:
                payload = response.text
        else:
            payload = response.text

        return NodeResult(
            outputs={
                "status_code": response.status_code,
                "body": payload,
                "headers": dict(response.headers),
            }
        )
