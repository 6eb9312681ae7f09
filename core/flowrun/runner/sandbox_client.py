"""HTTP client for an external code-sandbox service.

The service is expected to accept ``POST {base_url}/run`` with
``{"language", "code", "inputs", "timeout"}`` and answer
``{"stdout": str, "result": any, "error": str | null}``.
"""

import logging
from typing import Any

import httpx

from flowrun.errors import SandboxError
from flowrun.runner.capabilities import SandboxResult, SandboxRunner

logger = logging.getLogger(__name__)


class HttpSandboxClient(SandboxRunner):
    """
    SandboxRunner that delegates to a remote sandbox over HTTP.

    Example:
        async with httpx.AsyncClient() as http:
            sandbox = HttpSandboxClient("http://sandbox:8194", api_key="...", client=http)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        default_timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.default_timeout = default_timeout
        self._client = client

    async def run(
        self,
        code: str,
        inputs: dict[str, Any],
        timeout: float | None = None,
        language: str = "python3",
    ) -> SandboxResult:
        timeout = timeout or self.default_timeout
        headers = {"X-Api-Key": self.api_key} if self.api_key else {}
        payload = {"language": language, "code": code, "inputs": inputs, "timeout": timeout}

        try:
            if self._client is not None:
                response = await self._client.post(
                    f"{self.base_url}/run", json=payload, headers=headers, timeout=timeout + 5
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        f"{self.base_url}/run", json=payload, headers=headers, timeout=timeout + 5
                    )
        except httpx.TimeoutException as e:
            raise SandboxError(f"Sandbox timed out after {timeout}s", retryable=True) from e
        except httpx.TransportError as e:
            raise SandboxError(f"Sandbox unavailable: {e}", retryable=True) from e

        if response.status_code >= 500:
            raise SandboxError(
                f"Sandbox service error {response.status_code}: {response.text[:200]}",
                retryable=True,
            )
        if response.status_code >= 400:
            raise SandboxError(f"Sandbox rejected request {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise SandboxError(f"Sandbox returned invalid JSON: {e}") from e

        if data.get("error"):
            raise SandboxError(f"Sandboxed code failed: {data['error']}", details=data)

        return SandboxResult(stdout=data.get("stdout", ""), result=data.get("result"))
