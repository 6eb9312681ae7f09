"""
Per-node timeout and retry wrapping.

Each attempt runs under ``asyncio.timeout(node.timeout_seconds)``. A
timeout becomes ExecutionTimeout, which is retryable. Retryable
NodeExecutionErrors are retried with exponential backoff until the
node's RetryPolicy is exhausted; anything else fails the node at once.
Unexpected exceptions are wrapped as a fatal NodeExecutionError that
keeps the stack trace for the trace record.

Every attempt is appended to the caller's ``attempts`` list as it ends,
so the caller still has them if the node task is cancelled mid-retry.
"""

import asyncio
import logging
import time
import traceback
from collections.abc import Awaitable, Callable

from flowrun.errors import (
    ExecutionTimeout,
    NodeExecutionError,
    ProviderError,
    ProviderErrorKind,
    RunCancelled,
)
from flowrun.graph.node import NodeSpec
from flowrun.nodes.base import NodeResult
from flowrun.runtime.trace_schemas import AttemptRecord, ErrorInfo, utc_now_iso

logger = logging.getLogger(__name__)

# on_retry(retry_number, delay_seconds, error)
RetryCallback = Callable[[int, float, NodeExecutionError], Awaitable[None]]


class UnexpectedNodeError(NodeExecutionError):
    """An executor raised something other than a NodeExecutionError."""

    kind = "unexpected_error"

    def __init__(self, message: str, stacktrace: str):
        super().__init__(message, retryable=False, details={"stacktrace": stacktrace})
        self.stacktrace = stacktrace


def error_info(error: NodeExecutionError) -> ErrorInfo:
    return ErrorInfo(
        kind=error.kind,
        message=str(error),
        retryable=error.retryable,
        stacktrace=getattr(error, "stacktrace", ""),
    )


def should_retry(node: NodeSpec, error: NodeExecutionError, attempt: int) -> bool:
    """True if ``error`` on attempt ``attempt`` (1-based) earns another attempt."""
    if attempt >= node.retry.max_attempts:
        return False
    if (
        isinstance(error, ProviderError)
        and error.provider_kind == ProviderErrorKind.UNKNOWN
        and not node.retry.retry_unknown_errors
    ):
        return False
    return error.retryable


async def execute_with_retry(
    node: NodeSpec,
    attempt_fn: Callable[[int], Awaitable[NodeResult]],
    attempts: list[AttemptRecord],
    on_retry: RetryCallback | None = None,
) -> NodeResult:
    """
    Run ``attempt_fn(attempt_number)`` until it succeeds or retries run out.

    Raises:
        NodeExecutionError: the last attempt's error once no retry is left
        asyncio.CancelledError: the node task was cancelled
        RunCancelled: the executor saw the run's cancellation token
    """
    attempt = 0
    while True:
        attempt += 1
        record = AttemptRecord(attempt=attempt, started_at=utc_now_iso())
        start = time.monotonic()
        try:
            async with asyncio.timeout(node.timeout_seconds):
                result = await attempt_fn(attempt)
        except TimeoutError:
            error: NodeExecutionError = ExecutionTimeout(
                f"Node '{node.id}' timed out after {node.timeout_seconds}s",
                timeout_seconds=node.timeout_seconds,
            )
        except NodeExecutionError as e:
            error = e
        except (asyncio.CancelledError, RunCancelled):
            _close(record, start, "cancelled")
            attempts.append(record)
            raise
        except Exception as e:
            error = UnexpectedNodeError(
                f"Unexpected {type(e).__name__} in node '{node.id}': {e}",
                traceback.format_exc(),
            )
        else:
            _close(record, start, "succeeded")
            attempts.append(record)
            return result

        _close(record, start, "failed", error)
        attempts.append(record)

        if not should_retry(node, error, attempt):
            if attempt > 1:
                logger.error(f"      ✗ Failed after {attempt} attempts: {error}")
            raise error

        delay = node.retry.delay_for(attempt)
        logger.warning(
            f"      ↻ Retrying ({attempt}/{node.retry.max_retries}) in {delay}s: {error}",
            extra={"attempt": attempt},
        )
        if on_retry is not None:
            await on_retry(attempt, delay, error)
        await asyncio.sleep(delay)


def _close(
    record: AttemptRecord,
    start: float,
    status: str,
    error: NodeExecutionError | None = None,
) -> None:
    record.ended_at = utc_now_iso()
    record.duration_ms = int((time.monotonic() - start) * 1000)
    record.status = status
    if error is not None:
        record.error = error_info(error)
