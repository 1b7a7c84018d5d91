"""
Bounded retry for provider and action-interface calls.

Transient failures are retried with capped exponential backoff. Anything that
is not already a node error is classified as terminal, so an SDK exception
fails one node instead of the whole walk.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from convergent.config import EngineConfig
from convergent.errors import (
    ApplyCancelled,
    NodeError,
    ProviderTerminalError,
    ProviderTransientError,
    RetriesExhausted,
)

logger = logging.getLogger(__name__)


def backoff_delay(config: EngineConfig, attempt: int) -> float:
    return min(config.retry_base_delay * (2 ** (attempt - 1)), config.retry_max_delay)


def classify(operation: str, exc: Exception) -> NodeError:
    """Node errors pass through; anything else becomes ProviderTerminalError."""
    if isinstance(exc, NodeError):
        return exc
    return ProviderTerminalError(f"{operation}: {exc}")


async def call_with_retry(
    call: Callable[[], Awaitable[Any]],
    config: EngineConfig,
    address: str,
    operation: str,
    cancelled: Callable[[], bool] = lambda: False,
    on_attempt: Optional[Callable[[], None]] = None,
) -> Any:
    """
    Await ``call()`` up to ``config.max_attempts`` times.

    The wait between attempts happens outside the worker pool. Raises
    RetriesExhausted when every attempt failed transiently.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, config.max_attempts + 1):
        if cancelled():
            raise ApplyCancelled("cancelled")
        if on_attempt is not None:
            on_attempt()
        try:
            return await call()
        except ProviderTransientError as exc:
            last_error = exc
            if attempt == config.max_attempts:
                break
            delay = backoff_delay(config, attempt)
            logger.warning(
                "%s: %s failed (attempt %d/%d), retrying in %.1fs: %s",
                address, operation, attempt, config.max_attempts, delay, exc,
            )
            await asyncio.sleep(delay)
        except NodeError:
            raise
        except Exception as exc:
            raise classify(operation, exc) from exc
    raise RetriesExhausted(config.max_attempts, last_error)
