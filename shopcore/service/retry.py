from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable

from shopcore.logging import get_logger
from shopcore.service.errors import ServerError, UpstreamError
from shopcore.storage.errors import StoreError, StoreUnavailable

logger = get_logger(__name__)

DEFAULT_BACKOFF_MS = 100  # Quadruples each retry: 100ms, 400ms, 1.6s


async def call_upstream(
    fn: Callable[..., Any],
    *args: Any,
    attempts: int = 1,
    backoff_ms: int = DEFAULT_BACKOFF_MS,
    operation: str | None = None,
    **kwargs: Any,
) -> Any:
    """Call a record-store or vendor operation, retrying only upstream failures.

    ``StoreUnavailable`` is wrapped as ``UpstreamError`` and ``StoreError`` as a
    non-retried ``ServerError``, so driver errors never leave the service
    layer. Every other exception propagates on the first attempt. Callers
    must only pass ``attempts > 1`` for operations that are safe to replay.
    """
    op_name = operation or getattr(fn, "__name__", "upstream_call")
    attempts = max(1, attempts)
    last_error: UpstreamError | None = None
    for attempt in range(1, attempts + 1):
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result
        except StoreUnavailable as exc:
            last_error = UpstreamError(
                "record store unavailable", detail={"operation": op_name}
            )
            last_error.__cause__ = exc
        except UpstreamError as exc:
            last_error = exc
        except StoreError as exc:
            logger.error("store_error", operation=op_name, error=exc.message, detail=exc.detail)
            raise ServerError(
                "record store rejected the operation", detail={"operation": op_name}
            ) from exc

        if attempt < attempts:
            sleep_ms = backoff_ms * (4 ** (attempt - 1))
            logger.warning(
                "upstream_retry",
                operation=op_name,
                attempt=attempt,
                backoff_ms=sleep_ms,
                error=last_error.message,
            )
            await asyncio.sleep(sleep_ms / 1000)

    logger.error("upstream_exhausted", operation=op_name, attempts=attempts)
    assert last_error is not None
    raise last_error
