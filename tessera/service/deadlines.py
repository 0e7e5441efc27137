"""Deadline-bounded calls into the identity store and the session store.

Infrastructure failures are logged with their detail and re-raised as a
generic ``ServerError``; storage constraint violations pass through so the
calling service can turn them into domain errors.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

from tessera.logging import get_logger, sanitize_error_message
from tessera.service.errors import ServerError
from tessera.storage.errors import ConstraintViolation

logger = get_logger(__name__)

T = TypeVar("T")


async def call_store(
    func: Callable[..., T],
    *args: Any,
    timeout: float,
    operation: str,
    **kwargs: Any,
) -> T:
    """Run a blocking identity-store method in a worker thread under a deadline."""
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
    except ConstraintViolation:
        raise
    except asyncio.TimeoutError as exc:
        logger.error("identity_store_timeout", operation=operation, timeout=timeout)
        raise ServerError("internal error") from exc
    except Exception as exc:
        logger.error(
            "identity_store_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        raise ServerError("internal error") from exc


async def call_session_store(
    awaitable: Awaitable[T], *, timeout: float, operation: str
) -> T:
    """Await a session-store coroutine under a deadline."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as exc:
        logger.error("session_store_timeout", operation=operation, timeout=timeout)
        raise ServerError("internal error") from exc
    except Exception as exc:
        logger.error(
            "session_store_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        raise ServerError("internal error") from exc
