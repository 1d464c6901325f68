"""
Timeout wrapper for calls into external collaborators.

The generation service, the record store and the source tree can all hang.
Every call into them goes through ``call_with_timeout`` so a stuck dependency
surfaces as ``ExternalServiceError`` instead of blocking a session forever.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, TypeVar

from promptloop.const import EXTERNAL_CALL_TIMEOUT
from promptloop.errors import ExternalServiceError, PromptLoopError

logger = logging.getLogger("promptloop.external")

T = TypeVar("T")

_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="promptloop-external")


def call_with_timeout(
    func: Callable[..., T],
    *args: Any,
    service: str,
    timeout: float | None = EXTERNAL_CALL_TIMEOUT,
    **kwargs: Any
) -> T:
    """
    Run ``func`` on a worker thread and wait at most ``timeout`` seconds.

    Args:
        func: The external call
        service: Name of the collaborator, recorded on the raised error
        timeout: Seconds to wait; ``None`` waits indefinitely

    Returns:
        Whatever ``func`` returns

    Raises:
        ExternalServiceError: On timeout, or when ``func`` raises anything that
            is not already a ``PromptLoopError``
    """
    future = _executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as e:
        future.cancel()
        logger.error(f"[bold red][EXTERNAL][/bold red] {service} call timed out after {timeout}s")
        raise ExternalServiceError(f"{service} call timed out after {timeout}s", service=service) from e
    except PromptLoopError:
        raise
    except Exception as e:
        raise ExternalServiceError(f"{service} call failed: {e}", service=service) from e
