"""
CollaboratorGateway -- bounded calls into external collaborators.

Responsibility:
    Runs every directory lookup, template check and event emission on a
    shared worker pool and waits at most a per-call timeout for the result.
    A timeout or an exception raised by the collaborator surfaces as
    ``DependencyUnavailableError``; callers decide whether that is fatal.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.  Used by
    AssigneeResolver, EventEmitter and the workflow service.

Invariants enforced:
    - No engine operation blocks indefinitely on a collaborator.
    - The pool size caps concurrent collaborator calls across all engine
      threads.
    - Log context (actor, aggregate ids) follows the call onto the worker
      thread.

Failure modes:
    - DependencyUnavailableError on timeout or collaborator exception.
      A timed-out call keeps running on its worker thread until it
      returns; its result is discarded.
"""

from __future__ import annotations

import contextvars
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable

from hierarchy_kernel.exceptions import DependencyUnavailableError
from hierarchy_kernel.logging_config import get_logger

logger = get_logger("services.collaborator_gateway")


class CollaboratorGateway:
    """Shared, bounded executor for collaborator calls."""

    def __init__(self, max_concurrency: int = 8, default_timeout: float = 2.0):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrency,
            thread_name_prefix="collaborator",
        )
        self._default_timeout = default_timeout

    def call(
        self,
        collaborator: str,
        operation: str,
        fn: Callable[..., Any],
        *args: Any,
        timeout: float | None = None,
    ) -> Any:
        """
        Invoke ``fn(*args)`` on the pool and wait up to ``timeout`` seconds.

        Raises:
            DependencyUnavailableError: the call timed out or raised.
        """
        limit = self._default_timeout if timeout is None else timeout
        ctx = contextvars.copy_context()
        future = self._executor.submit(ctx.run, fn, *args)
        try:
            return future.result(timeout=limit)
        except FuturesTimeoutError:
            future.cancel()
            logger.warning(
                "collaborator_timeout",
                extra={
                    "collaborator": collaborator,
                    "operation": operation,
                    "timeout_seconds": limit,
                },
            )
            raise DependencyUnavailableError(
                collaborator, operation, f"timed out after {limit}s",
            ) from None
        except Exception as exc:
            logger.warning(
                "collaborator_failed",
                extra={
                    "collaborator": collaborator,
                    "operation": operation,
                    "error_type": type(exc).__name__,
                },
            )
            raise DependencyUnavailableError(collaborator, operation, str(exc)) from exc

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait, cancel_futures=True)
