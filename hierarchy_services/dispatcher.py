"""
hierarchy_services.dispatcher -- Bounded parallel dispatch across aggregates.

Responsibility:
    Runs a batch of engine commands on a fixed-size worker pool.  Commands
    are keyed by aggregate identity: commands sharing a key run one after
    another in submission order, commands for distinct keys run in
    parallel.

Architecture position:
    Services -- outer layer.  Knows nothing about what a command does;
    the engine facade builds the commands.

Failure modes:
    - A command that raises is recorded in its ``DispatchOutcome.error``;
      the remaining commands for that key still run.  Nothing is retried.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Callable, Hashable, Sequence
from concurrent.futures import ThreadPoolExecutor
from contextvars import copy_context
from dataclasses import dataclass
from typing import Any

from hierarchy_kernel.logging_config import get_logger

logger = get_logger("services.dispatcher")

Command = tuple[Hashable, Callable[[], Any]]


@dataclass(frozen=True)
class DispatchOutcome:
    """Result of one dispatched command: a value or the exception it raised."""

    key: Hashable
    result: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ParallelDispatcher:
    """Fixed-size pool that serializes per key and parallelizes across keys."""

    def __init__(self, worker_pool_size: int = 4):
        if worker_pool_size < 1:
            raise ValueError("worker_pool_size must be at least 1")
        self._worker_pool_size = worker_pool_size

    @property
    def worker_pool_size(self) -> int:
        return self._worker_pool_size

    def run(self, commands: Sequence[Command]) -> list[DispatchOutcome]:
        """Run ``commands`` and return one outcome per command, in input order."""
        groups: OrderedDict[Hashable, list[int]] = OrderedDict()
        for index, (key, _) in enumerate(commands):
            groups.setdefault(key, []).append(index)

        outcomes: list[DispatchOutcome | None] = [None] * len(commands)

        def run_group(indices: list[int]) -> None:
            for i in indices:
                key, fn = commands[i]
                try:
                    outcomes[i] = DispatchOutcome(key=key, result=fn())
                except Exception as exc:
                    logger.warning(
                        "dispatch_command_failed",
                        extra={
                            "key": str(key),
                            "error_type": type(exc).__name__,
                            "error_code": getattr(exc, "code", None),
                        },
                    )
                    outcomes[i] = DispatchOutcome(key=key, error=exc)

        workers = min(self._worker_pool_size, max(len(groups), 1))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="dispatch",
        ) as pool:
            futures = [
                pool.submit(copy_context().run, run_group, indices)
                for indices in groups.values()
            ]
            for future in futures:
                future.result()

        failed = sum(1 for o in outcomes if o is not None and o.error is not None)
        logger.info(
            "dispatch_completed",
            extra={
                "commands": len(commands),
                "aggregates": len(groups),
                "failed": failed,
            },
        )
        return [o for o in outcomes if o is not None]
