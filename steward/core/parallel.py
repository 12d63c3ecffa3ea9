"""Parallel fan-out for independent invocations and script executions.

CommandInvoker and ScriptSandbox hold no per-call state and never raise, so
several sessions can run side by side on a thread pool. Each call still
performs exactly one blocking subprocess.
"""

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class ParallelExecutionError(Exception):
    """Error during parallel execution."""

    pass


def run_parallel(
    func: Callable[[T], R],
    items: Iterable[T],
    max_workers: int = 4,
) -> list[R]:
    """Apply func to every item on a thread pool, preserving input order.

    Args:
        func: Callable run once per item (e.g. CommandInvoker.execute)
        items: Inputs, one per call
        max_workers: Thread pool size

    Returns:
        Results in the same order as items

    Raises:
        ParallelExecutionError: If func raised for any item
    """
    if max_workers < 1:
        raise ValueError(f"max_workers must be >= 1, got {max_workers}")

    work = list(items)
    if not work:
        return []

    logger.debug(f"Running {len(work)} calls on up to {max_workers} threads")
    with ThreadPoolExecutor(max_workers=min(max_workers, len(work))) as pool:
        futures = [pool.submit(func, item) for item in work]
        results: list[R] = []
        for index, future in enumerate(futures):
            try:
                results.append(future.result())
            except Exception as e:
                raise ParallelExecutionError(f"Call {index} failed: {e}") from e
    return results
