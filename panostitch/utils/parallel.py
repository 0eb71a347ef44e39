"""
Bounded worker pool helpers
"""

import concurrent.futures
import logging
import threading
from typing import Callable, List, Optional, Sequence, TypeVar

import psutil

logger = logging.getLogger(__name__)

T = TypeVar('T')
R = TypeVar('R')


def worker_count(max_workers: Optional[int] = None, tasks: Optional[int] = None) -> int:
    """Pool size from the configured limit, else the logical CPU count"""
    count = max_workers or psutil.cpu_count(logical=True) or 1
    if tasks is not None:
        count = min(count, max(tasks, 1))
    return max(int(count), 1)


def check_cancel(cancel_event: Optional[threading.Event]):
    if cancel_event is not None and cancel_event.is_set():
        raise InterruptedError("Stitching operation cancelled")


def parallel_map(fn: Callable[[T], R], items: Sequence[T],
                 max_workers: Optional[int] = None,
                 cancel_event: Optional[threading.Event] = None,
                 on_done: Optional[Callable[[int, int], None]] = None) -> List[R]:
    """
    Apply fn to every item on a thread pool

    Results are returned in item order regardless of completion order.
    Exceptions raised by fn propagate to the caller. A set cancel_event
    stops collection and raises InterruptedError.

    Args:
        fn: Function applied to each item
        items: Work items
        max_workers: Pool size limit (None = CPU count)
        cancel_event: Checked after every completed task
        on_done: Called with (completed, total) after every completed task
    """
    total = len(items)
    if total == 0:
        return []

    results: List[Optional[R]] = [None] * total
    workers = worker_count(max_workers, total)
    logger.debug(f"Running {total} tasks on {workers} workers")

    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as executor:
        future_map = {executor.submit(fn, item): k for k, item in enumerate(items)}
        completed = 0
        try:
            for future in concurrent.futures.as_completed(future_map):
                check_cancel(cancel_event)
                results[future_map[future]] = future.result()
                completed += 1
                if on_done:
                    on_done(completed, total)
        except BaseException:
            for future in future_map:
                future.cancel()
            raise
    return results
