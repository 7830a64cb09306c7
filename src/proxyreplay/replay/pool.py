"""
ProxyReplay Worker Pool

Fixed set of long-lived worker threads. Each worker waits on its own
condition until it is handed a work item or the pool shuts down, runs the
item to completion, and goes back to the idle queue.
"""

import logging
import queue
import threading
from typing import Any, Callable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 50


class ClientWorker:
    """One worker thread with a single-item hand-off slot."""

    def __init__(self, pool: 'WorkerPool', index: int):
        self.pool = pool
        self.index = index
        self._cond = threading.Condition()
        self._pending: Optional[Any] = None
        self._has_pending = False
        self.completed = 0
        self.thread = threading.Thread(
            target=self._run,
            name=f'replay-worker-{index}',
            daemon=True
        )

    def data_ready(self) -> bool:
        return self.pool.shutdown_requested or self._has_pending

    def assign(self, item: Any) -> None:
        """
        Hand a work item to this (idle) worker.

        Raises:
            RuntimeError: If the pool is shut down or the worker is busy
        """
        if self.pool.shutdown_requested:
            raise RuntimeError('Cannot assign work after shutdown')
        with self._cond:
            if self._has_pending:
                raise RuntimeError(f'Worker {self.index} already has pending work')
            self._pending = item
            self._has_pending = True
            self._cond.notify()

    def wake(self) -> None:
        with self._cond:
            self._cond.notify()

    def _run(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(self.data_ready)
                item = self._pending
                has_item = self._has_pending
                self._pending = None
                self._has_pending = False

            # Work assigned before shutdown still runs.
            if has_item:
                try:
                    self.pool.run_fn(item)
                except Exception:
                    logger.exception(f"Worker {self.index} failed running {item!r}")
                self.completed += 1

            if self.pool.shutdown_requested:
                return
            self.pool.release(self)


class WorkerPool:
    """
    Pool of ClientWorker threads.

    Example:
        pool = WorkerPool(size=8, run_fn=handle)
        pool.start()
        worker = pool.get_worker()
        worker.assign(item)
        pool.shutdown()
        pool.join()
    """

    def __init__(self, size: int = DEFAULT_POOL_SIZE, run_fn: Callable[[Any], Any] = None):
        """
        Initialize pool.

        Args:
            size: Number of worker threads
            run_fn: Called with each assigned work item on a worker thread
        """
        if size < 1:
            raise ValueError(f"Worker pool size must be at least 1, got {size}")
        if run_fn is None:
            raise ValueError("Worker pool needs a run function")

        self.size = size
        self.run_fn = run_fn
        self.workers: List[ClientWorker] = [ClientWorker(self, i) for i in range(size)]
        self._idle: 'queue.Queue[ClientWorker]' = queue.Queue()
        self._shutdown = threading.Event()
        self._started = False

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        for worker in self.workers:
            worker.thread.start()
            self._idle.put(worker)
        logger.debug(f"Started {self.size} replay workers")

    def get_worker(self, timeout: Optional[float] = None) -> Optional[ClientWorker]:
        """
        Next idle worker, blocking until one frees up.

        Args:
            timeout: Seconds to wait, None to wait forever

        Returns:
            An idle worker, or None on timeout or shutdown
        """
        if not self._started or self.shutdown_requested:
            return None
        try:
            return self._idle.get(timeout=timeout)
        except queue.Empty:
            return None

    def release(self, worker: ClientWorker) -> None:
        self._idle.put(worker)

    def shutdown(self) -> None:
        """Raise the shutdown flag and wake every worker."""
        self._shutdown.set()
        for worker in self.workers:
            worker.wake()

    def join(self, timeout: Optional[float] = None) -> None:
        for worker in self.workers:
            if worker.thread.is_alive():
                worker.thread.join(timeout)

    @property
    def completed(self) -> int:
        return sum(w.completed for w in self.workers)
