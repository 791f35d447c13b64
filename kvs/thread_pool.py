"""Thread pools that run jobs in the background."""

from __future__ import annotations

import logging
import queue
import threading
import weakref
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from .errors import KvsError

logger = logging.getLogger(__name__)

Job = Callable[[], object]


def _run_job(job: Job) -> None:
    try:
        job()
    except Exception:
        logger.exception("Task in thread pool failed")


class ThreadPool(ABC):
    """Base of all thread pools.

    A job that raises is logged; the pool keeps working with the same
    number of threads.
    """

    def __init__(self, threads: int) -> None:
        if threads < 0:
            raise ValueError("thread count must not be negative")
        self.threads = threads

    @abstractmethod
    def spawn(self, job: Job) -> None:
        """Run ``job`` on the pool."""


class NaiveThreadPool(ThreadPool):
    """Not really a pool: every job gets a new thread."""

    def spawn(self, job: Job) -> None:
        threading.Thread(target=_run_job, args=(job,), daemon=True).start()


def _run_tasks(tasks: "queue.SimpleQueue[Job | None]") -> None:
    while (job := tasks.get()) is not None:
        _run_job(job)
    logger.debug("Thread exits because the thread pool is destroyed.")


def _stop_workers(tasks: "queue.SimpleQueue[Job | None]", count: int) -> None:
    for _ in range(count):
        tasks.put(None)


class SharedQueueThreadPool(ThreadPool):
    """A fixed set of worker threads taking jobs from one shared queue."""

    def __init__(self, threads: int) -> None:
        super().__init__(threads)
        self._tasks: "queue.SimpleQueue[Job | None]" = queue.SimpleQueue()
        self._workers: list[threading.Thread] = []
        for index in range(threads):
            worker = threading.Thread(
                target=_run_tasks,
                args=(self._tasks,),
                name=f"kvs-shared-queue-{index}",
                daemon=True,
            )
            try:
                worker.start()
            except RuntimeError as exc:
                _stop_workers(self._tasks, len(self._workers))
                raise KvsError(f"IO error: {exc}") from exc
            self._workers.append(worker)
        weakref.finalize(self, _stop_workers, self._tasks, len(self._workers))

    def spawn(self, job: Job) -> None:
        """Queue ``job``; raises KvsError if the pool has no thread."""
        if not self._workers:
            raise KvsError("The thread pool has no thread.")
        self._tasks.put(job)


class ExecutorThreadPool(ThreadPool):
    """A pool backed by ``concurrent.futures.ThreadPoolExecutor``.

    A thread count of zero picks the executor's default size.
    """

    def __init__(self, threads: int) -> None:
        super().__init__(threads)
        try:
            self._executor = ThreadPoolExecutor(
                max_workers=threads or None, thread_name_prefix="kvs-executor"
            )
        except ValueError as exc:
            raise KvsError(str(exc)) from exc
        weakref.finalize(self, self._executor.shutdown, wait=False)

    def spawn(self, job: Job) -> None:
        self._executor.submit(_run_job, job)