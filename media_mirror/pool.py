# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from logging import getLogger
from queue import Queue
from typing import Any, Callable, Iterator, Optional

from attrs import define, field, frozen

logger = getLogger(__name__)

_DONE = object()  # end of results
_SKIPPED = object()  # task was dequeued after stop()


@frozen
class Task:
    name: str
    func: Callable[[Any], Any]
    arg: Any = None


@frozen
class TaskResult:
    name: str
    value: Any = None
    error: Optional[BaseException] = None


@define
class WorkerPool:
    """Fixed number of worker threads that take tasks from a shared queue.

    Usage:
        pool = WorkerPool(num_workers=4)
        for task in tasks:
            pool.submit(task)
        pool.close()
        for result in pool.results():
            ...
        pool.wait()

    Results are yielded in completion order. stop() lets running tasks
    finish, discards queued ones and ends results() once the running
    tasks are done.
    """

    num_workers: int
    max_queued: int = 0  # 0: unbounded
    thread_name_prefix: str = "converter"
    discarded: int = field(init=False, default=0)
    _executor: ThreadPoolExecutor = field(init=False)
    _results: "Queue[Any]" = field(init=False, factory=Queue)
    _lock: threading.Lock = field(init=False, factory=threading.Lock)
    _capacity: Optional[threading.Semaphore] = field(init=False, default=None)
    _stopped: threading.Event = field(init=False, factory=threading.Event)
    _pending: int = field(init=False, default=0)
    _closed: bool = field(init=False, default=False)
    _done_sent: bool = field(init=False, default=False)

    def __attrs_post_init__(self) -> None:
        if self.num_workers < 1:
            raise ValueError(f"{self.num_workers} is not a positive integer.")
        self._executor = ThreadPoolExecutor(
            max_workers=self.num_workers,
            thread_name_prefix=self.thread_name_prefix,
        )
        if self.max_queued > 0:
            self._capacity = threading.Semaphore(self.num_workers + self.max_queued)
        logger.info("Worker pool created. Size: %d", self.num_workers)

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def submit(self, task: Task) -> bool:
        """Queue task. Blocks while the queue is full. Returns False if the
        pool does not accept tasks any more."""
        if self._capacity is not None:
            while not self._capacity.acquire(timeout=0.1):
                if self._stopped.is_set():
                    return False
        with self._lock:
            if self._closed:
                accepted = False
            else:
                accepted = True
                self._pending += 1
        if not accepted:
            self._release()
            return False
        try:
            future = self._executor.submit(self._execute, task)
        except RuntimeError:  # executor was shut down by stop()
            self._finish(None)
            return False
        future.add_done_callback(self._finish)
        return True

    def close(self) -> None:
        """No more tasks will be submitted"""
        with self._lock:
            self._closed = True
            send_done = self._pending == 0 and not self._done_sent
            self._done_sent = self._done_sent or send_done
        if send_done:
            self._results.put(_DONE)

    def stop(self) -> None:
        """Finish running tasks, discard queued ones"""
        logger.info("Stopping worker pool")
        self._stopped.set()
        self.close()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def wait(self) -> None:
        """Block until all worker threads have exited"""
        self._executor.shutdown(wait=True)

    def results(self) -> Iterator[TaskResult]:
        while True:
            item = self._results.get()
            if item is _DONE:
                return
            yield item

    def _execute(self, task: Task) -> Any:
        if self._stopped.is_set():
            return _SKIPPED
        try:
            return TaskResult(name=task.name, value=task.func(task.arg))
        except Exception as e:
            logger.error("Task %s failed", task.name, exc_info=e)
            return TaskResult(name=task.name, error=e)

    def _release(self) -> None:
        if self._capacity is not None:
            self._capacity.release()

    def _finish(self, future: Optional[Future]) -> None:
        if future is None or future.cancelled():
            result = _SKIPPED
        else:
            result = future.result()
        if result is _SKIPPED:
            with self._lock:
                self.discarded += 1
        else:
            self._results.put(result)
        self._release()
        with self._lock:
            self._pending -= 1
            send_done = self._closed and self._pending == 0 and not self._done_sent
            self._done_sent = self._done_sent or send_done
        if send_done:
            self._results.put(_DONE)
