# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import threading
import time
from logging import getLogger
from queue import Empty, Queue
from typing import Any, Callable, Iterator, Optional, Tuple

from attrs import define, field, frozen

from .files import FileEntry

logger = getLogger(__name__)

_CLOSED = object()


@frozen
class ProcessingResult:
    """Outcome of processing one directory or file of the worklist"""

    source: Optional[FileEntry]
    target: Optional[FileEntry] = None
    duration: float = 0.0  # seconds
    error: Optional[BaseException] = None

    @property
    def is_file(self) -> bool:
        return self.source is not None and not self.source.is_dir


@frozen
class ProgressStatus:
    total: int
    done: int
    errors: int
    total_size: int  # bytes of all source files
    src_size: int  # bytes of processed source files
    tgt_size: int  # bytes of created target files
    diskspace: int  # free bytes on the target device at start
    elapsed: float
    remaining: float
    throughput: float  # items per minute
    avg_duration: float
    compression: float  # target bytes / source bytes
    est_size: int  # estimated total target size
    est_free: int  # estimated free space after the run

    @property
    def todo(self) -> int:
        return self.total - self.done


@define
class Tracker:
    """Aggregates processing results into progress figures.

    update() must only be called from one thread. status() and the event
    readers (events(), watch()) may be used from any thread. Only results of
    files are forwarded to the event readers, directories are counted only.
    """

    total: int
    total_size: int
    diskspace: int
    clock: Callable[[], float] = time.monotonic
    done: int = field(init=False, default=0)
    errors: int = field(init=False, default=0)
    src_size: int = field(init=False, default=0)
    tgt_size: int = field(init=False, default=0)
    duration: float = field(init=False, default=0.0)
    started: Optional[float] = field(init=False, default=None)
    stopped: Optional[float] = field(init=False, default=None)
    _lock: threading.Lock = field(init=False, factory=threading.Lock)
    _events: "Queue[Any]" = field(init=False, factory=Queue)

    def start(self) -> None:
        self.started = self.clock()

    def update(self, result: ProcessingResult) -> None:
        with self._lock:
            self.done += 1
            if result.error is not None:
                self.errors += 1
            if result.is_file:
                self.src_size += result.source.size
            if result.target is not None and not result.target.is_dir:
                self.tgt_size += result.target.size
            self.duration += result.duration
        if result.is_file:
            self._events.put(result)

    def close(self) -> None:
        """Freeze the elapsed time and end the event stream"""
        with self._lock:
            self.stopped = self.clock()
        self._events.put(_CLOSED)

    def status(self) -> ProgressStatus:
        with self._lock:
            done = self.done
            src_size = self.src_size
            tgt_size = self.tgt_size
            duration = self.duration
            errors = self.errors
            if self.started is None:
                elapsed = 0.0
            else:
                elapsed = (self.stopped or self.clock()) - self.started

        remaining = elapsed * (self.total - done) / done if done else 0.0
        throughput = done / (elapsed / 60) if elapsed > 0 else 0.0
        avg_duration = duration / done if done else 0.0
        compression = tgt_size / src_size if src_size else 0.0
        est_size = int(compression * self.total_size)
        return ProgressStatus(
            total=self.total,
            done=done,
            errors=errors,
            total_size=self.total_size,
            src_size=src_size,
            tgt_size=tgt_size,
            diskspace=self.diskspace,
            elapsed=elapsed,
            remaining=remaining,
            throughput=throughput,
            avg_duration=avg_duration,
            compression=compression,
            est_size=est_size,
            est_free=self.diskspace - est_size,
        )

    def events(self) -> Iterator[ProcessingResult]:
        """Forwarded file results until the tracker is closed"""
        while True:
            item = self._events.get()
            if item is _CLOSED:
                return
            yield item

    def watch(
        self, interval: float = 1.0
    ) -> Iterator[Tuple[ProgressStatus, Optional[ProcessingResult]]]:
        """Yield the current status per forwarded result and at least every
        interval seconds. Ends with a final status once the tracker is
        closed."""
        while True:
            try:
                item = self._events.get(timeout=interval)
            except Empty:
                yield self.status(), None
                continue
            if item is _CLOSED:
                yield self.status(), None
                return
            yield self.status(), item
