# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import shutil
import threading
import time
from datetime import datetime, timezone
from enum import Enum, auto
from logging import getLogger
from typing import Optional

from attrs import define, field, frozen

from .config import LOG_FILE_NAME, ConfigException, SyncConfig
from .conversion import ConversionException
from .files import (
    FileEntry,
    clear_dir,
    make_dir,
    remove_if_empty,
    remove_obsolete,
    sp,
)
from .pool import Task, WorkerPool
from .scanner import DiffScanner, Worklist, WorklistItem
from .tracking import ProcessingResult, Tracker

logger = getLogger(__name__)


class SyncException(Exception):
    pass


class RunState(Enum):
    IDLE = auto()
    SCANNING = auto()
    NOTHING_TO_DO = auto()
    PROCESSING = auto()
    STOPPED = auto()
    DONE = auto()


@frozen
class RunSummary:
    state: RunState
    dirs: int
    files: int
    done: int
    errors: int
    elapsed: float

    @property
    def remaining(self) -> int:
        return self.dirs + self.files - self.done


@define
class Synchronizer:
    """Runs one synchronization of config.tgt_dir with config.src_dir.

    scan() determines the worklist, process() starts converting it in the
    background and returns the Tracker to follow the progress, wait()
    blocks until processing is over. stop() may be called at any time from
    any thread: running conversions are completed, everything else is
    dropped and the last sync time is kept, so the next run picks up the
    rest.
    """

    config: SyncConfig
    init: bool = False  # wipe the target and do a full sync
    state: RunState = field(init=False, default=RunState.IDLE)
    worklist: Optional[Worklist] = field(init=False, default=None)
    tracker: Optional[Tracker] = field(init=False, default=None)
    _started: Optional[datetime] = field(init=False, default=None)
    _pool: Optional[WorkerPool] = field(init=False, default=None)
    _thread: Optional[threading.Thread] = field(init=False, default=None)
    _stop_requested: threading.Event = field(init=False, factory=threading.Event)
    _error: Optional[BaseException] = field(init=False, default=None)

    @property
    def full_sync(self) -> bool:
        """Everything is synchronized, unless an interrupted run is resumed"""
        if self.init:
            return True
        return self.config.last_sync is None and not self.config.wip

    def scan(self) -> Worklist:
        self.state = RunState.SCANNING
        self._started = datetime.now(timezone.utc)
        logger.info("Finding differences in %s", str(self.config.src_dir))
        scanner = DiffScanner(config=self.config, full_sync=self.full_sync)
        self.worklist = scanner.scan()
        if not len(self.worklist):
            logger.info("Nothing to synchronize")
            self.state = RunState.NOTHING_TO_DO
        return self.worklist

    def process(self, worklist: Optional[Worklist] = None) -> Optional[Tracker]:
        """Start processing worklist (default: result of scan()).

        Returns None if there is nothing to do or a stop was requested
        before processing started. The target is not touched then.

        Raises:
            SyncException: The target could not be prepared.
        """
        if worklist is not None:
            self.worklist = worklist
        if self.worklist is None:
            raise SyncException("Nothing scanned yet.")
        if not len(self.worklist):
            self.state = RunState.NOTHING_TO_DO
            return None
        if self._stop_requested.is_set():
            logger.info("Stopped before processing")
            self.state = RunState.STOPPED
            return None
        if self._started is None:
            self._started = datetime.now(timezone.utc)

        config = self.config
        try:
            shutil.rmtree(config.err_dir, ignore_errors=False)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise SyncException(f"Could not delete error directory: {e}") from e

        try:
            config.set_wip()
        except ConfigException as e:
            raise SyncException(str(e)) from e

        if self.init:
            logger.info("Deleting all entries of the target directory")
            try:
                keep = [config.config_path.name, LOG_FILE_NAME]
                clear_dir(config.tgt_dir, keep=keep)
            except OSError as e:
                raise SyncException(f"Could not clear target directory: {e}") from e

        try:
            diskspace = shutil.disk_usage(config.tgt_dir).free
        except OSError as e:
            raise SyncException(f"Could not determine free disk space: {e}") from e

        self.tracker = Tracker(
            total=len(self.worklist),
            total_size=self.worklist.total_size,
            diskspace=diskspace,
        )
        self._pool = WorkerPool(num_workers=config.num_converters)
        self.state = RunState.PROCESSING
        self._thread = threading.Thread(target=self._run, name="collector")
        self._thread.start()
        return self.tracker

    def stop(self) -> None:
        """Request a cooperative stop"""
        self._stop_requested.set()
        if self._pool is not None:
            self._pool.stop()

    def wait(self) -> RunSummary:
        """Wait for processing to end.

        Raises:
            SyncException: The run could not be finalized.
        """
        if self._thread is not None:
            self._thread.join()
        if self._error is not None:
            error = self._error
            raise SyncException(f"Run could not be finalized: {error}") from error
        return self.summary()

    def run(self) -> RunSummary:
        """scan(), process() and wait() in one go"""
        self.scan()
        self.process()
        return self.wait()

    def summary(self) -> RunSummary:
        worklist = self.worklist or Worklist()
        status = self.tracker.status() if self.tracker is not None else None
        return RunSummary(
            state=self.state,
            dirs=len(worklist.dirs),
            files=len(worklist.files),
            done=status.done if status else 0,
            errors=status.errors if status else 0,
            elapsed=status.elapsed if status else 0.0,
        )

    def _run(self) -> None:
        pool = self._pool
        tracker = self.tracker
        tracker.start()
        try:
            self._submit_all()
            pool.close()
            for result in pool.results():
                processed = result.value
                if result.error is not None:
                    processed = ProcessingResult(source=None, error=result.error)
                tracker.update(processed)
            pool.wait()

            if pool.stopped:
                logger.info(
                    "Stopped with %d of %d items done", tracker.done, tracker.total
                )
                self.state = RunState.STOPPED
            else:
                self._finalize()
                self.state = RunState.DONE
        except Exception as e:
            logger.error("Processing failed", exc_info=e)
            self._error = e
            self.state = RunState.STOPPED
        finally:
            tracker.close()

    def _submit_all(self) -> None:
        # Directories first, they are few and cheap
        for item in self.worklist.dirs:
            if not self._submit(Task(str(item.source), self.process_dir, item)):
                return
        for item in self.worklist.files:
            if not self._submit(Task(str(item.source), self.process_file, item)):
                return

    def _submit(self, task: Task) -> bool:
        if self._stop_requested.is_set():
            self._pool.stop()
            return False
        return self._pool.submit(task)

    def _finalize(self) -> None:
        config = self.config
        if remove_if_empty(config.tgt_dir / LOG_FILE_NAME):
            logger.debug("Removed empty log file")
        try:
            config.set_done(self._started)
        except ConfigException as e:
            raise SyncException(str(e)) from e

    def process_dir(self, item: WorklistItem) -> ProcessingResult:
        """Create the target directory or delete obsolete entries from it"""
        start = time.monotonic()
        tgt = item.target
        try:
            if tgt.is_dir():
                keep = self.config.own_files if tgt == self.config.tgt_dir else []
                remove_obsolete(item.source, tgt, keep=keep)
            else:
                logger.debug("  Creating dir %s", sp(tgt))
                make_dir(tgt)
            target = FileEntry.from_path(tgt)
        except OSError as e:
            logger.error("Could not process directory %s: %s", str(tgt), e)
            return ProcessingResult(
                source=item.entry, duration=time.monotonic() - start, error=e
            )
        return ProcessingResult(
            source=item.entry, target=target, duration=time.monotonic() - start
        )

    def process_file(self, item: WorklistItem) -> ProcessingResult:
        """Convert or copy one file to its target"""
        start = time.monotonic()
        src = item.source
        tgt = item.target
        try:
            conversion, norm = self.config.conversion_for(src)
            make_dir(tgt.parent)
            if tgt.is_dir():
                shutil.rmtree(tgt)
            logger.info("    Converting %s (%s)", sp(src), norm)
            conversion.execute(src, tgt, norm, self.config.err_dir)
            target = FileEntry.from_path(tgt)
        except (ConversionException, OSError, ValueError) as e:
            logger.error("Could not convert %s: %s", str(src), e)
            return ProcessingResult(
                source=item.entry, duration=time.monotonic() - start, error=e
            )
        return ProcessingResult(
            source=item.entry, target=target, duration=time.monotonic() - start
        )
