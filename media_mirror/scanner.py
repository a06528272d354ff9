# SPDX-FileCopyrightText: 2022-present Matthew Swabey <matthew@swabey.org>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

import os
import stat
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from enum import Enum, auto
from logging import getLogger
from pathlib import Path
from queue import Empty, Queue
from typing import Callable, List, Set, Tuple

from attrs import define, field, frozen

from .config import SyncConfig
from .files import FileEntry, sp

logger = getLogger(__name__)


class ScanException(Exception):
    pass


class Propagate(Enum):
    """What a directory hands down to its entries"""

    NONE = auto()  # entries are judged on their own
    VALID = auto()  # entries are valid without further checks
    INVALID = auto()  # entries are skipped, no descent


Filter = Callable[[FileEntry, Propagate], Tuple[bool, Propagate]]
Found = Tuple[List[FileEntry], List[FileEntry]]


@define
class TreeFinder:
    """Concurrent directory traversal. Every directory listing runs as its
    own job on a thread pool of num_walkers threads. Each job filters the
    entries of its directory and submits a new job per sub directory the
    filter did not rule out."""

    filter: Filter
    num_walkers: int
    _pool: ThreadPoolExecutor = field(init=False, default=None)
    _results: "Queue[Future]" = field(init=False, factory=Queue)

    def find(self, root: Path) -> Found:
        """Return (dirs, files) below root that passed the filter. root
        itself is filtered like any other directory.

        Raises:
            ScanException: root is not a directory.
        """
        if not root.is_dir():
            raise ScanException(f"{root} is not a directory.")
        root_entry = FileEntry.from_path(root)
        valid, propagate = self.filter(root_entry, Propagate.NONE)

        dirs: List[FileEntry] = [root_entry] if valid else []
        files: List[FileEntry] = []
        if propagate is Propagate.INVALID:
            return dirs, files

        with ThreadPoolExecutor(
            max_workers=self.num_walkers, thread_name_prefix="walker"
        ) as pool:
            self._pool = pool
            self._descend(root_entry, propagate)

            # Drain the results queue of Futures. A job queues the futures
            #  of its sub directories before it finishes, so once a job is
            #  done all of its children are in the queue.
            futures: Set[Future] = {self._results.get()}
            while futures:
                done, futures = wait(futures, return_when=FIRST_COMPLETED)
                for future in done:
                    found_dirs, found_files = future.result()
                    dirs.extend(found_dirs)
                    files.extend(found_files)
                while True:  # queue.empty() isn't reliable
                    try:
                        futures.add(self._results.get(block=False))
                    except Empty:
                        break
        self._pool = None
        return dirs, files

    def _descend(self, entry: FileEntry, propagate: Propagate) -> None:
        self._results.put(self._pool.submit(self._walk_thread, entry, propagate))

    def _walk_thread(self, entry: FileEntry, propagate: Propagate) -> Found:
        logger.debug("Walking '%s'", str(entry.path))
        dirs: List[FileEntry] = []
        files: List[FileEntry] = []
        try:
            with os.scandir(entry.path) as it:
                children = sorted(it, key=lambda child: child.name)
        except OSError as e:
            logger.error("Cannot read directory %s: %s", str(entry.path), e)
            return dirs, files

        for child in children:
            try:
                is_dir = child.is_dir()
                if not is_dir and not child.is_file():
                    logger.debug("  Ignoring non regular %s", sp(Path(child.path)))
                    continue
                child_entry = FileEntry.from_dir_entry(child)
            except OSError as e:
                logger.error("Cannot stat %s: %s", child.path, e)
                continue

            valid, sub = self.filter(child_entry, propagate)
            if is_dir:
                if valid:
                    dirs.append(child_entry)
                if sub is not Propagate.INVALID:
                    self._descend(child_entry, sub)
            elif valid:
                files.append(child_entry)
        return dirs, files


@frozen
class WorklistItem:
    entry: FileEntry
    target: Path

    @property
    def source(self) -> Path:
        return self.entry.path

    @property
    def is_dir(self) -> bool:
        return self.entry.is_dir


@define
class Worklist:
    dirs: List[WorklistItem] = field(factory=list)
    files: List[WorklistItem] = field(factory=list)

    def __len__(self) -> int:
        return len(self.dirs) + len(self.files)

    @property
    def total_size(self) -> int:
        """Aggregated size of all source files"""
        return sum(item.entry.size for item in self.files)


@define
class DiffScanner:
    """Finds the directories and files of the source tree that need to be
    synchronized to the target tree.

    For each entry the filter decides whether the entry is relevant and
    what its directory hands down to the entries below it:

    - a file without a conversion rule is irrelevant
    - an excluded directory is irrelevant together with everything below
    - below a directory whose target counterpart is missing everything is
      relevant, further target checks are skipped
    - with full_sync, or with neither last sync time nor wip marker,
      everything but the root is relevant
    - otherwise an entry whose target exists is relevant if it was changed
      after the last sync. If the previous run did not finish (wip), the
      last sync time is not trusted: directories are always relevant and
      files are relevant if they are newer than their target.

    If use_propagation is False every entry is checked on its own, which
    yields the same result with more target look-ups.
    """

    config: SyncConfig
    full_sync: bool = False
    use_propagation: bool = True

    def scan(self) -> Worklist:
        finder = TreeFinder(
            filter=self.is_relevant, num_walkers=self.config.num_walkers
        )
        dirs, files = finder.find(self.config.src_dir)
        worklist = Worklist()
        for entry in sorted(dirs, key=lambda e: e.path):
            worklist.dirs.append(WorklistItem(entry, self._target(entry)))
        for entry in sorted(files, key=lambda e: e.path):
            worklist.files.append(WorklistItem(entry, self._target(entry)))
        logger.info(
            "Found %d directories and %d files to synchronize",
            len(worklist.dirs),
            len(worklist.files),
        )
        return worklist

    def _target(self, entry: FileEntry) -> Path:
        return self.config.target_path(entry.path, entry.is_dir)

    def is_relevant(
        self, entry: FileEntry, propagate: Propagate
    ) -> Tuple[bool, Propagate]:
        config = self.config
        if entry.is_dir:
            if config.is_excluded(entry.path):
                logger.debug("  Excluded %s", sp(entry.path))
                return False, Propagate.INVALID
            sub = Propagate.VALID if self.use_propagation else Propagate.NONE
        else:
            if config.get_rule(entry.path) is None or config.is_excluded(entry.path):
                return False, Propagate.NONE
            sub = Propagate.NONE

        if propagate is Propagate.VALID:
            return True, sub

        is_root = entry.path == config.src_dir
        if self.full_sync or (config.last_sync is None and not config.wip):
            return not is_root, sub

        try:
            tgt = self._target(entry)
        except ValueError as e:
            logger.error("Target path cannot be assembled: %s", e)
            return False, Propagate.NONE
        try:
            st = tgt.stat()
        except (FileNotFoundError, NotADirectoryError):
            return True, sub
        except OSError as e:
            logger.error("Cannot determine if '%s' exists: %s", str(tgt), e)
            return False, Propagate.NONE

        if entry.is_dir != stat.S_ISDIR(st.st_mode):
            # wrong kind of entry at the target path
            return True, sub
        if config.wip:
            return entry.is_dir or entry.mtime > st.st_mtime, Propagate.NONE
        return entry.mtime > config.last_sync.timestamp(), Propagate.NONE
