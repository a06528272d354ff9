"""Tests for progress tracking."""

import threading
from pathlib import Path
from typing import List

import pytest

from media_mirror.files import FileEntry
from media_mirror.tracking import ProcessingResult, Tracker


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def file_result(src_size: int, tgt_size: int, duration: float = 2.0):
    return ProcessingResult(
        source=FileEntry(Path("/src/a.flac"), 0.0, src_size, False),
        target=FileEntry(Path("/tgt/a.mp3"), 0.0, tgt_size, False),
        duration=duration,
    )


def dir_result() -> ProcessingResult:
    return ProcessingResult(
        source=FileEntry(Path("/src/b"), 0.0, 4096, True),
        target=FileEntry(Path("/tgt/b"), 0.0, 4096, True),
        duration=0.5,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tracker(clock: FakeClock) -> Tracker:
    return Tracker(total=4, total_size=4000, diskspace=10_000, clock=clock)


class TestStatus:
    """Tests for the figures derived from processed items."""

    def test_before_start(self, tracker: Tracker) -> None:
        status = tracker.status()
        assert status.done == 0
        assert status.todo == 4
        assert status.elapsed == 0.0
        assert status.remaining == 0.0
        assert status.compression == 0.0
        assert status.est_free == 10_000

    def test_arithmetic(self, tracker: Tracker, clock: FakeClock) -> None:
        tracker.start()
        clock.now += 30.0
        tracker.update(file_result(1000, 250, duration=3.0))
        tracker.update(file_result(1000, 250, duration=1.0))
        status = tracker.status()

        assert status.done == 2
        assert status.todo == 2
        assert status.elapsed == 30.0
        assert status.remaining == pytest.approx(30.0 * 2 / 2)
        assert status.throughput == pytest.approx(2 / 0.5)
        assert status.avg_duration == pytest.approx(2.0)
        assert status.compression == pytest.approx(0.25)
        assert status.est_size == 1000
        assert status.est_free == 9000

    def test_dirs_count_but_have_no_size(self, tracker: Tracker) -> None:
        tracker.start()
        tracker.update(dir_result())
        status = tracker.status()
        assert status.done == 1
        assert status.src_size == 0
        assert status.tgt_size == 0

    def test_errors(self, tracker: Tracker) -> None:
        tracker.start()
        tracker.update(
            ProcessingResult(
                source=FileEntry(Path("/src/a.flac"), 0.0, 1000, False),
                error=RuntimeError("boom"),
            )
        )
        tracker.update(ProcessingResult(source=None, error=RuntimeError("lost")))
        status = tracker.status()
        assert status.errors == 2
        assert status.done == 2
        assert status.src_size == 1000
        assert status.tgt_size == 0

    def test_close_freezes_elapsed(self, tracker: Tracker, clock: FakeClock) -> None:
        tracker.start()
        clock.now += 10.0
        tracker.close()
        clock.now += 50.0
        assert tracker.status().elapsed == 10.0


class TestEvents:
    """Tests for the event stream."""

    def test_only_files_are_forwarded(self, tracker: Tracker) -> None:
        tracker.start()
        tracker.update(dir_result())
        tracker.update(file_result(10, 5))
        tracker.close()
        events = list(tracker.events())
        assert len(events) == 1
        assert events[0].is_file

    def test_watch_ticks_and_ends(self, tracker: Tracker) -> None:
        tracker.start()
        seen: List[int] = []

        def produce() -> None:
            tracker.update(file_result(10, 5))
            tracker.close()

        thread = threading.Thread(target=produce)
        thread.start()
        for status, result in tracker.watch(interval=0.01):
            if result is not None:
                seen.append(status.done)
        thread.join()
        assert seen == [1]
