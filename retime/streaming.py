# retime/streaming.py
"""
Chunked traversal of commit history.

History is read from the executor one page at a time (git log --max-count
plus --skip), so peak memory is bounded by the chunk size rather than the
length of the history. Smaller chunks mean more git invocations; larger
chunks mean higher peak usage. configure_for_system picks a point on that
curve from the resources available.

Responsibilities:
- Produce history chunks lazily, newest first, until an empty page
- Feed chunks to a caller supplied transform and aggregate results
- Report progress and ETA, and consult the memory monitor between chunks

This module does NOT:
- mutate the repository
- run chunks concurrently
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Union
import logging
import os
import time

import psutil

from retime.config import Config
from retime.memory import MemoryMonitor, format_bytes
from retime.progress import NullProgress, ProgressReporter
from retime.repo import Commit


logger = logging.getLogger(__name__)


MiB = 1024 * 1024
GiB = 1024 * MiB

DEFAULT_CHUNK_SIZE = 100
DEFAULT_MEMORY_THRESHOLD = 500 * MiB

# git has no concurrent-writer mode; parallelism only ever helps read-only
# traversal and the cost there is subprocess overhead, not CPU.
MAX_CONCURRENCY = 4


class HistorySource(Protocol):
    def log(
        self,
        *,
        since: Optional[str] = None,
        until: Optional[str] = None,
        author: Optional[str] = None,
        revision: Optional[str] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> List[Commit]: ...

    def count_commits(
        self,
        *,
        since: Optional[str] = None,
        until: Optional[str] = None,
        author: Optional[str] = None,
        revision: Optional[str] = None,
    ) -> int: ...


@dataclass(frozen=True)
class StreamingSettings:
    chunk_size: int
    memory_threshold: int
    recommended_concurrency: int


@dataclass(frozen=True)
class HistoryFilter:
    since: Optional[str] = None
    until: Optional[str] = None
    author: Optional[str] = None
    revision: Optional[str] = None


@dataclass(frozen=True)
class ChunkContext:
    chunk_index: int
    processed_before: int
    total: Optional[int] = None


@dataclass(frozen=True)
class ChunkResult:
    index: int
    size: int
    result: Any


@dataclass(frozen=True)
class ChunkFailure:
    index: int
    size: int
    error: str
    exception: BaseException


@dataclass
class StreamingResult:
    total_processed: int = 0
    total_errors: int = 0
    chunks: List[ChunkResult] = field(default_factory=list)
    errors: List[ChunkFailure] = field(default_factory=list)


@dataclass(frozen=True)
class ChunkEvent:
    index: int
    commits: List[Commit]
    processed: int
    total: Optional[int] = None


@dataclass(frozen=True)
class EndEvent:
    chunks: int
    processed: int


StreamEvent = Union[ChunkEvent, EndEvent]

Transform = Callable[[List[Commit], ChunkContext], Any]


def configure_for_system(
    total_memory: int = 8 * GiB,
    available_memory: int = 4 * GiB,
    cpu_cores: int = 4,
) -> StreamingSettings:
    """
    Pick streaming parameters from system resources.

    Monotonic: more available memory never yields a smaller chunk size or
    threshold. Concurrency is capped at MAX_CONCURRENCY whatever the core count.
    total_memory is accepted for symmetry with detect_system_resources.
    """
    if available_memory < 2 * GiB:
        chunk_size, threshold = 50, 200 * MiB
    elif available_memory < 4 * GiB:
        chunk_size, threshold = 100, 400 * MiB
    else:
        chunk_size, threshold = 200, 800 * MiB

    return StreamingSettings(
        chunk_size=chunk_size,
        memory_threshold=threshold,
        recommended_concurrency=max(1, min(int(cpu_cores), MAX_CONCURRENCY)),
    )


def detect_system_resources() -> Dict[str, int]:
    vm = psutil.virtual_memory()
    return {
        "total_memory": int(vm.total),
        "available_memory": int(vm.available),
        "cpu_cores": psutil.cpu_count(logical=True) or os.cpu_count() or 1,
    }


class StreamingProcessor:
    def __init__(
        self,
        source: HistorySource,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        memory_threshold: int = DEFAULT_MEMORY_THRESHOLD,
        monitor: Optional[MemoryMonitor] = None,
        progress: Optional[ProgressReporter] = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")

        self.source = source
        self.chunk_size = chunk_size
        self.memory_threshold = memory_threshold
        self.monitor = monitor
        self.progress: ProgressReporter = progress or NullProgress()
        self._owns_monitor = False
        # one relief attempt per excursion above memory_threshold
        self._above_threshold = False

    @classmethod
    def from_config(
        cls,
        source: HistorySource,
        cfg: Config,
        *,
        progress: Optional[ProgressReporter] = None,
    ) -> "StreamingProcessor":
        """
        Build a processor, and its memory monitor, from the streaming and memory sections.
        """
        monitor = MemoryMonitor(
            sample_interval=cfg.memory.sample_interval,
            warning_threshold=cfg.memory.warning_threshold,
            critical_threshold=cfg.memory.critical_threshold,
            max_samples=cfg.memory.max_samples,
            enable_gc=cfg.memory.enable_gc,
        )
        processor = cls(
            source,
            chunk_size=cfg.streaming.chunk_size,
            memory_threshold=cfg.streaming.memory_threshold_mb * MiB,
            monitor=monitor,
            progress=progress,
        )
        if cfg.streaming.auto_configure:
            processor.configure_for_system()
        return processor

    def configure_for_system(self, **system_info: int) -> StreamingSettings:
        """
        Apply configure_for_system to this processor. Missing figures are detected.
        """
        info = detect_system_resources()
        info.update(system_info)
        settings = configure_for_system(**info)
        self.chunk_size = settings.chunk_size
        self.memory_threshold = settings.memory_threshold
        logger.debug(
            "streaming configured: chunk_size=%d threshold=%s concurrency=%d",
            settings.chunk_size,
            format_bytes(settings.memory_threshold),
            settings.recommended_concurrency,
        )
        return settings

    def iter_chunks(
        self,
        *,
        chunk_size: Optional[int] = None,
        history: HistoryFilter = HistoryFilter(),
    ) -> Iterator[List[Commit]]:
        """
        Yield non-empty chunks of at most chunk_size commits, newest first.

        The next page is only requested when the consumer asks for it.
        """
        size = chunk_size or self.chunk_size
        if size < 1:
            raise ValueError("chunk_size must be at least 1")

        offset = 0
        self._above_threshold = False
        while True:
            self._relieve_memory_pressure()

            chunk = self.source.log(
                since=history.since,
                until=history.until,
                author=history.author,
                revision=history.revision,
                limit=size,
                skip=offset,
            )
            if not chunk:
                return

            offset += len(chunk)
            yield chunk

    def process_streaming(
        self,
        transform: Transform,
        *,
        chunk_size: Optional[int] = None,
        continue_on_error: bool = False,
        history: HistoryFilter = HistoryFilter(),
    ) -> StreamingResult:
        """
        Run transform over every chunk of history.

        With continue_on_error False the first transform failure stops the
        traversal before another chunk is fetched and the exception propagates.
        """
        result = StreamingResult()
        total = self._count(history)
        started = time.monotonic()
        chunk_index = 0
        seen = 0

        self._start_monitor()
        self.progress.start_step("stream")
        try:
            for chunk in self.iter_chunks(chunk_size=chunk_size, history=history):
                chunk_index += 1
                ctx = ChunkContext(chunk_index=chunk_index, processed_before=seen, total=total)
                seen += len(chunk)

                try:
                    value = transform(chunk, ctx)
                except Exception as e:
                    result.total_errors += 1
                    result.errors.append(ChunkFailure(chunk_index, len(chunk), str(e), e))
                    logger.warning("chunk %d failed: %s", chunk_index, e)
                    if not continue_on_error:
                        raise
                    continue

                result.chunks.append(ChunkResult(chunk_index, len(chunk), value))
                result.total_processed += len(chunk)
                self._report(seen, total, started)
        finally:
            self._stop_monitor()

        self.progress.complete_step("stream")
        logger.info(
            "streamed %d commits in %d chunks (%d failed)",
            result.total_processed,
            chunk_index,
            result.total_errors,
        )
        return result

    def create_stream(
        self,
        *,
        chunk_size: Optional[int] = None,
        history: HistoryFilter = HistoryFilter(),
    ) -> Iterator[StreamEvent]:
        """
        Pull-based event stream: one ChunkEvent per chunk, then exactly one EndEvent.

        The returned generator cannot be restarted; call again to re-traverse.
        """
        total = self._count(history)
        processed = 0
        index = 0

        for chunk in self.iter_chunks(chunk_size=chunk_size, history=history):
            index += 1
            processed += len(chunk)
            yield ChunkEvent(index=index, commits=chunk, processed=processed, total=total)

        yield EndEvent(chunks=index, processed=processed)

    def collect(self, *, history: HistoryFilter = HistoryFilter()) -> List[Commit]:
        """
        All commits matching history, newest first.
        """
        commits: List[Commit] = []
        for chunk in self.iter_chunks(history=history):
            commits.extend(chunk)
        return commits

    # -----------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------

    def _count(self, history: HistoryFilter) -> Optional[int]:
        if isinstance(self.progress, NullProgress):
            return None
        return self.source.count_commits(
            since=history.since,
            until=history.until,
            author=history.author,
            revision=history.revision,
        )

    def _report(self, processed: int, total: Optional[int], started: float) -> None:
        if not total:
            return
        elapsed = time.monotonic() - started
        rate = processed / elapsed if elapsed > 0 else 0.0
        eta = (total - processed) / rate if rate > 0 else 0.0
        self.progress.update_step_progress(
            processed * 100.0 / total,
            f"{processed}/{total} commits, ETA {eta:.0f}s",
        )

    def _relieve_memory_pressure(self) -> None:
        if self.monitor is None:
            return

        sample = self.monitor.current_usage()
        if sample is None:
            return

        if sample.heap_used <= self.memory_threshold:
            self._above_threshold = False
            return

        if self._above_threshold:
            return
        self._above_threshold = True

        if self.monitor.enable_gc:
            self.monitor.collect_garbage()
            sample = self.monitor.current_usage() or sample

        if sample.heap_used > self.memory_threshold:
            logger.warning(
                "high memory usage while streaming: %s (threshold %s)",
                format_bytes(sample.heap_used),
                format_bytes(self.memory_threshold),
            )

    def _start_monitor(self) -> None:
        if self.monitor is None or self.monitor.is_monitoring:
            return
        self.monitor.start_monitoring()
        self._owns_monitor = True

    def _stop_monitor(self) -> None:
        if self.monitor is not None and self._owns_monitor:
            self.monitor.stop_monitoring()
            self._owns_monitor = False
