# retime/memory.py
"""
Process memory monitoring.

Samples process memory on a background timer, keeps the most recent samples
in a bounded ring buffer and classifies memory pressure. Strictly
observational: nothing here raises into the operation being observed.

Memory figures come from psutil. heap_used is the process resident set
size; heap_total is the configured memory limit, or total system memory
when no limit is set.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Optional
import gc
import logging
import threading
import time
import warnings

import psutil


logger = logging.getLogger(__name__)


class MemoryPressureWarning(RuntimeWarning):
    """
    Advisory warning for high memory usage. Never raised as an error.
    """


class Pressure(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class MemorySample:
    timestamp: float
    heap_used: int
    heap_total: int
    rss: int

    @property
    def utilization(self) -> float:
        if self.heap_total <= 0:
            return 0.0
        return self.heap_used / self.heap_total


@dataclass(frozen=True)
class MemoryStats:
    peak: int
    average: float
    current: int
    samples: int
    warnings: int
    critical_alerts: int
    gc_runs: int


Sampler = Callable[[], MemorySample]


def psutil_sampler(memory_limit: Optional[int] = None) -> Sampler:
    process = psutil.Process()

    def _sample() -> MemorySample:
        rss = int(process.memory_info().rss)
        total = int(memory_limit) if memory_limit else int(psutil.virtual_memory().total)
        return MemorySample(timestamp=time.time(), heap_used=rss, heap_total=total, rss=rss)

    return _sample


def format_bytes(n: float) -> str:
    if n <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    value = float(n)
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{value:.2f} {units[i]}"


class MemoryMonitor:
    def __init__(
        self,
        *,
        sample_interval: float = 1.0,
        warning_threshold: float = 0.8,
        critical_threshold: float = 0.9,
        max_samples: int = 1000,
        enable_gc: bool = True,
        memory_limit: Optional[int] = None,
        sampler: Optional[Sampler] = None,
    ) -> None:
        if not 0 < warning_threshold <= critical_threshold:
            raise ValueError("thresholds must satisfy 0 < warning <= critical")
        if max_samples < 1:
            raise ValueError("max_samples must be at least 1")

        self.sample_interval = sample_interval
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold
        self.enable_gc = enable_gc
        self._sampler = sampler or psutil_sampler(memory_limit)

        self._samples: Deque[MemorySample] = deque(maxlen=max_samples)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._level = Pressure.NORMAL
        self._warnings = 0
        self._critical_alerts = 0
        self._gc_runs = 0

    @property
    def is_monitoring(self) -> bool:
        return self._thread is not None

    @property
    def level(self) -> Pressure:
        return self._level

    def start_monitoring(self) -> None:
        if self._thread is not None:
            return

        self._stop.clear()
        self.take_sample()

        self._thread = threading.Thread(target=self._run, name="retime-memory-monitor", daemon=True)
        self._thread.start()
        logger.debug("memory monitoring started (interval %.2fs)", self.sample_interval)

    def stop_monitoring(self) -> None:
        if self._thread is None:
            return

        self._stop.set()
        self._thread.join(timeout=max(1.0, self.sample_interval * 2))
        self._thread = None

        self.take_sample()
        logger.debug("memory monitoring stopped (%d samples held)", len(self._samples))

    def _run(self) -> None:
        while not self._stop.wait(self.sample_interval):
            self.take_sample()

    def take_sample(self) -> Optional[MemorySample]:
        """
        Record one sample. Sampling failures are logged and swallowed.
        """
        try:
            sample = self._sampler()
        except Exception as e:
            logger.warning("memory sampling failed: %s", e)
            return None

        with self._lock:
            self._samples.append(sample)

        self._check_pressure(sample)
        return sample

    def current_usage(self) -> Optional[MemorySample]:
        """
        A fresh sample that is not stored in the ring buffer.
        """
        try:
            return self._sampler()
        except Exception as e:
            logger.warning("memory sampling failed: %s", e)
            return None

    def latest(self) -> Optional[MemorySample]:
        with self._lock:
            return self._samples[-1] if self._samples else None

    def classify(self, sample: MemorySample) -> Pressure:
        u = sample.utilization
        if u >= self.critical_threshold:
            return Pressure.CRITICAL
        if u >= self.warning_threshold:
            return Pressure.WARNING
        return Pressure.NORMAL

    def _check_pressure(self, sample: MemorySample) -> None:
        level = self.classify(sample)

        with self._lock:
            previous = self._level
            self._level = level
            if level is Pressure.CRITICAL:
                self._critical_alerts += 1
            elif level is Pressure.WARNING:
                self._warnings += 1

        if level is Pressure.CRITICAL:
            if previous is not Pressure.CRITICAL:
                # one collection per excursion into critical
                self._advise(sample, level)
                if self.enable_gc:
                    self.collect_garbage()
            return

        if level is Pressure.WARNING and previous is Pressure.NORMAL:
            self._advise(sample, level)

    def _advise(self, sample: MemorySample, level: Pressure) -> None:
        msg = (
            f"memory pressure {level.value}: {format_bytes(sample.heap_used)} of "
            f"{format_bytes(sample.heap_total)} ({sample.utilization:.0%})"
        )
        logger.warning(msg)
        warnings.warn(msg, MemoryPressureWarning, stacklevel=2)

    def collect_garbage(self) -> int:
        freed = gc.collect()
        with self._lock:
            self._gc_runs += 1
        logger.debug("garbage collection released %d objects", freed)
        return freed

    def get_stats(self) -> MemoryStats:
        with self._lock:
            used = [s.heap_used for s in self._samples]
            counters = (self._warnings, self._critical_alerts, self._gc_runs)

        if not used:
            return MemoryStats(0, 0.0, 0, 0, *counters)

        return MemoryStats(
            peak=max(used),
            average=sum(used) / len(used),
            current=used[-1],
            samples=len(used),
            warnings=counters[0],
            critical_alerts=counters[1],
            gc_runs=counters[2],
        )
