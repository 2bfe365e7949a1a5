"""
Periodic process diagnostics.

Profiling is process-wide state: at most one Profiler runs per process,
controlled through start_profiling() and stop_profiling().
"""

import faulthandler
import gc
import logging
import os
import tempfile
import threading
import time
from pathlib import Path

import psutil

from clustertop.errors import AlreadyStartedError

logger = logging.getLogger(__name__)


class Profiler:
    """
    Writes thread stacks and memory statistics to a directory on a timer.

    Runs in a separate daemon thread. Each dump produces a `stacks-*` file
    with the traceback of every thread and a `memory-*` file with process
    memory usage and garbage collector statistics.
    """

    def __init__(self, profile_dir: str | os.PathLike, interval: float = 60.0) -> None:
        """
        Initialize the Profiler.

        Args:
            profile_dir: Parent directory; dumps go to a per-PID subdirectory.
            interval: Seconds between dumps.
        """
        self._dir = Path(profile_dir) / str(os.getpid())
        self._interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._process = psutil.Process()

    @property
    def directory(self) -> Path:
        """Get the directory dumps are written to."""
        return self._dir

    @property
    def is_running(self) -> bool:
        """Check if the profiling thread is running."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Create the dump directory and start the profiling thread."""
        if self.is_running:
            return
        self._dir.mkdir(parents=True, exist_ok=True)
        logger.info("Writing profiles to %s every %.1fs", self._dir, self._interval)

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._dump_loop,
            daemon=True,
            name="Profiler",
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """
        Stop the profiling thread.

        Args:
            timeout: How long to wait for thread to stop (seconds).
        """
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def dump(self) -> tuple[Path, Path]:
        """Write one stacks file and one memory file right now."""
        with tempfile.NamedTemporaryFile(
            "w", dir=self._dir, prefix="stacks-", delete=False
        ) as stacks:
            faulthandler.dump_traceback(file=stacks, all_threads=True)

        mem = self._process.memory_info()
        with tempfile.NamedTemporaryFile(
            "w", dir=self._dir, prefix="memory-", delete=False
        ) as memory:
            memory.write(f"time: {time.time():.3f}\n")
            memory.write(f"rss: {mem.rss}\n")
            memory.write(f"vms: {mem.vms}\n")
            memory.write(f"threads: {self._process.num_threads()}\n")
            memory.write(f"gc_counts: {gc.get_count()}\n")
            for generation, stats in enumerate(gc.get_stats()):
                memory.write(f"gc_gen{generation}: {stats}\n")

        return Path(stacks.name), Path(memory.name)

    def _dump_loop(self) -> None:
        """Main loop running in the background thread."""
        while not self._stop_event.wait(timeout=self._interval):
            try:
                self.dump()
            except (OSError, psutil.Error):
                logger.exception("Failed to write profile to %s", self._dir)


_lock = threading.Lock()
_profiler: Profiler | None = None


def start_profiling(profile_dir: str | os.PathLike, interval: float = 60.0) -> Profiler:
    """
    Start the process-wide profiler.

    Raises:
        AlreadyStartedError: Profiling is already running in this process.
    """
    global _profiler
    with _lock:
        if _profiler is not None:
            raise AlreadyStartedError("profiling has already been started")
        profiler = Profiler(profile_dir, interval)
        profiler.start()
        _profiler = profiler
    return profiler


def stop_profiling() -> None:
    """Stop the process-wide profiler; does nothing if it is not running."""
    global _profiler
    with _lock:
        profiler, _profiler = _profiler, None
    if profiler is not None:
        profiler.stop()
        logger.info("Profiling stopped")


def is_profiling() -> bool:
    """Check whether the process-wide profiler is running."""
    with _lock:
        return _profiler is not None
