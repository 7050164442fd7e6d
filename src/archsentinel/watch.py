from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from watchdog.events import FileSystemEventHandler

from archsentinel.config import path_is_ignored
from archsentinel.engine.context import SessionContext
from archsentinel.scanner import JAVA_SUFFIX, ScanTarget
from archsentinel.session import SessionCancelled, SessionController, SessionResult

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.2


@dataclass(slots=True)
class DebouncedPathBatcher:
    """
    Collect file paths and flush them after a quiet period.

    Kept free of watchdog and threads so it can be unit-tested with a fake clock.
    """

    debounce_seconds: float
    _pending: set[Path] = field(default_factory=set, init=False)
    _last_event_at: float | None = field(default=None, init=False)

    def add(self, path: Path, *, now: float) -> None:
        self._pending.add(path)
        self._last_event_at = float(now)

    def seconds_until_ready(self, *, now: float) -> float:
        if not self._pending or self._last_event_at is None:
            return float("inf")
        elapsed = float(now) - float(self._last_event_at)
        return max(0.0, float(self.debounce_seconds) - elapsed)

    def ready(self, *, now: float) -> bool:
        return self.seconds_until_ready(now=now) <= 0.0

    def drain(self) -> set[Path]:
        out = set(self._pending)
        self._pending.clear()
        self._last_event_at = None
        return out


def should_watch_path(target: ScanTarget | SessionContext, path: Path) -> bool:
    """
    Return True if `path` is a candidate for a watch-triggered pass.

    Mirrors discovery: under the scan path, a `.java` file, not ignored.
    Deleted files still qualify so the next pass drops them from the set.
    """

    try:
        resolved = path.resolve()
        scan_resolved = target.scan_path.resolve()
    except OSError:
        return False

    if scan_resolved.is_file():
        if resolved != scan_resolved:
            return False
    else:
        try:
            resolved.relative_to(scan_resolved)
        except ValueError:
            return False

    if resolved.suffix != JAVA_SUFFIX:
        return False
    if resolved.exists() and not resolved.is_file():
        return False

    return not path_is_ignored(resolved, project_root=target.project_root, ignore_patterns=target.config.ignore.paths)


class JavaChangeHandler(FileSystemEventHandler):
    """Forward relevant watchdog events into a queue."""

    def __init__(self, target: ScanTarget | SessionContext, events: queue.Queue[Path]) -> None:
        super().__init__()
        self.target = target
        self.events = events

    def _emit(self, raw_path: Any) -> None:
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode("utf-8", errors="surrogateescape")
        if not isinstance(raw_path, str) or not raw_path:
            return
        p = Path(raw_path)
        if should_watch_path(self.target, p):
            self.events.put(p)

    def on_created(self, event: Any) -> None:
        if not getattr(event, "is_directory", False):
            self._emit(getattr(event, "src_path", ""))

    def on_modified(self, event: Any) -> None:
        if not getattr(event, "is_directory", False):
            self._emit(getattr(event, "src_path", ""))

    def on_deleted(self, event: Any) -> None:
        if not getattr(event, "is_directory", False):
            self._emit(getattr(event, "src_path", ""))

    def on_moved(self, event: Any) -> None:
        if getattr(event, "is_directory", False):
            return
        self._emit(getattr(event, "src_path", ""))
        self._emit(getattr(event, "dest_path", ""))


def next_batch(
    events: queue.Queue[Path],
    batcher: DebouncedPathBatcher,
    *,
    stop: threading.Event,
    clock: Callable[[], float] = time.monotonic,
) -> set[Path] | None:
    """
    Block until a debounced batch is ready. Returns None once `stop` is set.

    Events arriving while a pass runs stay in the queue for the next batch.
    """

    while not stop.is_set():
        try:
            p = events.get(timeout=_POLL_SECONDS)
        except queue.Empty:
            continue
        batcher.add(p, now=clock())

        while True:
            timeout = batcher.seconds_until_ready(now=clock())
            if timeout <= 0.0:
                break
            try:
                p2 = events.get(timeout=timeout)
            except queue.Empty:
                break
            batcher.add(p2, now=clock())

        return {p.resolve() for p in batcher.drain()}
    return None


def run_pass_in_worker(
    controller: SessionController,
    executor: ThreadPoolExecutor,
    changed: set[Path] | None,
    *,
    fix: bool,
) -> SessionResult | None:
    """
    Run one pass on the worker thread and wait for it.

    Ctrl-C while waiting cancels the controller, waits for the pass to reach a
    safe point, then re-raises. Returns None if the pass was cancelled.
    """

    future: Future[SessionResult] = executor.submit(controller.run_pass, changed, fix=fix)
    try:
        while True:
            try:
                return future.result(timeout=_POLL_SECONDS)
            except TimeoutError:
                continue
    except KeyboardInterrupt:
        controller.cancel()
        try:
            future.result()
        except SessionCancelled:
            logger.info("validation pass cancelled")
        raise
    except SessionCancelled:
        return None


def watch_loop(
    controller: SessionController,
    events: queue.Queue[Path],
    *,
    debounce: float,
    fix: bool,
    on_result: Callable[[SessionResult, tuple[Path, ...]], None],
    stop: threading.Event | None = None,
    initial_pass: bool = True,
) -> None:
    """
    Run an initial full pass, then one incremental pass per debounced batch
    until `stop` is set or KeyboardInterrupt is raised.
    """

    stop = stop or threading.Event()
    batcher = DebouncedPathBatcher(debounce_seconds=debounce)
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="archsentinel-watch") as executor:
        if initial_pass:
            result = run_pass_in_worker(controller, executor, None, fix=fix)
            if result is not None:
                on_result(result, ())

        while True:
            batch = next_batch(events, batcher, stop=stop)
            if batch is None:
                return
            changed = tuple(sorted(batch))
            logger.debug("watch batch: %d file(s)", len(changed))
            result = run_pass_in_worker(controller, executor, set(changed), fix=fix)
            if result is not None:
                on_result(result, changed)
