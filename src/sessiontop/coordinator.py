"""Reconciliation of hooks, log interrupts and process scans into one session view."""

import asyncio
import itertools
import logging
import os
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from sessiontop.config import MonitorConfig
from sessiontop.models import (
    HookEvent,
    HookEventKind,
    LogInterrupt,
    ProcessSample,
    SessionRecord,
    SessionStatus,
    Signal,
    StoreStats,
    is_placeholder_pid,
)
from sessiontop.scanner import ProcessScanError, format_duration, is_process_alive, scan_processes
from sessiontop.store import Observer, SessionStore
from sessiontop.tailer import LogTailer, find_log_file
from sessiontop.workdir import WorkingDirResolver

logger = logging.getLogger(__name__)

Scanner = Callable[[str], Awaitable[list[ProcessSample]]]

# ps reports elapsed time in whole seconds, so derived start times jitter
START_TIME_TOLERANCE = timedelta(seconds=2)

STATUS_FOR_HOOK = {
    HookEventKind.SESSION_START: SessionStatus.IDLE,
    HookEventKind.REQUEST_START: SessionStatus.RUNNING,
    HookEventKind.REQUEST_STOP: SessionStatus.IDLE,
}


class ReconciliationCoordinator:
    """
    Applies every signal type to the SessionStore and drives the polling loops.

    Identity binding is heuristic. A hook without a pid binds to the first
    record still holding a synthetic session id; failing that it gets a
    placeholder pid, which the next newly scanned process adopts. When two
    sessions start before either is identified, the first placeholder found
    wins and the binding may be wrong; nothing here can tell them apart.
    """

    def __init__(
        self,
        config: MonitorConfig | None = None,
        store: SessionStore | None = None,
        *,
        scanner: Scanner = scan_processes,
        probe: Callable[[int], bool] = is_process_alive,
        resolver: WorkingDirResolver | None = None,
        tailer: LogTailer | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._config = config or MonitorConfig()
        self._clock = clock
        self._store = store or SessionStore(clock=clock)
        self._scanner = scanner
        self._probe = probe
        self._resolver = resolver or WorkingDirResolver()
        self._tailer = tailer or LogTailer(self.apply, self._config.allowed_log_roots)
        # Negative ids never collide with real OS pids
        self._placeholder_ids = itertools.count(-1, -1)
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._background: set[asyncio.Task] = set()
        self._attaching: set[str] = set()

    @property
    def store(self) -> SessionStore:
        """Get the underlying session store."""
        return self._store

    @property
    def tailer(self) -> LogTailer:
        """Get the transcript log tailer."""
        return self._tailer

    @property
    def is_running(self) -> bool:
        """Check if the polling loops are running."""
        return any(not task.done() for task in self._tasks)

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register for store changes. Returns an unsubscribe callable."""
        return self._store.subscribe(observer)

    def snapshot(self) -> list[SessionRecord]:
        """Get detached copies of every record."""
        return list(self._store.snapshot())

    def stats(self) -> StoreStats:
        """Get aggregate session counts."""
        return self._store.stats()

    # Signals

    def apply(self, signal: Signal) -> None:
        """Apply one hook or log signal to the store."""
        if isinstance(signal, HookEvent):
            self.receive_hook(signal)
        elif isinstance(signal, LogInterrupt):
            self.handle_interrupt(signal)
        else:
            raise TypeError(f"Unsupported signal: {signal!r}")

    def receive_hook(self, event: HookEvent) -> None:
        """Bind the hook's session to a record, apply its status and attach the log."""
        logger.info(f"Processing {event.kind.value} for session {event.session_id}")
        pid = self._bind(event)
        self._store.update_status_by_session_id(event.session_id, STATUS_FOR_HOOK[event.kind])

        record = self._store.get_by_pid(pid)
        if record is not None:
            self._attach_log(event.session_id, record.transcript_path)

    def _bind(self, event: HookEvent) -> int:
        """Find or create the record for the hook's session and return its pid."""
        session_id = event.session_id
        record = self._store.get_by_session_id(session_id)

        if event.pid is not None:
            self._release_replaced_session(event.pid, session_id)
            if record is None:
                self._store.associate_session(event.pid, session_id, event.transcript_path)
                return event.pid
            if record.pid != event.pid:
                self._store.rekey(record.pid, event.pid)
            if event.transcript_path:
                self._store.update(event.pid, {"transcript_path": event.transcript_path})
            return event.pid

        if record is not None:
            if event.transcript_path:
                self._store.update(record.pid, {"transcript_path": event.transcript_path})
            return record.pid

        candidate = self._store.find_uncorrelated(lambda r: not r.is_placeholder)
        if candidate is not None:
            logger.info(f"Associated session {session_id} with PID {candidate.pid}")
            self._store.associate_session(candidate.pid, session_id, event.transcript_path)
            return candidate.pid

        pid = next(self._placeholder_ids)
        logger.warning(f"No PID found for session {session_id}, using placeholder {pid}")
        self._store.associate_session(pid, session_id, event.transcript_path)
        return pid

    def _release_replaced_session(self, pid: int, session_id: str) -> None:
        """Stop tailing the log of a session about to be replaced on ``pid``."""
        current = self._store.get_by_pid(pid)
        if current is None or not current.is_correlated or current.session_id == session_id:
            return
        logger.info(f"Session {session_id} replaces {current.session_id} on PID {pid}")
        self._tailer.unwatch(current.session_id)
        # The old transcript belongs to the old session
        self._store.update(pid, {"transcript_path": None})

    def handle_interrupt(self, event: LogInterrupt) -> None:
        """A logged interrupt demotes the session to idle, with or without a stop hook."""
        if self._store.update_status_by_session_id(event.session_id, SessionStatus.IDLE):
            logger.info(f"User interrupt detected for session {event.session_id}")

    # Transcript logs

    def _attach_log(self, session_id: str, transcript_path: str | None) -> None:
        """Start tailing the session's log in the background, once."""
        if self._tailer.is_watching(session_id) or session_id in self._attaching:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"No event loop, not watching log for session {session_id}")
            return
        self._attaching.add(session_id)
        task = loop.create_task(self._attach_log_async(session_id, transcript_path))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _locate_log(self, session_id: str, transcript_path: str | None) -> str | None:
        """Use the hook's transcript path if it exists, else search the projects directory."""
        if transcript_path and os.path.exists(os.path.expanduser(transcript_path)):
            return transcript_path
        found = find_log_file(session_id, self._config.projects_dir)
        return str(found) if found else None

    async def _attach_log_async(self, session_id: str, transcript_path: str | None) -> None:
        try:
            path = self._locate_log(session_id, transcript_path)
            if path is None:
                await asyncio.sleep(self._config.log_retry_delay)
                path = self._locate_log(session_id, transcript_path)
            if path is None:
                logger.debug(f"No log file found for session {session_id}")
                return
            if self._store.get_by_session_id(session_id) is None:
                return
            await self._tailer.watch(session_id, path)
        finally:
            self._attaching.discard(session_id)

    # Polling passes

    async def scan_once(self) -> None:
        """Merge one process-table scan into the store."""
        try:
            samples = await self._scanner(self._config.process_name)
        except ProcessScanError as e:
            # Never treat a failed scan as "every process exited"
            logger.error(f"Error scanning processes: {e}")
            return

        seen: set[int] = set()
        for sample in samples:
            seen.add(sample.pid)
            running_time = format_duration(sample.elapsed_seconds)
            if self._store.has_pid(sample.pid):
                self._store.update_metrics(
                    sample.pid,
                    cpu_usage=sample.cpu_percent,
                    memory_usage=sample.memory_percent,
                    running_time=running_time,
                )
                self._sync_start_time(sample)
                continue

            placeholder = next((r for r in self._store.get_all() if r.is_placeholder), None)
            if placeholder is not None:
                logger.info(f"Binding placeholder session {placeholder.session_id} to PID {sample.pid}")
                self._store.rekey(placeholder.pid, sample.pid)
            self._store.upsert(sample.pid, {
                "cpu_usage": sample.cpu_percent,
                "memory_usage": sample.memory_percent,
                "running_time": running_time,
                "start_time": sample.start_time,
                "first_seen_at": sample.start_time,
            })

        for pid in self._store.pids():
            if not is_placeholder_pid(pid) and pid not in seen:
                self._remove(pid, "absent from scan")

    def _sync_start_time(self, sample: ProcessSample) -> None:
        """Correct a record whose start time came from a hook rather than the process table."""
        record = self._store.get_by_pid(sample.pid)
        if record is None or abs(record.start_time - sample.start_time) <= START_TIME_TOLERANCE:
            return
        updates = {"start_time": sample.start_time}
        if record.first_seen_at > sample.start_time:
            updates["first_seen_at"] = sample.start_time
        self._store.update(sample.pid, updates)

    def check_liveness(self) -> None:
        """Probe every real pid; drop stale placeholders."""
        now = self._clock()
        ttl = timedelta(seconds=self._config.placeholder_ttl)
        for record in self._store.get_all():
            if record.is_placeholder:
                if self._config.placeholder_ttl > 0 and now - record.last_active_time > ttl:
                    self._remove(record.pid, "placeholder went stale")
                continue
            try:
                alive = self._probe(record.pid)
            except OSError as e:
                logger.debug(f"Liveness probe for PID {record.pid} failed: {e}")
                alive = False
            if not alive:
                self._remove(record.pid, "liveness probe failed")

    async def refresh_working_dirs(self) -> None:
        """Resolve working directories for real pids and store the ones found."""
        pids = [pid for pid in self._store.pids() if not is_placeholder_pid(pid)]
        if not pids:
            return
        dirs = await self._resolver.get_working_dirs(pids)
        for pid, directory in dirs.items():
            if directory:
                self._store.update(pid, {"working_dir": directory})
        self._resolver.cleanup_cache()

    def _remove(self, pid: int, reason: str) -> None:
        """Drop a record and release its log watch and cache entry."""
        record = self._store.remove(pid)
        if record is None:
            return
        logger.info(f"Removing PID {pid} (session: {record.session_id}): {reason}")
        self._tailer.unwatch(record.session_id)
        self._resolver.forget(pid)

    # Lifecycle

    async def _wait(self, timeout: float) -> bool:
        """Sleep for ``timeout`` seconds; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_periodic(
        self,
        name: str,
        interval: float,
        action: Callable[[], Awaitable[None]],
        initial_delay: float = 0.0,
    ) -> None:
        if initial_delay > 0 and await self._wait(initial_delay):
            return
        while not self._stop_event.is_set():
            try:
                await action()
            except Exception:
                # Keep the loop running whatever a single pass does
                logger.exception(f"Error in {name} loop")
            if await self._wait(interval):
                return

    async def _liveness_pass(self) -> None:
        self.check_liveness()

    async def start(self) -> None:
        """Start the scan, liveness and working-directory loops."""
        if self.is_running:
            return
        logger.info("Starting coordinator...")
        self._stop_event.clear()
        config = self._config
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._run_periodic("scan", config.scan_interval, self.scan_once), name="scan"),
            loop.create_task(
                self._run_periodic("liveness", config.liveness_interval, self._liveness_pass), name="liveness"
            ),
            loop.create_task(
                self._run_periodic(
                    "workdir",
                    config.workdir_interval,
                    self.refresh_working_dirs,
                    initial_delay=config.workdir_initial_delay,
                ),
                name="workdir",
            ),
        ]
        logger.info("Coordinator started")

    async def stop(self) -> None:
        """Stop the loops, cancel pending log attachments and release every watch."""
        logger.info("Stopping coordinator...")
        self._stop_event.set()
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._tasks, *self._background, return_exceptions=True)
        self._tasks = []
        self._tailer.stop_all()
        logger.info("Coordinator stopped")
