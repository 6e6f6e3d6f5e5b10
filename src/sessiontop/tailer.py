"""Transcript log tailing and interrupt detection."""

import asyncio
import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from sessiontop.models import LogInterrupt
from sessiontop.pathsafety import is_safe_to_read

logger = logging.getLogger(__name__)

INTERRUPT_MARKER = "[Request interrupted by user]"
BACKFILL_LINES = 50
_READ_BLOCK = 8192


def is_interrupt_entry(entry: Any) -> bool:
    """Check whether a transcript record is a user message carrying the interrupt marker."""
    if not isinstance(entry, dict) or entry.get("type") != "user":
        return False

    message = entry.get("message")
    if not isinstance(message, dict):
        return False

    content = message.get("content")
    if isinstance(content, str):
        return INTERRUPT_MARKER in content
    if isinstance(content, list):
        for item in content:
            if isinstance(item, str) and INTERRUPT_MARKER in item:
                return True
            if isinstance(item, dict) and INTERRUPT_MARKER in str(item.get("text") or ""):
                return True
    return False


def find_interrupt(lines: Iterable[str]) -> dict[str, Any] | None:
    """Return the first interrupt record among newline-delimited JSON lines.

    Malformed lines are skipped without aborting the batch.
    """
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if is_interrupt_entry(entry):
            return entry
    return None


def read_segment(path: str | Path, offset: int) -> tuple[list[str], int]:
    """
    Read complete lines appended after ``offset``.

    A trailing line without a newline is still being written, so it is left
    for the next read. Returns the lines and the new offset.
    """
    with open(path, "rb") as f:
        f.seek(offset)
        data = f.read()

    end = data.rfind(b"\n")
    if end < 0:
        return [], offset
    complete = data[: end + 1]
    return complete.decode("utf-8", errors="replace").splitlines(), offset + len(complete)


def read_tail_lines(path: str | Path, limit: int = BACKFILL_LINES, end: int | None = None) -> list[str]:
    """Read at most the last ``limit`` non-empty lines before byte ``end``, scanning backwards."""
    with open(path, "rb") as f:
        position = f.seek(0, os.SEEK_END) if end is None else end
        chunks: list[bytes] = []
        newlines = 0
        while position > 0 and newlines <= limit:
            size = min(_READ_BLOCK, position)
            position -= size
            f.seek(position)
            chunk = f.read(size)
            chunks.insert(0, chunk)
            newlines += chunk.count(b"\n")

    text = b"".join(chunks).decode("utf-8", errors="replace")
    lines = [line for line in text.splitlines() if line.strip()]
    if position > 0 and lines:
        # First line may be cut mid-record
        lines = lines[1:]
    return lines[-limit:]


def find_log_file(session_id: str, projects_dir: str | Path) -> Path | None:
    """Look for ``<projects_dir>/<project>/<session_id>.jsonl``."""
    root = Path(projects_dir).expanduser()
    if not root.is_dir():
        return None
    try:
        for project in root.iterdir():
            candidate = project / f"{session_id}.jsonl"
            if project.is_dir() and candidate.is_file():
                return candidate
    except OSError as e:
        logger.error(f"Error searching for log file of {session_id}: {e}")
    return None


def _entry_timestamp(entry: dict[str, Any]) -> datetime:
    raw = entry.get("timestamp")
    if isinstance(raw, str):
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).astimezone().replace(tzinfo=None)
        except ValueError:
            pass
    return datetime.now()


@dataclass(slots=True)
class _WatchedFile:
    session_id: str
    path: str
    offset: int
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class _DirectoryHandler(FileSystemEventHandler):
    """Routes watchdog events for one directory to the sessions whose files changed.

    Runs on the observer thread and only hands work to the event loop.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, notify: Callable[[str], None]) -> None:
        super().__init__()
        self._loop = loop
        self._notify = notify
        self._lock = threading.Lock()
        self._files: dict[str, str] = {}

    def add(self, path: str, session_id: str) -> None:
        with self._lock:
            self._files[path] = session_id

    def discard(self, path: str) -> bool:
        """Forget ``path``; returns True when no files remain."""
        with self._lock:
            self._files.pop(path, None)
            return not self._files

    def on_modified(self, event: FileSystemEvent) -> None:
        """Handle an append to a watched log."""
        self._dispatch(event)

    def on_created(self, event: FileSystemEvent) -> None:
        """Handle a log recreated in place."""
        self._dispatch(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        """Handle a log moved onto or away from a watched path."""
        self._dispatch(event)

    def _dispatch(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        with self._lock:
            session_ids = {self._files[os.fsdecode(p)] for p in paths if p and os.fsdecode(p) in self._files}
        for session_id in session_ids:
            self._loop.call_soon_threadsafe(self._notify, session_id)


class LogTailer:
    """
    Tails one append-only transcript log per session and reports interrupts.

    On attach the current file size becomes the read offset and the last
    ``BACKFILL_LINES`` lines are checked once for an earlier interrupt. Each
    change notification then reads from the offset to the current size. At
    most one interrupt is reported per batch.
    """

    def __init__(
        self,
        on_interrupt: Callable[[LogInterrupt], None],
        allowed_roots: Iterable[str | Path],
        observer_factory: Callable[[], Any] = Observer,
        backfill_lines: int = BACKFILL_LINES,
    ) -> None:
        self._on_interrupt = on_interrupt
        self._allowed_roots = tuple(allowed_roots)
        self._observer_factory = observer_factory
        self._backfill_lines = backfill_lines
        self._observer = None
        self._watched: dict[str, _WatchedFile] = {}
        self._directories: dict[str, tuple[Any, _DirectoryHandler]] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        """Get the number of sessions being tailed."""
        return len(self._watched)

    def is_watching(self, session_id: str) -> bool:
        """Check whether ``session_id`` has an active watch."""
        return session_id in self._watched

    def offset(self, session_id: str) -> int | None:
        """Get the read offset for ``session_id``, or None when not watched."""
        watched = self._watched.get(session_id)
        return watched.offset if watched else None

    async def watch(self, session_id: str, path: str | Path) -> bool:
        """Start tailing ``path`` for ``session_id``. Returns True when a watch is active."""
        if session_id in self._watched:
            logger.debug(f"Already watching log for session {session_id}")
            return True

        path = os.path.abspath(os.path.expanduser(str(path)))
        if not os.path.exists(path):
            logger.debug(f"Log file not found for session {session_id}: {path}")
            return False
        if not is_safe_to_read(path, self._allowed_roots):
            logger.error(f"Unsafe or invalid log path for session {session_id}: {path}")
            return False

        try:
            offset = os.path.getsize(path)
            self._subscribe(path, session_id)
        except OSError as e:
            logger.error(f"Failed to watch log for session {session_id}: {e}")
            return False

        watched = _WatchedFile(session_id=session_id, path=path, offset=offset)
        self._watched[session_id] = watched
        logger.info(f"Watching log file for session {session_id}: {path}")

        await self._backfill(watched)
        return True

    async def _backfill(self, watched: _WatchedFile) -> None:
        try:
            lines = await asyncio.to_thread(read_tail_lines, watched.path, self._backfill_lines, watched.offset)
        except OSError as e:
            logger.error(f"Error reading existing content for {watched.session_id}: {e}")
            return

        entry = find_interrupt(reversed(lines))
        if entry is not None:
            logger.info(f"Detected existing interrupt in session {watched.session_id}")
            self._emit(watched.session_id, entry)

    async def poll(self, session_id: str) -> None:
        """Read whatever was appended since the last offset."""
        watched = self._watched.get(session_id)
        if watched is None:
            return

        async with watched.lock:
            try:
                size = await asyncio.to_thread(os.path.getsize, watched.path)
                if size < watched.offset:
                    logger.info(f"Log for session {session_id} truncated, rereading from start")
                    watched.offset = 0
                if size == watched.offset:
                    return
                lines, new_offset = await asyncio.to_thread(read_segment, watched.path, watched.offset)
            except OSError as e:
                logger.error(f"Error processing new lines for session {session_id}: {e}")
                return

            if self._watched.get(session_id) is not watched:
                # Torn down while reading
                return
            watched.offset = new_offset

        entry = find_interrupt(lines)
        if entry is not None:
            logger.info(f"Detected user interrupt in session {session_id}")
            self._emit(session_id, entry)

    def _emit(self, session_id: str, entry: dict[str, Any]) -> None:
        event = LogInterrupt(session_id=session_id, timestamp=_entry_timestamp(entry), entry=entry)
        try:
            self._on_interrupt(event)
        except Exception:
            logger.exception(f"Interrupt handler failed for session {session_id}")

    def _on_change(self, session_id: str) -> None:
        """Schedule a read after a change notification."""
        if session_id not in self._watched:
            return
        task = asyncio.get_running_loop().create_task(self.poll(session_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _subscribe(self, path: str, session_id: str) -> None:
        """Route events for ``path`` to ``session_id``, sharing one watch per directory."""
        directory = os.path.dirname(path)
        entry = self._directories.get(directory)
        if entry is None:
            if self._observer is None:
                self._observer = self._observer_factory()
                self._observer.start()
            handler = _DirectoryHandler(asyncio.get_running_loop(), self._on_change)
            watch = self._observer.schedule(handler, directory, recursive=False)
            entry = (watch, handler)
            self._directories[directory] = entry
        entry[1].add(path, session_id)

    def unwatch(self, session_id: str) -> None:
        """Release the file watch and forget the offset."""
        watched = self._watched.pop(session_id, None)
        if watched is None:
            return

        directory = os.path.dirname(watched.path)
        entry = self._directories.get(directory)
        if entry is not None and entry[1].discard(watched.path):
            del self._directories[directory]
            try:
                self._observer.unschedule(entry[0])
            except (KeyError, OSError) as e:
                logger.debug(f"Failed to unschedule watch on {directory}: {e}")
        logger.info(f"Stopped watching session {session_id}")

    def stop_all(self, timeout: float | None = 2.0) -> None:
        """Tear down every watch and the observer thread."""
        for session_id in list(self._watched):
            self.unwatch(session_id)
        for task in list(self._tasks):
            task.cancel()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=timeout)
            self._observer = None
        logger.info("All log watchers stopped")
