"""Tests for transcript log tailing and interrupt detection."""

import asyncio
import json

import pytest
from watchdog.events import (
    DirModifiedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileOpenedEvent,
)
from watchdog.observers.polling import PollingObserver

from sessiontop.tailer import (
    INTERRUPT_MARKER,
    LogTailer,
    _DirectoryHandler,
    find_interrupt,
    find_log_file,
    is_interrupt_entry,
    read_segment,
    read_tail_lines,
)


def user_line(content) -> str:
    return json.dumps({"type": "user", "message": {"role": "user", "content": content}}) + "\n"


def assistant_line(text: str) -> str:
    return json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}) + "\n"


def interrupt_line() -> str:
    return user_line([{"type": "text", "text": INTERRUPT_MARKER}])


def make_tailer(on_interrupt, roots) -> LogTailer:
    """A tailer on a fast polling observer, independent of inotify limits."""
    return LogTailer(on_interrupt, roots, observer_factory=lambda: PollingObserver(timeout=0.05))


class TestInterruptDetection:
    """Tests for recognizing interrupt records."""

    def test_string_content(self):
        """Test a plain string content carrying the marker."""
        assert is_interrupt_entry({"type": "user", "message": {"content": f"{INTERRUPT_MARKER} ok"}})

    def test_list_content(self):
        """Test list content with text items or bare strings."""
        assert is_interrupt_entry({"type": "user", "message": {"content": [{"type": "text", "text": INTERRUPT_MARKER}]}})
        assert is_interrupt_entry({"type": "user", "message": {"content": ["x", INTERRUPT_MARKER]}})

    def test_non_user_or_missing_marker(self):
        """Test assistant records and ordinary user records don't qualify."""
        assert not is_interrupt_entry({"type": "assistant", "message": {"content": INTERRUPT_MARKER}})
        assert not is_interrupt_entry({"type": "user", "message": {"content": "hello"}})
        assert not is_interrupt_entry({"type": "user"})
        assert not is_interrupt_entry({"type": "user", "message": {"content": [{"type": "tool_result"}]}})
        assert not is_interrupt_entry(["not", "a", "dict"])

    def test_find_interrupt_skips_malformed_lines(self):
        """Test malformed lines don't abort the batch and the first match is returned."""
        lines = ["{not json", "", assistant_line("hi"), interrupt_line(), user_line(INTERRUPT_MARKER + " 2")]
        entry = find_interrupt(lines)

        assert entry is not None
        assert entry["message"]["content"][0]["text"] == INTERRUPT_MARKER

    def test_find_interrupt_none(self):
        """Test batches without a marker yield None."""
        assert find_interrupt([assistant_line("hi"), "garbage"]) is None


class TestFileReading:
    """Tests for offset-based and backward reads."""

    def test_read_segment_leaves_partial_line(self, tmp_path):
        """Test an unterminated last line is left for the next read."""
        log = tmp_path / "s.jsonl"
        log.write_text('{"a": 1}\n{"b": 2}\n{"c"')

        lines, offset = read_segment(log, 0)

        assert lines == ['{"a": 1}', '{"b": 2}']
        assert offset == len('{"a": 1}\n{"b": 2}\n')

    def test_read_segment_from_offset(self, tmp_path):
        """Test reading starts at the given offset."""
        log = tmp_path / "s.jsonl"
        log.write_text("one\ntwo\n")

        assert read_segment(log, 4) == (["two"], 8)
        assert read_segment(log, 8) == ([], 8)

    def test_read_tail_lines_is_bounded(self, tmp_path):
        """Test the backward scan returns at most the requested number of lines."""
        log = tmp_path / "s.jsonl"
        log.write_text("".join(f"line {i}\n" for i in range(5000)))

        lines = read_tail_lines(log, limit=50)

        assert len(lines) == 50
        assert lines[-1] == "line 4999"
        assert lines[0] == "line 4950"

    def test_read_tail_lines_respects_end(self, tmp_path):
        """Test content past the end offset is ignored."""
        log = tmp_path / "s.jsonl"
        log.write_text("a\nb\nc\n")

        assert read_tail_lines(log, limit=50, end=4) == ["a", "b"]

    def test_find_log_file(self, tmp_path):
        """Test session logs are found under any project directory."""
        projects = tmp_path / "projects"
        (projects / "-home-me-proj").mkdir(parents=True)
        log = projects / "-home-me-proj" / "abc.jsonl"
        log.write_text("")

        assert find_log_file("abc", projects) == log
        assert find_log_file("missing", projects) is None
        assert find_log_file("abc", tmp_path / "nope") is None


@pytest.mark.asyncio
async def test_backfill_emits_at_most_one_interrupt(tmp_path):
    """Test attaching to a log with earlier interrupts reports exactly one."""
    log = tmp_path / "s.jsonl"
    log.write_text(interrupt_line() + assistant_line("x") + interrupt_line())
    events = []
    tailer = make_tailer(events.append, [tmp_path])

    try:
        assert await tailer.watch("abc", log)
        assert len(events) == 1
        assert events[0].session_id == "abc"
        assert tailer.offset("abc") == log.stat().st_size
    finally:
        tailer.stop_all()


@pytest.mark.asyncio
async def test_backfill_only_checks_recent_lines(tmp_path):
    """Test an interrupt older than the backfill window is ignored."""
    log = tmp_path / "s.jsonl"
    log.write_text(interrupt_line() + "".join(assistant_line(str(i)) for i in range(60)))
    events = []
    tailer = make_tailer(events.append, [tmp_path])

    try:
        await tailer.watch("abc", log)
        assert events == []
    finally:
        tailer.stop_all()


@pytest.mark.asyncio
async def test_poll_reads_appended_lines(tmp_path):
    """Test new lines after the offset are read and one interrupt per batch is emitted."""
    log = tmp_path / "s.jsonl"
    log.write_text(assistant_line("start"))
    events = []
    tailer = make_tailer(events.append, [tmp_path])

    try:
        await tailer.watch("abc", log)
        with open(log, "a") as f:
            f.write("{broken\n" + interrupt_line() + interrupt_line())
        await tailer.poll("abc")

        assert len(events) == 1
        assert tailer.offset("abc") == log.stat().st_size

        # Nothing new: no further events
        await tailer.poll("abc")
        assert len(events) == 1
    finally:
        tailer.stop_all()


@pytest.mark.asyncio
async def test_truncation_resets_offset(tmp_path):
    """Test a file shorter than the offset is reread from the start."""
    log = tmp_path / "s.jsonl"
    log.write_text("".join(assistant_line(str(i)) for i in range(20)))
    events = []
    tailer = make_tailer(events.append, [tmp_path])

    try:
        await tailer.watch("abc", log)
        log.write_text(interrupt_line())
        await tailer.poll("abc")

        assert len(events) == 1
        assert tailer.offset("abc") == log.stat().st_size
    finally:
        tailer.stop_all()


@pytest.mark.asyncio
async def test_watch_refuses_unsafe_and_missing_paths(tmp_path):
    """Test paths outside the allowed root or missing files are not watched."""
    allowed = tmp_path / "allowed"
    allowed.mkdir()
    outside = tmp_path / "outside.jsonl"
    outside.write_text(interrupt_line())
    events = []
    tailer = make_tailer(events.append, [allowed])

    try:
        assert not await tailer.watch("abc", outside)
        assert not await tailer.watch("abc", allowed / "missing.jsonl")
        assert tailer.active_count == 0
        assert events == []
    finally:
        tailer.stop_all()


@pytest.mark.asyncio
async def test_unwatch_forgets_offset(tmp_path):
    """Test teardown releases the watch and forgets the offset."""
    first = tmp_path / "a.jsonl"
    second = tmp_path / "b.jsonl"
    first.write_text("")
    second.write_text("")
    tailer = make_tailer(lambda event: None, [tmp_path])

    try:
        await tailer.watch("a", first)
        await tailer.watch("b", second)
        assert tailer.active_count == 2

        tailer.unwatch("a")
        assert not tailer.is_watching("a")
        assert tailer.offset("a") is None
        # The shared directory watch stays for the other session
        assert tailer.is_watching("b")

        tailer.unwatch("a")  # no-op
        assert tailer.active_count == 1
    finally:
        tailer.stop_all()
    assert tailer.active_count == 0


@pytest.mark.asyncio
async def test_change_notification_triggers_read(tmp_path):
    """Test a real file-change notification leads to an interrupt event."""
    log = tmp_path / "s.jsonl"
    log.write_text(assistant_line("start"))
    events = []
    tailer = make_tailer(events.append, [tmp_path])

    try:
        await tailer.watch("abc", log)
        with open(log, "a") as f:
            f.write(interrupt_line())

        for _ in range(100):
            if events:
                break
            await asyncio.sleep(0.05)

        assert len(events) == 1
        assert events[0].session_id == "abc"
    finally:
        tailer.stop_all()


class RecordingLoop:
    """Stands in for the event loop; records scheduled callbacks."""

    def __init__(self) -> None:
        self.calls = []

    def call_soon_threadsafe(self, callback, *args):
        self.calls.append(args)


class TestDirectoryHandler:
    """Tests for routing watchdog events to sessions."""

    def make_handler(self, path: str):
        loop = RecordingLoop()
        handler = _DirectoryHandler(loop, lambda session_id: None)
        handler.add(path, "abc")
        return handler, loop

    def test_writes_are_routed(self, tmp_path):
        """Test modified, created and moved events reach the session."""
        path = str(tmp_path / "abc.jsonl")
        handler, loop = self.make_handler(path)

        handler.dispatch(FileModifiedEvent(path))
        handler.dispatch(FileCreatedEvent(path))
        handler.dispatch(FileMovedEvent(str(tmp_path / "tmp.jsonl"), path))

        assert loop.calls == [("abc",), ("abc",), ("abc",)]

    def test_reads_are_ignored(self, tmp_path):
        """Test open events from our own reads schedule nothing."""
        path = str(tmp_path / "abc.jsonl")
        handler, loop = self.make_handler(path)

        handler.dispatch(FileOpenedEvent(path))
        handler.dispatch(FileDeletedEvent(path))

        assert loop.calls == []

    def test_other_files_and_directories_are_ignored(self, tmp_path):
        """Test events for unwatched files or directories schedule nothing."""
        handler, loop = self.make_handler(str(tmp_path / "abc.jsonl"))

        handler.dispatch(FileModifiedEvent(str(tmp_path / "other.jsonl")))
        handler.dispatch(DirModifiedEvent(str(tmp_path)))

        assert loop.calls == []
