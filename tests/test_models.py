"""Tests for sessiontop data models."""

from datetime import datetime

from sessiontop.models import (
    HookEvent,
    HookEventKind,
    LogInterrupt,
    ProcessSample,
    SessionRecord,
    SessionStatus,
    display_name_for,
    is_placeholder_pid,
    is_synthetic_session_id,
    synthetic_session_id,
)


def make_record(**overrides) -> SessionRecord:
    now = datetime(2024, 1, 1, 12, 0, 0)
    fields = dict(
        pid=123,
        session_id="pid-123",
        status=SessionStatus.IDLE,
        cpu_usage=1.5,
        memory_usage=2.5,
        start_time=now,
        first_seen_at=now,
        last_active_time=now,
    )
    fields.update(overrides)
    return SessionRecord(**fields)


def test_session_record_defaults():
    """Test SessionRecord optional fields default sensibly."""
    record = make_record()

    assert record.running_time == "0:00"
    assert record.working_dir is None
    assert record.transcript_path is None


def test_session_record_uses_slots():
    """Test that SessionRecord uses __slots__ for memory efficiency."""
    record = make_record()

    # Slots-based dataclasses don't have __dict__
    assert not hasattr(record, "__dict__")


def test_session_record_placeholder_and_correlation():
    """Test placeholder and correlation flags follow pid and session id."""
    assert make_record(pid=-1, session_id="abc").is_placeholder
    assert make_record(pid=-1, session_id="abc").is_correlated
    assert not make_record().is_placeholder
    assert not make_record().is_correlated


def test_session_record_to_dict():
    """Test the transport representation uses camelCase keys and plain values."""
    data = make_record(session_id="abcdef0123", display_name="Session abcdef01").to_dict()

    assert data["pid"] == 123
    assert data["sessionId"] == "abcdef0123"
    assert data["status"] == "idle"
    assert data["startTime"] == "2024-01-01T12:00:00"
    assert data["workingDir"] is None


def test_process_sample_is_frozen():
    """Test that ProcessSample is immutable (frozen)."""
    sample = ProcessSample(
        pid=1,
        cpu_percent=0.1,
        memory_percent=0.5,
        elapsed_seconds=60.0,
        start_time=datetime.now(),
        command="claude",
    )

    try:
        sample.pid = 999
        raise AssertionError("Should have raised FrozenInstanceError")
    except AttributeError:
        pass  # Expected behavior for frozen dataclass


def test_signal_kinds_are_tagged():
    """Test hook and log signals carry their discriminator."""
    hook = HookEvent(kind=HookEventKind.REQUEST_START, session_id="abc", timestamp=datetime.now())
    interrupt = LogInterrupt(session_id="abc", timestamp=datetime.now())

    assert hook.kind is HookEventKind.REQUEST_START
    assert interrupt.kind == "log_interrupt"


def test_identity_helpers():
    """Test synthetic ids, placeholder pids and display names."""
    assert synthetic_session_id(42) == "pid-42"
    assert is_synthetic_session_id("pid-42")
    assert is_synthetic_session_id(None)
    assert not is_synthetic_session_id("3f2a9c")
    assert is_placeholder_pid(-3)
    assert not is_placeholder_pid(1)
    assert display_name_for(42, "pid-42") == "PID 42"
    assert display_name_for(42, "0123456789abcdef") == "Session 01234567"
