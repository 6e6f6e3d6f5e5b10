"""Canonical session state for sessiontop."""

import dataclasses
import logging
from datetime import datetime
from typing import Any, Callable, Mapping

from sessiontop.models import (
    ChangeKind,
    SessionRecord,
    SessionStatus,
    StoreChange,
    StoreStats,
    display_name_for,
    is_synthetic_session_id,
    synthetic_session_id,
)

logger = logging.getLogger(__name__)

Observer = Callable[[StoreChange], None]

# Fields a partial update may not touch
_IMMUTABLE_FIELDS = {"pid"}
_RECORD_FIELDS = {f.name for f in dataclasses.fields(SessionRecord)}


class SessionStore:
    """
    Single source of truth for tracked sessions, keyed by pid.

    Every call that changes state notifies subscribers exactly once with the
    full current snapshot. Calls that change nothing stay silent.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self._clock = clock
        self._records: dict[int, SessionRecord] = {}
        self._observers: list[Observer] = []

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register ``observer`` for change notifications. Returns an unsubscribe callable."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(self, kind: ChangeKind, pid: int, session_id: str | None) -> None:
        """Send one change with a fresh snapshot to every observer."""
        change = StoreChange(kind=kind, sessions=self.snapshot(), pid=pid, session_id=session_id)
        for observer in list(self._observers):
            try:
                observer(change)
            except Exception:
                logger.exception(f"Store observer failed on {kind.value} for PID {pid}")

    def _validate(self, partial: Mapping[str, Any]) -> dict[str, Any]:
        """Reject unknown fields and drop the ones a partial may not set."""
        unknown = set(partial) - _RECORD_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        return {key: value for key, value in partial.items() if key not in _IMMUTABLE_FIELDS}

    def _new_record(self, pid: int) -> SessionRecord:
        """Create an Idle record with zeroed metrics and a synthetic session id."""
        now = self._clock()
        return SessionRecord(
            pid=pid,
            session_id=synthetic_session_id(pid),
            status=SessionStatus.IDLE,
            cpu_usage=0.0,
            memory_usage=0.0,
            start_time=now,
            first_seen_at=now,
            last_active_time=now,
        )

    def upsert(self, pid: int, partial: Mapping[str, Any] | None = None) -> SessionRecord:
        """Create the record for ``pid`` if missing, then merge ``partial`` into it."""
        updates = self._validate(partial or {})
        record = self._records.get(pid)
        if record is None:
            record = self._new_record(pid)
            self._records[pid] = record

        for key, value in updates.items():
            setattr(record, key, value)
        if "display_name" not in updates:
            record.display_name = display_name_for(pid, record.session_id)
        record.last_active_time = self._clock()

        self._notify(ChangeKind.UPDATED, pid, record.session_id)
        return record

    def update(self, pid: int, partial: Mapping[str, Any]) -> bool:
        """Merge ``partial`` into an existing record only. Returns whether anything changed."""
        record = self._records.get(pid)
        if record is None:
            return False
        updates = self._validate(partial)
        changed = {key: value for key, value in updates.items() if getattr(record, key) != value}
        if not changed:
            return False
        for key, value in changed.items():
            setattr(record, key, value)
        self._notify(ChangeKind.UPDATED, pid, record.session_id)
        return True

    def update_status_by_session_id(self, session_id: str, status: SessionStatus) -> bool:
        """Set the status of the record bound to ``session_id``. Returns whether it changed."""
        record = self.get_by_session_id(session_id)
        if record is None or record.status == status:
            return False
        record.status = status
        record.last_active_time = self._clock()
        self._notify(ChangeKind.UPDATED, record.pid, session_id)
        return True

    def associate_session(self, pid: int, session_id: str, transcript_path: str | None = None) -> SessionRecord:
        """Bind ``session_id`` (and optionally a transcript) to ``pid``, creating the record if needed."""
        record = self._records.get(pid)
        if record is None:
            record = self._new_record(pid)
            self._records[pid] = record
        record.session_id = session_id
        record.display_name = display_name_for(pid, session_id)
        if transcript_path:
            record.transcript_path = transcript_path
        record.last_active_time = self._clock()
        self._notify(ChangeKind.UPDATED, pid, session_id)
        return record

    def update_metrics(
        self,
        pid: int,
        *,
        cpu_usage: float | None = None,
        memory_usage: float | None = None,
        running_time: str | None = None,
    ) -> bool:
        """Update the scanner-owned metrics of ``pid``. Returns whether anything changed."""
        record = self._records.get(pid)
        if record is None:
            return False

        changed = False
        for key, value in (("cpu_usage", cpu_usage), ("memory_usage", memory_usage), ("running_time", running_time)):
            if value is not None and getattr(record, key) != value:
                setattr(record, key, value)
                changed = True

        if changed:
            self._notify(ChangeKind.METRICS, pid, record.session_id)
        return changed

    def rekey(self, old_pid: int, new_pid: int) -> SessionRecord | None:
        """
        Move the record at ``old_pid`` onto ``new_pid``.

        Used when a placeholder learns its real process id. If ``new_pid``
        already has a record (e.g. from a scan), its process facts are kept
        and the identity, status and transcript of the moved record win.
        """
        record = self._records.pop(old_pid, None)
        if record is None:
            return None

        existing = self._records.get(new_pid)
        if existing is not None:
            existing.session_id = record.session_id
            existing.status = record.status
            existing.transcript_path = record.transcript_path or existing.transcript_path
            existing.first_seen_at = min(existing.first_seen_at, record.first_seen_at)
            record = existing
        else:
            record.pid = new_pid
            self._records[new_pid] = record

        record.display_name = display_name_for(new_pid, record.session_id)
        record.last_active_time = self._clock()
        logger.info(f"Moved session {record.session_id} from PID {old_pid} to PID {new_pid}")
        self._notify(ChangeKind.UPDATED, new_pid, record.session_id)
        return record

    def remove(self, pid: int) -> SessionRecord | None:
        """Remove ``pid``. Unknown pids are a silent no-op."""
        record = self._records.pop(pid, None)
        if record is None:
            return None
        self._notify(ChangeKind.REMOVED, pid, record.session_id)
        return record

    def clear(self) -> None:
        """Remove every record with a single notification."""
        if not self._records:
            return
        self._records.clear()
        self._notify(ChangeKind.REMOVED, 0, None)

    def get_by_pid(self, pid: int) -> SessionRecord | None:
        """Get the record for ``pid``, if tracked."""
        return self._records.get(pid)

    def get_by_session_id(self, session_id: str) -> SessionRecord | None:
        """Get the record bound to ``session_id``, if any."""
        for record in self._records.values():
            if record.session_id == session_id:
                return record
        return None

    def find_uncorrelated(self, predicate: Callable[[SessionRecord], bool] | None = None) -> SessionRecord | None:
        """First record, in insertion order, still bound to a synthetic session id."""
        for record in self._records.values():
            if is_synthetic_session_id(record.session_id) and (predicate is None or predicate(record)):
                return record
        return None

    def has_pid(self, pid: int) -> bool:
        """Check whether ``pid`` is tracked."""
        return pid in self._records

    def pids(self) -> list[int]:
        """Get tracked pids in insertion order."""
        return list(self._records)

    def get_all(self) -> list[SessionRecord]:
        """Get the live records in insertion order."""
        return list(self._records.values())

    def snapshot(self) -> tuple[SessionRecord, ...]:
        """Detached copies of every record, safe to hand to other consumers."""
        return tuple(dataclasses.replace(record) for record in self._records.values())

    def stats(self) -> StoreStats:
        """Get aggregate counts by status."""
        running = sum(1 for r in self._records.values() if r.status == SessionStatus.RUNNING)
        placeholders = sum(1 for r in self._records.values() if r.is_placeholder)
        return StoreStats(
            total=len(self._records),
            running=running,
            idle=len(self._records) - running,
            placeholders=placeholders,
        )

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, pid: object) -> bool:
        return pid in self._records
