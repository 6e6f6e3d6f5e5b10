"""Stateless process-table scanning for sessiontop."""

import asyncio
import logging
import os
from datetime import datetime, timedelta

import psutil

from sessiontop.models import ProcessSample, is_placeholder_pid

logger = logging.getLogger(__name__)

# pid, %cpu, %mem, elapsed time, full command line; "=" suppresses headers
PS_COMMAND = ("ps", "-eo", "pid=,pcpu=,pmem=,etime=,args=")

# Rows for the querying tools themselves are never sessions
_SELF_LISTING = {"ps", "grep"}


class ProcessScanError(RuntimeError):
    """Raised when the process table cannot be queried at all."""


def parse_elapsed(etime: str) -> float:
    """
    Parse a ps elapsed-time field into seconds.

    Supports ``SS``, ``MM:SS``, ``HH:MM:SS``, ``D-HH:MM:SS`` and ``DD-HH:MM:SS``.

    Raises:
        ValueError: If the field does not match any supported format.
    """
    etime = etime.strip()
    if not etime:
        raise ValueError("empty elapsed time")

    days = 0
    clock = etime
    if "-" in etime:
        day_part, clock = etime.split("-", 1)
        days = int(day_part)
        if clock.count(":") != 2:
            raise ValueError(f"day-prefixed elapsed time needs HH:MM:SS: {etime!r}")

    parts = clock.split(":")
    if len(parts) > 3:
        raise ValueError(f"unrecognized elapsed time: {etime!r}")

    seconds = float(parts[-1])
    minutes = int(parts[-2]) if len(parts) >= 2 else 0
    hours = int(parts[-3]) if len(parts) == 3 else 0
    if seconds < 0 or minutes < 0 or hours < 0 or days < 0:
        raise ValueError(f"negative component in elapsed time: {etime!r}")

    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def format_duration(seconds: float) -> str:
    """Format a duration for display, e.g. ``4:05``, ``1:02:03`` or ``2d 3:04:05``."""
    total = max(0, int(seconds))
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, secs = divmod(rem, 60)
    if days:
        return f"{days}d {hours}:{minutes:02d}:{secs:02d}"
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def parse_ps_line(line: str, now: datetime | None = None) -> ProcessSample | None:
    """Parse one row of ``PS_COMMAND`` output. Malformed rows yield None."""
    parts = line.split(None, 4)
    if len(parts) < 5:
        return None

    try:
        pid = int(parts[0])
        cpu = float(parts[1])
        mem = float(parts[2])
        elapsed = parse_elapsed(parts[3])
    except ValueError:
        logger.debug(f"Skipping malformed process line: {line!r}")
        return None

    if pid <= 0:
        return None

    now = now or datetime.now()
    return ProcessSample(
        pid=pid,
        cpu_percent=cpu,
        memory_percent=mem,
        elapsed_seconds=elapsed,
        start_time=now - timedelta(seconds=elapsed),
        command=parts[4].strip(),
    )


def matches_executable(command: str, name: str) -> bool:
    """
    Check whether a command line runs the target executable.

    The executable itself or, for script hosts such as ``node``, the first
    argument must have ``name`` as its base name.
    """
    argv = command.split()
    if not argv:
        return False
    executable = os.path.basename(argv[0])
    if executable in _SELF_LISTING:
        return False
    return any(os.path.basename(arg) == name for arg in argv[:2])


async def scan_processes(name: str = "claude") -> list[ProcessSample]:
    """
    Run one process-table query and return the rows for ``name``.

    Raises:
        ProcessScanError: If ps cannot be spawned or exits with an error.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *PS_COMMAND,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
    except OSError as e:
        raise ProcessScanError(f"failed to run ps: {e}") from e

    if proc.returncode != 0:
        raise ProcessScanError(f"ps exited with {proc.returncode}: {stderr.decode(errors='replace').strip()}")

    now = datetime.now()
    samples: list[ProcessSample] = []
    for line in stdout.decode(errors="replace").splitlines():
        sample = parse_ps_line(line, now)
        if sample is None or sample.pid == proc.pid:
            continue
        if matches_executable(sample.command, name):
            samples.append(sample)

    logger.debug(f"Found {len(samples)} {name} processes")
    return samples


def is_process_alive(pid: int) -> bool:
    """Lightweight existence probe. Zombies and placeholder pids count as gone."""
    if is_placeholder_pid(pid):
        return False
    if not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return True
