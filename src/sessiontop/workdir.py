"""Working-directory resolution and caching for tracked processes."""

import asyncio
import logging
import os
import sys
import time
from dataclasses import dataclass
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

CACHE_TTL = 30.0
LSOF_TIMEOUT = 2.0


@dataclass(slots=True)
class CacheEntry:
    """Last successful lookup for one pid."""

    directory: str | None
    timestamp: float


class ProcCwdStrategy:
    """Reads the ``/proc/<pid>/cwd`` symlink (Linux)."""

    def __init__(self, proc_root: str = "/proc") -> None:
        self._proc_root = proc_root

    async def resolve(self, pid: int) -> str | None:
        link = os.path.join(self._proc_root, str(pid), "cwd")
        try:
            directory = await asyncio.to_thread(os.readlink, link)
        except OSError as e:
            logger.debug(f"readlink {link} failed: {e}")
            return None
        return directory or None


class LsofStrategy:
    """Asks lsof for just the cwd descriptor (macOS), bounded by a timeout."""

    def __init__(self, timeout: float = LSOF_TIMEOUT, executable: str = "lsof") -> None:
        self._timeout = timeout
        self._executable = executable

    async def resolve(self, pid: int) -> str | None:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._executable, "-a", "-p", str(pid), "-d", "cwd", "-Fn",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.debug(f"Failed to spawn {self._executable} for PID {pid}: {e}")
            return None

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.debug(f"{self._executable} timed out for PID {pid}")
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return None

        return parse_lsof_output(stdout.decode(errors="replace"))


class UnsupportedStrategy:
    """Platforms without a known lookup report an unknown directory."""

    async def resolve(self, pid: int) -> str | None:
        return None


def parse_lsof_output(output: str) -> str | None:
    """Return the path from the first ``n``-prefixed line of ``lsof -Fn`` output."""
    for line in output.splitlines():
        if line.startswith("n"):
            return line[1:].strip() or None
    return None


def default_strategy(platform: str | None = None):
    """Pick the lookup strategy for ``platform`` (defaults to ``sys.platform``)."""
    platform = platform or sys.platform
    if platform.startswith("linux"):
        return ProcCwdStrategy()
    if platform == "darwin":
        return LsofStrategy()
    return UnsupportedStrategy()


class WorkingDirResolver:
    """
    Resolves and caches each process's current working directory.

    Lookups are expensive on some platforms, so results stay fresh for
    ``ttl`` seconds and are purged after ``2 * ttl``. At most one lookup per
    pid is in flight; a concurrent caller gets the last cached value.
    """

    def __init__(
        self,
        strategy=None,
        ttl: float = CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._strategy = strategy or default_strategy()
        self._ttl = ttl
        self._clock = clock
        self._cache: dict[int, CacheEntry] = {}
        self._resolving: set[int] = set()

    @property
    def ttl(self) -> float:
        """Get the cache lifetime in seconds."""
        return self._ttl

    def _fresh(self, pid: int) -> CacheEntry | None:
        """Get the cache entry for ``pid`` if it is younger than the TTL."""
        entry = self._cache.get(pid)
        if entry is not None and self._clock() - entry.timestamp < self._ttl:
            return entry
        return None

    def cached(self, pid: int) -> str | None:
        """Get the last known directory for ``pid`` regardless of age."""
        entry = self._cache.get(pid)
        return entry.directory if entry else None

    async def get_working_dir(self, pid: int) -> str | None:
        """Return the working directory for ``pid``, or the last known one on failure."""
        entry = self._fresh(pid)
        if entry is not None:
            return entry.directory

        if pid in self._resolving:
            return self.cached(pid)

        self._resolving.add(pid)
        try:
            directory = await self._strategy.resolve(pid)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Failed to get working dir for PID {pid}: {e}")
            directory = None
        finally:
            self._resolving.discard(pid)

        if directory is None:
            return self.cached(pid)

        self._cache[pid] = CacheEntry(directory=directory, timestamp=self._clock())
        return directory

    async def get_working_dirs(self, pids: Iterable[int]) -> dict[int, str | None]:
        """Resolve many pids concurrently; each failure is independent of the others."""
        pids = list(dict.fromkeys(pids))
        results = await asyncio.gather(
            *(self.get_working_dir(pid) for pid in pids),
            return_exceptions=True,
        )
        resolved: dict[int, str | None] = {}
        for pid, result in zip(pids, results):
            if isinstance(result, BaseException):
                logger.debug(f"Working dir lookup for PID {pid} raised {result!r}")
                resolved[pid] = self.cached(pid)
            else:
                resolved[pid] = result
        return resolved

    def cleanup_cache(self) -> int:
        """Purge entries older than twice the TTL. Returns the number removed."""
        now = self._clock()
        stale = [pid for pid, entry in self._cache.items() if now - entry.timestamp > self._ttl * 2]
        for pid in stale:
            del self._cache[pid]
        return len(stale)

    def forget(self, pid: int) -> None:
        """Drop the cache entry for ``pid``."""
        self._cache.pop(pid, None)

    def clear_cache(self) -> None:
        """Drop every cache entry."""
        self._cache.clear()
