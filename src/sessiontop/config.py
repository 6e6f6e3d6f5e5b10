"""Runtime configuration for sessiontop."""

import os
from dataclasses import dataclass, field
from pathlib import Path

ENV_PREFIX = "SESSIONTOP_"


def _default_claude_dir() -> Path:
    return Path.home() / ".claude"


@dataclass(slots=True, frozen=True)
class MonitorConfig:
    """Polling cadences, paths and network settings.

    Intervals are in seconds.
    """

    process_name: str = "claude"
    scan_interval: float = 1.0
    liveness_interval: float = 1.0
    workdir_interval: float = 5.0
    workdir_initial_delay: float = 2.0
    placeholder_ttl: float = 3600.0
    log_retry_delay: float = 2.0
    projects_dir: Path = field(default_factory=lambda: _default_claude_dir() / "projects")
    allowed_log_roots: tuple[Path, ...] = field(default_factory=lambda: (_default_claude_dir(),))
    host: str = "127.0.0.1"
    port: int = 8998

    @classmethod
    def from_env(cls, **overrides) -> "MonitorConfig":
        """Build a config from ``SESSIONTOP_*`` environment variables.

        Keyword overrides (e.g. from the command line) win over the environment.
        """
        claude_dir = Path(os.getenv(f"{ENV_PREFIX}CLAUDE_DIR", str(_default_claude_dir()))).expanduser()
        values = {
            "process_name": os.getenv(f"{ENV_PREFIX}PROCESS_NAME", "claude"),
            "scan_interval": float(os.getenv(f"{ENV_PREFIX}SCAN_INTERVAL", "1.0")),
            "liveness_interval": float(os.getenv(f"{ENV_PREFIX}LIVENESS_INTERVAL", "1.0")),
            "workdir_interval": float(os.getenv(f"{ENV_PREFIX}WORKDIR_INTERVAL", "5.0")),
            "placeholder_ttl": float(os.getenv(f"{ENV_PREFIX}PLACEHOLDER_TTL", "3600")),
            "projects_dir": claude_dir / "projects",
            "allowed_log_roots": (claude_dir,),
            "host": os.getenv(f"{ENV_PREFIX}HOST", "127.0.0.1"),
            "port": int(os.getenv(f"{ENV_PREFIX}PORT", "8998")),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    @property
    def hooks_base_url(self) -> str:
        """Get the URL prefix the hook commands post to."""
        return f"http://{self.host}:{self.port}/api/hooks"
