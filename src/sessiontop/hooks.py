"""Intake of push-style lifecycle hooks from the monitored application."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Annotated, Any, Callable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sessiontop.models import HookEvent, HookEventKind

logger = logging.getLogger(__name__)

# settings.json hook name for each event kind
HOOK_NAMES = {
    HookEventKind.SESSION_START: "SessionStart",
    HookEventKind.REQUEST_START: "UserPromptSubmit",
    HookEventKind.REQUEST_STOP: "Stop",
}


class InvalidHookPayload(ValueError):
    """Raised when a hook cannot be turned into a HookEvent."""


class HookPayload(BaseModel):
    """Body posted by a hook command. Unknown fields are ignored."""

    model_config = ConfigDict(extra="ignore")

    session_id: str = Field(..., min_length=1)
    transcript_path: str | None = None
    pid: Annotated[int, Field(gt=0)] | None = None


def parse_kind(kind: str | HookEventKind) -> HookEventKind:
    if isinstance(kind, HookEventKind):
        return kind
    try:
        return HookEventKind(str(kind).strip().lower())
    except ValueError:
        raise InvalidHookPayload(f"invalid hook type: {kind!r}") from None


class HookReceiver:
    """Validates hook payloads and hands the resulting events to ``handler``."""

    def __init__(
        self,
        handler: Callable[[HookEvent], None],
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._handler = handler
        self._clock = clock

    def parse(self, kind: str | HookEventKind, payload: Mapping[str, Any]) -> HookEvent:
        """Validate a payload and build the HookEvent without forwarding it."""
        event_kind = parse_kind(kind)
        try:
            body = HookPayload.model_validate(payload)
        except ValidationError as e:
            raise InvalidHookPayload(str(e)) from e
        return HookEvent(
            kind=event_kind,
            session_id=body.session_id,
            pid=body.pid,
            transcript_path=body.transcript_path,
            timestamp=self._clock(),
        )

    def receive(self, kind: str | HookEventKind, payload: Mapping[str, Any]) -> HookEvent:
        """Parse and forward one hook.

        Raises:
            InvalidHookPayload: If the kind is unknown or the payload is invalid.
        """
        event = self.parse(kind, payload)
        logger.debug(f"Received {event.kind.value} hook for session {event.session_id}")
        self._handler(event)
        return event


def hook_command(base_url: str, kind: HookEventKind) -> str:
    return f'curl -sS -X POST -H "Content-Type: application/json" --data-binary @- {base_url}/{kind.value}'


def install_hooks(settings_path: str | Path, base_url: str) -> bool:
    """
    Point the application's SessionStart, UserPromptSubmit and Stop hooks at ``base_url``.

    Other settings are preserved. Returns True when the file was written,
    False when the hooks were already configured.
    """
    settings_path = Path(settings_path).expanduser()
    settings: dict[str, Any] = {}
    if settings_path.exists():
        try:
            settings = json.loads(settings_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.error(f"Could not parse settings {settings_path}: {e}")
            settings = {}
        if not isinstance(settings, dict):
            settings = {}

    hooks = settings.setdefault("hooks", {})
    changed = False
    for kind, name in HOOK_NAMES.items():
        wanted = [{"hooks": [{"type": "command", "command": hook_command(base_url, kind)}]}]
        if hooks.get(name) != wanted:
            hooks[name] = wanted
            changed = True

    if not changed:
        logger.info("Hooks are already configured")
        return False

    settings_path.parent.mkdir(parents=True, exist_ok=True)
    settings_path.write_text(json.dumps(settings, indent=2), encoding="utf-8")
    logger.info(f"Hooks configured in {settings_path}")
    return True
