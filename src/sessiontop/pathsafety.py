"""Path validation for transcript logs before they are read."""

import logging
import stat
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)


def is_safe_to_read(path: str | Path, allowed_roots: Iterable[str | Path]) -> bool:
    """
    Check that ``path`` is a regular, non-symlinked file inside an allowed root.

    The check runs on the fully resolved path, so a parent directory symlinked
    out of the allowed tree is rejected as well. Violations are logged and
    reported as False, never raised.
    """
    candidate = Path(path).expanduser()
    try:
        if candidate.is_symlink():
            logger.warning(f"Symbolic link refused: {candidate}")
            return False

        real_path = candidate.resolve(strict=True)
        roots = [Path(root).expanduser().resolve() for root in allowed_roots]
        if not any(real_path.is_relative_to(root) for root in roots):
            logger.warning(f"Attempted to read file outside allowed directories: {candidate}")
            return False

        mode = real_path.lstat().st_mode
        if not stat.S_ISREG(mode):
            logger.warning(f"Not a regular file: {candidate}")
            return False
    except OSError as e:
        logger.error(f"Error validating file path {candidate}: {e}")
        return False

    return True
