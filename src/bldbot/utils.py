from __future__ import annotations

import os
import re
import tempfile
from datetime import UTC, datetime

SAFE_NAME_REGEX = re.compile(r"^[A-Za-z0-9._-]+$")


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def is_filesystem_safe(name: str) -> bool:
    if name in {".", ".."}:
        return False
    return bool(SAFE_NAME_REGEX.match(name))


def generate_workspace_name(prefix: str) -> str:
    """Reserve a unique temporary directory name and release it locally.

    Only the name is kept; it is reused as the remote workspace path.
    """
    path = tempfile.mkdtemp(prefix=prefix)
    os.rmdir(path)
    return path
