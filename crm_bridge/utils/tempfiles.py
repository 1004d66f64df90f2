from __future__ import annotations

import secrets
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import structlog

logger = structlog.get_logger(__name__)


def unique_temp_path(temp_dir: str | Path, prefix: str, extension: str) -> Path:
    directory = Path(temp_dir)
    directory.mkdir(parents=True, exist_ok=True)
    suffix = f".{extension.lstrip('.')}" if extension else ""
    name = f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(6)}{suffix}"
    return directory / name


@contextmanager
def scoped_temp_path(temp_dir: str | Path, prefix: str, extension: str) -> Iterator[Path]:
    """Yield a unique path that is removed when the block exits, whatever happens inside."""
    path = unique_temp_path(temp_dir, prefix, extension)
    try:
        yield path
    finally:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("temp_cleanup_failed", path=str(path), error=str(exc))
