"""File locking and atomic JSON persistence.

Writers take an exclusive ``fcntl`` lock on a ``<file>.lock`` sidecar, write the
document to a temporary file in the same directory and atomically rename it
into place. Readers never take the lock: the rename guarantees they see either
the old document or the new one, never a partial write.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from .errors import (
    ContextReadError,
    ContextWriteError,
    LockAcquisitionError,
    SecurityError,
    ValidationError,
)
from .merge import DANGEROUS_KEYS, strip_dangerous_keys

logger = logging.getLogger(__name__)

DEFAULT_LOCK_RETRIES = 3
DEFAULT_RETRY_DELAY = 0.1


class FileLock:
    """Exclusive advisory lock scoped to a single target file.

    Usage:
        with FileLock(path):
            ...

    Attributes:
        lock_path: Sidecar file the lock is held on
        retries: Number of non-blocking acquisition attempts
        retry_delay: Base delay between attempts (grows linearly)
    """

    def __init__(
        self,
        path: str | Path,
        retries: int = DEFAULT_LOCK_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        self.target = Path(path)
        self.lock_path = self.target.with_name(self.target.name + ".lock")
        self.retries = max(1, retries)
        self.retry_delay = retry_delay
        self._fd: int | None = None

    def acquire(self) -> None:
        """Acquire the lock or raise LockAcquisitionError after all retries."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o600)

        for attempt in range(1, self.retries + 1):
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                self._fd = fd
                return
            except BlockingIOError:
                if attempt == self.retries:
                    break
                logger.debug(
                    f"Lock busy on {self.target}, retrying ({attempt}/{self.retries})"
                )
                time.sleep(self.retry_delay * attempt)

        os.close(fd)
        raise LockAcquisitionError(
            f"Could not acquire lock for {self.target} after {self.retries} attempts",
            details={"path": str(self.target)},
        )

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


def _drop_dangerous_pairs(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    return {key: value for key, value in pairs if key not in DANGEROUS_KEYS}


def loads_safe(text: str) -> Any:
    """Decode JSON, discarding dangerous keys at every depth."""
    return json.loads(text, object_pairs_hook=_drop_dangerous_pairs)


def read_json(path: str | Path, default: Any = None, max_size: int | None = None) -> Any:
    """Read a JSON document written by :func:`atomic_write_json`.

    Args:
        path: File to read
        default: Value returned when the file does not exist
        max_size: Size ceiling in bytes, checked before parsing

    Returns:
        Decoded document, or ``default`` if missing

    Raises:
        SecurityError: If the file exceeds ``max_size``
        ValidationError: If the file is not valid JSON
        ContextReadError: If the file cannot be read
    """
    path = Path(path)
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return default
    except OSError as e:
        raise ContextReadError(f"Failed to stat {path}: {e}") from e

    if max_size is not None and size > max_size:
        raise SecurityError(
            f"File {path.name} exceeds maximum size of {max_size} bytes",
            details={"size": size, "max_size": max_size},
        )

    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except OSError as e:
        raise ContextReadError(f"Failed to read {path}: {e}") from e

    try:
        return loads_safe(text)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON in {path.name}: {e}") from e


def _dump(path: Path, data: Any) -> str:
    try:
        return json.dumps(strip_dangerous_keys(data), indent=2)
    except (TypeError, ValueError) as e:
        raise ContextWriteError(f"Document for {path.name} is not JSON serializable: {e}") from e


def _replace(path: Path, payload: str, mode: int) -> None:
    """Write ``payload`` to a temp file beside ``path`` and rename it into place.

    Caller must hold the lock for ``path``.
    """
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_name, mode)
        os.replace(temp_name, path)
    except OSError as e:
        Path(temp_name).unlink(missing_ok=True)
        raise ContextWriteError(f"Failed to write {path}: {e}") from e
    logger.debug(f"Wrote {path}")


def atomic_write_json(
    path: str | Path,
    data: Any,
    mode: int = 0o600,
    retries: int = DEFAULT_LOCK_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
) -> None:
    """Write ``data`` as JSON under an exclusive lock, via temp file and rename.

    Args:
        path: Destination file
        data: JSON-serializable document (dangerous keys are stripped)
        mode: Permission bits applied to the written file
        retries: Lock acquisition attempts
        retry_delay: Base delay between lock attempts

    Raises:
        LockAcquisitionError: If the lock could not be acquired
        ContextWriteError: If serialization or the write itself fails
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = _dump(path, data)

    with FileLock(path, retries=retries, retry_delay=retry_delay):
        _replace(path, payload, mode)


def update_json(
    path: str | Path,
    mutate: Callable[[Any], Any],
    default: Any = None,
    max_size: int | None = None,
    mode: int = 0o600,
    retries: int = DEFAULT_LOCK_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
) -> Any:
    """Read, transform and rewrite a document while holding its lock.

    Concurrent read-modify-write cycles on the same file are serialized, so no
    update is lost.

    Args:
        path: Document to update
        mutate: Receives the current document (or ``default``) and returns
            the new one
        default: Value passed to ``mutate`` when the file does not exist
        max_size: Size ceiling enforced on the existing document

    Returns:
        The document returned by ``mutate``
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with FileLock(path, retries=retries, retry_delay=retry_delay):
        current = read_json(path, default=default, max_size=max_size)
        updated = mutate(current)
        _replace(path, _dump(path, updated), mode)

    return updated
