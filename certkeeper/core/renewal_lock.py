"""
Renewal lock shared between provisioning and the config watcher.

The lock is a marker file: while it exists, certificate material is being
mutated and the watcher must not reload nginx. The marker records its
owner so a crashed run cannot block the watcher forever.
"""

import logging
import os
import socket
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class LockHeldError(Exception):
    """The renewal lock is held by another live run."""

    def __init__(self, message: str, owner: "LockOwner | None" = None, suggestion: str | None = None):
        self.message = message
        self.owner = owner
        self.suggestion = suggestion
        super().__init__(message)


class LockOwner(BaseModel):
    """Contents of the lock marker file."""

    pid: int
    hostname: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class RenewalLock:
    """
    Cross-process lock backed by a marker file.

    Existence of the file means "locked". A marker is stale when it is
    older than `stale_after` seconds, or when its owner process on this
    host is gone. Stale markers count as absent.
    """

    def __init__(self, path: str | Path, stale_after: float = 3600):
        self.path = Path(path)
        self.stale_after = stale_after

    def owner(self) -> LockOwner | None:
        """Read the marker owner; None if absent or unreadable."""
        try:
            return LockOwner.model_validate_json(self.path.read_text())
        except (OSError, ValueError, ValidationError):
            return None

    def _age(self) -> float | None:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def is_stale(self) -> bool:
        """Check whether an existing marker has been abandoned."""
        age = self._age()
        if age is None:
            return False
        if age > self.stale_after:
            return True

        owner = self.owner()
        if owner is None:
            # Legacy or half-written marker: only age can expire it
            return False
        if owner.hostname == socket.gethostname() and not _pid_alive(owner.pid):
            return True
        return False

    def is_held(self) -> bool:
        """True while a live run holds the lock."""
        if not self.path.exists():
            return False
        if self.is_stale():
            logger.warning(f"Ignoring stale renewal lock {self.path} (owner: {self.owner()})")
            return False
        return True

    def acquire(self) -> LockOwner:
        """
        Create the marker file.

        Raises:
            LockHeldError: If another live run holds the lock
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        owner = LockOwner(pid=os.getpid(), hostname=socket.gethostname())

        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if not self.is_stale():
                    raise LockHeldError(
                        f"Renewal lock {self.path} is held",
                        owner=self.owner(),
                        suggestion="Wait for the running provisioning to finish",
                    )
                logger.warning(f"Breaking stale renewal lock {self.path}")
                self.path.unlink(missing_ok=True)
                continue

            with os.fdopen(fd, "w") as fh:
                fh.write(owner.model_dump_json())
            logger.info(f"Acquired renewal lock {self.path}")
            return owner

        raise LockHeldError(f"Could not acquire renewal lock {self.path}")

    def release(self) -> None:
        """Remove the marker file; a missing marker is fine."""
        self.path.unlink(missing_ok=True)
        logger.info(f"Released renewal lock {self.path}")

    @contextmanager
    def hold(self) -> Iterator[LockOwner]:
        """Hold the lock for the duration of the block, releasing on every exit path."""
        owner = self.acquire()
        try:
            yield owner
        finally:
            self.release()
