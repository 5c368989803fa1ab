"""
Cross-process install lock.

The lock is a JSON file holding the owner's pid, its process create time, a
timestamp and the hostname. It is published atomically with a hard link. A lock
whose owner is gone (or whose pid now belongs to a newer process) is stale and
gets reclaimed.
"""

from __future__ import annotations

import asyncio
import errno
import json
import logging
import os
import socket
import time
import uuid
from pathlib import Path
from typing import Optional

import psutil
from pydantic import BaseModel, ValidationError

from deskhost.core.errors import InstallationError, InstallErrorKind

logger = logging.getLogger(__name__)

LOCK_FILENAME = "install.lock"
_POLL_INTERVAL = 0.25
# create_time() is reported with limited precision on some platforms.
_CREATE_TIME_SLACK = 1.0
# An unreadable lock younger than this may still be mid-write.
_UNREADABLE_GRACE = 5.0
_NO_HARDLINK_ERRNOS = frozenset({errno.EPERM, errno.ENOTSUP, errno.EOPNOTSUPP, errno.ENOSYS})


class LockRecord(BaseModel):
    pid: int
    create_time: float
    timestamp: float
    hostname: str = ""


def _process_create_time(pid: int) -> Optional[float]:
    try:
        return psutil.Process(pid).create_time()
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return None
    except psutil.AccessDenied:
        # Alive but owned by someone else; treat as alive with unknown start.
        return -1.0


def owner_alive(record: LockRecord) -> bool:
    if record.hostname and record.hostname != socket.gethostname():
        # Cannot verify a foreign host's process table; assume it is alive.
        return True
    if not psutil.pid_exists(record.pid):
        return False
    started = _process_create_time(record.pid)
    if started is None:
        return False
    if started < 0:
        return True
    return abs(started - record.create_time) <= _CREATE_TIME_SLACK


def _read_record(path: Path) -> Optional[LockRecord]:
    """Parse a lock file; ``None`` when it is missing, empty or corrupt."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    try:
        return LockRecord.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError):
        return None


class InstallLock:
    """Filesystem-visible mutual exclusion for one install base path.

    The record is written to a private temp file first and then hard-linked
    into place, so the lock path never exists without a complete record.
    Stale locks are renamed aside before removal; a lock that turns out to be
    live once renamed is linked back.
    """

    def __init__(self, base_path: Path, *, state_dir: str = ".deskhost") -> None:
        self.path = Path(base_path) / state_dir / LOCK_FILENAME
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def read(self) -> Optional[LockRecord]:
        return _read_record(self.path)

    def _record(self) -> LockRecord:
        pid = os.getpid()
        return LockRecord(
            pid=pid,
            create_time=psutil.Process(pid).create_time(),
            timestamp=time.time(),
            hostname=socket.gethostname(),
        )

    def _sibling(self, tag: str) -> Path:
        return self.path.with_name(f"{self.path.name}.{tag}-{os.getpid()}-{uuid.uuid4().hex[:8]}")

    def _age(self) -> Optional[float]:
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _publish(self, source: Path, content: str) -> bool:
        """Make ``source`` the lock file unless one exists; False when taken."""
        try:
            os.link(source, self.path)
            return True
        except FileExistsError:
            return False
        except OSError as exc:
            if exc.errno not in _NO_HARDLINK_ERRNOS:
                raise
        # Filesystem without hard links: exclusive create, then write.
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        return True

    def _create(self) -> bool:
        content = self._record().model_dump_json()
        staging = self._sibling("tmp")
        staging.write_text(content, encoding="utf-8")
        try:
            return self._publish(staging, content)
        finally:
            staging.unlink(missing_ok=True)

    def _reclaim(self, judged: Optional[LockRecord]) -> None:
        aside = self._sibling("stale")
        try:
            os.replace(self.path, aside)
        except FileNotFoundError:
            return
        try:
            taken = _read_record(aside)
            if taken is not None and taken != judged and owner_alive(taken):
                # Re-created by a live owner after it was judged stale.
                if not self._publish(aside, taken.model_dump_json()):
                    logger.warning("Install lock %s changed hands during reclaim", self.path)
        finally:
            aside.unlink(missing_ok=True)

    def try_acquire(self) -> bool:
        """Take the lock without waiting; reclaims stale locks."""
        if self._held:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(3):
            if self._create():
                self._held = True
                return True
            existing = self.read()
            if existing is None:
                age = self._age()
                if age is None:
                    continue
                if age < _UNREADABLE_GRACE:
                    # Still being written by an owner without hard-link support.
                    return False
                logger.warning("Install lock %s is unreadable; treating as stale", self.path)
            elif owner_alive(existing):
                return False
            logger.info(
                "Reclaiming stale install lock %s (owner pid=%s)",
                self.path,
                existing.pid if existing else "?",
            )
            self._reclaim(existing)
        return False

    async def acquire(self, wait: float = 0.0) -> None:
        """Acquire the lock, polling for up to ``wait`` seconds."""
        deadline = time.monotonic() + max(0.0, wait)
        while True:
            try:
                acquired = await asyncio.to_thread(self.try_acquire)
            except OSError as exc:
                raise InstallationError.from_os_error(exc, context="install lock") from exc
            if acquired:
                logger.debug("Install lock acquired: %s", self.path)
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                owner = self.read()
                raise InstallationError(
                    InstallErrorKind.LOCK_CONTENTION,
                    f"Another instance is installing into {self.path.parent.parent}",
                    details={"owner": owner.model_dump() if owner else None},
                )
            await asyncio.sleep(min(_POLL_INTERVAL, remaining))

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        current = self.read()
        if current is not None and current.pid != os.getpid():
            logger.warning("Install lock %s was taken over by pid %s", self.path, current.pid)
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        logger.debug("Install lock released: %s", self.path)
