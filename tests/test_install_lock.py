from __future__ import annotations

import asyncio
import json
import os
import socket
import time
from pathlib import Path

import psutil
import pytest

from deskhost.core.errors import InstallationError, InstallErrorKind
from deskhost.install.lock import InstallLock, LockRecord, owner_alive


def test_second_holder_is_refused_while_owner_alive(tmp_path: Path):
    first = InstallLock(tmp_path)
    second = InstallLock(tmp_path)
    assert first.try_acquire()
    assert not second.try_acquire()

    record = json.loads(first.path.read_text(encoding="utf-8"))
    assert record["pid"] == os.getpid()
    assert set(record) == {"pid", "create_time", "timestamp", "hostname"}

    with pytest.raises(InstallationError) as excinfo:
        asyncio.run(second.acquire(wait=0))
    assert excinfo.value.kind is InstallErrorKind.LOCK_CONTENTION
    assert excinfo.value.recoverable

    first.release()
    assert not first.path.exists()
    assert second.try_acquire()
    second.release()


def test_stale_lock_from_dead_pid_is_reclaimed(tmp_path: Path, monkeypatch):
    lock = InstallLock(tmp_path)
    lock.path.parent.mkdir(parents=True)
    stale = LockRecord(pid=999_999, create_time=1.0, timestamp=1.0, hostname=socket.gethostname())
    lock.path.write_text(stale.model_dump_json(), encoding="utf-8")
    monkeypatch.setattr(psutil, "pid_exists", lambda pid: pid == os.getpid())
    assert lock.try_acquire()
    assert lock.read().pid == os.getpid()
    lock.release()


def test_reused_pid_is_detected_by_create_time():
    me = psutil.Process(os.getpid())
    fresh = LockRecord(
        pid=me.pid, create_time=me.create_time(), timestamp=0.0, hostname=socket.gethostname()
    )
    reused = fresh.model_copy(update={"create_time": me.create_time() - 3600})
    assert owner_alive(fresh)
    assert not owner_alive(reused)


def test_foreign_host_lock_is_assumed_alive():
    record = LockRecord(pid=1, create_time=0.0, timestamp=0.0, hostname="some-other-host")
    assert owner_alive(record)


def test_old_unreadable_lock_is_treated_as_stale(tmp_path: Path):
    lock = InstallLock(tmp_path)
    lock.path.parent.mkdir(parents=True)
    lock.path.write_text("garbage", encoding="utf-8")
    old = time.time() - 60
    os.utime(lock.path, (old, old))
    assert lock.try_acquire()
    assert lock.read().pid == os.getpid()
    lock.release()


def test_lock_caught_mid_creation_is_not_taken(tmp_path: Path):
    lock = InstallLock(tmp_path)
    lock.path.parent.mkdir(parents=True)
    fd = os.open(str(lock.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    os.close(fd)
    assert not lock.try_acquire()
    assert lock.path.read_text(encoding="utf-8") == ""


def test_acquired_lock_never_appears_without_a_record(tmp_path: Path):
    lock = InstallLock(tmp_path)
    assert lock.try_acquire()
    assert lock.read() is not None
    assert sorted(p.name for p in lock.path.parent.iterdir()) == ["install.lock"]
    lock.release()


def test_reclaim_restores_a_lock_recreated_by_a_live_owner(tmp_path: Path):
    lock = InstallLock(tmp_path)
    lock.path.parent.mkdir(parents=True)
    stale = LockRecord(pid=999_999, create_time=1.0, timestamp=1.0, hostname=socket.gethostname())
    me = psutil.Process(os.getpid())
    live = LockRecord(
        pid=me.pid, create_time=me.create_time(), timestamp=time.time(), hostname=socket.gethostname()
    )
    # Judged stale, but a live owner re-created it before the rename.
    lock.path.write_text(live.model_dump_json(), encoding="utf-8")
    lock._reclaim(stale)
    assert lock.read() == live
    assert sorted(p.name for p in lock.path.parent.iterdir()) == ["install.lock"]


def test_acquire_waits_for_release(tmp_path: Path):
    holder = InstallLock(tmp_path)
    waiter = InstallLock(tmp_path)
    assert holder.try_acquire()

    async def _run():
        loop = asyncio.get_running_loop()
        loop.call_later(0.1, holder.release)
        await waiter.acquire(wait=2.0)

    asyncio.run(_run())
    assert waiter.held
    waiter.release()
