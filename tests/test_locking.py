from __future__ import annotations

import json
import os
import socket
import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest

from borgman.locking import LockBusy, LockReleaseError, RepositoryLockManager, lock_path_for, pid_alive

SRC_DIR = Path(__file__).resolve().parents[1] / "src"

HOLDER_SCRIPT = """
import sys, time
from pathlib import Path
from borgman.locking import RepositoryLockManager
RepositoryLockManager().acquire(Path(sys.argv[1]))
print("locked", flush=True)
time.sleep(60)
"""


def dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def write_record(repo: Path, **record) -> Path:
    lock_path = lock_path_for(repo)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text(json.dumps(record), encoding="utf-8")
    return lock_path


@pytest.fixture
def repo(tmp_path) -> Path:
    return tmp_path / "repos" / "home"


class TestAcquireRelease:
    def test_lock_file_records_holder(self, locks, repo):
        handle = locks.acquire(repo)
        record = json.loads(handle.lock_path.read_text())

        assert handle.lock_path == repo.parent / ".home.borgman.lock"
        assert record["pid"] == os.getpid()
        assert record["hostname"] == socket.gethostname()
        assert record["token"] == handle.token
        assert "acquired_at" in record

    def test_second_acquire_is_busy(self, locks, repo):
        locks.acquire(repo)
        with pytest.raises(LockBusy) as excinfo:
            locks.acquire(repo)
        assert excinfo.value.holder["pid"] == os.getpid()

    def test_release_is_idempotent(self, locks, repo):
        handle = locks.acquire(repo)
        locks.release(handle)
        locks.release(handle)

        assert handle.released
        assert not handle.lock_path.exists()

    def test_reacquire_immediately_after_release(self, locks, repo):
        locks.release(locks.acquire(repo))
        handle = locks.acquire(repo)
        assert handle.lock_path.exists()

    def test_hold_releases_on_exception(self, locks, repo):
        with pytest.raises(RuntimeError):
            with locks.hold(repo):
                raise RuntimeError("stage blew up")
        assert not locks.is_locked(repo)

    def test_release_refuses_foreign_lock(self, locks, repo):
        handle = locks.acquire(repo)
        write_record(repo, pid=os.getpid(), hostname=socket.gethostname(), token="someone-else")

        with pytest.raises(LockReleaseError):
            locks.release(handle)
        assert handle.lock_path.exists()

    def test_release_of_vanished_lock_succeeds(self, locks, repo):
        handle = locks.acquire(repo)
        handle.lock_path.unlink()
        locks.release(handle)
        assert handle.released


class TestMutualExclusion:
    def test_concurrent_acquire_one_winner(self, repo):
        contenders = 8
        barrier = threading.Barrier(contenders)
        winners, losers = [], []

        def contend():
            manager = RepositoryLockManager()
            barrier.wait()
            try:
                winners.append(manager.acquire(repo))
            except LockBusy:
                losers.append(True)

        threads = [threading.Thread(target=contend) for _ in range(contenders)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(winners) == 1
        assert len(losers) == contenders - 1

    def test_other_process_holding_lock(self, locks, repo):
        env = dict(os.environ, PYTHONPATH=str(SRC_DIR))
        proc = subprocess.Popen(
            [sys.executable, "-c", HOLDER_SCRIPT, str(repo)],
            stdout=subprocess.PIPE,
            env=env,
        )
        try:
            assert proc.stdout.readline().strip() == b"locked"
            with pytest.raises(LockBusy) as excinfo:
                locks.acquire(repo)
            assert excinfo.value.holder["pid"] == proc.pid
        finally:
            proc.kill()
            proc.wait()

        # The holder died without releasing; its lock is now stale.
        handle = locks.acquire(repo)
        assert json.loads(handle.lock_path.read_text())["pid"] == os.getpid()


class TestStaleness:
    def test_dead_holder_is_reclaimed(self, locks, repo):
        write_record(repo, pid=dead_pid(), hostname=socket.gethostname(), token="old")

        handle = locks.acquire(repo)
        assert json.loads(handle.lock_path.read_text())["token"] == handle.token

    def test_live_holder_is_never_reclaimed(self, locks, repo):
        write_record(repo, pid=os.getpid(), hostname=socket.gethostname(), token="other")

        with pytest.raises(LockBusy):
            locks.acquire(repo)

    def test_holder_on_other_host_is_never_reclaimed(self, locks, repo):
        write_record(repo, pid=dead_pid(), hostname="some-other-host", token="other")

        with pytest.raises(LockBusy):
            locks.acquire(repo)

    def test_corrupt_lock_reclaimed_only_when_old(self, repo):
        lock_path = lock_path_for(repo)
        lock_path.parent.mkdir(parents=True)
        lock_path.write_text("not json")

        with pytest.raises(LockBusy):
            RepositoryLockManager(stale_after=3600).acquire(repo)

        old = time.time() - 7200
        os.utime(lock_path, (old, old))
        handle = RepositoryLockManager(stale_after=3600).acquire(repo)
        assert handle.lock_path.exists()

    def test_is_locked_ignores_stale(self, locks, repo):
        write_record(repo, pid=dead_pid(), hostname=socket.gethostname(), token="old")
        assert not locks.is_locked(repo)


def test_pid_alive():
    assert pid_alive(os.getpid())
    assert not pid_alive(dead_pid())
    assert not pid_alive(0)
