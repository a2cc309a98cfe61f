from __future__ import annotations

import pytest

from borgman.config import RemoteTarget, RepositoryRef, RetentionPolicy, SecretRef, ToolConfig
from borgman.models import StageKind
from borgman.tools import ToolError, archiver_env, borg_create, borg_prune, rclone_sync

BORG = ToolConfig(binary="borg")
RCLONE = ToolConfig(binary="rclone", extra_args=["--retries", "1"])


@pytest.fixture
def repo(tmp_path):
    return RepositoryRef(
        name="home",
        path=tmp_path / "home",
        sources=["/home", "/etc"],
        excludes=["*.cache", "/home/*/tmp"],
    )


def test_borg_create(repo):
    spec = borg_create(BORG, repo, env={})

    assert spec.kind is StageKind.CREATE_ARCHIVE
    assert spec.argv == (
        "borg",
        "create",
        "--exclude",
        "*.cache",
        "--exclude",
        "/home/*/tmp",
        f"{repo.path}::{{hostname}}-{{now}}",
        "/home",
        "/etc",
    )


def test_borg_prune_skips_zero_counts(repo):
    spec = borg_prune(BORG, repo, RetentionPolicy(keep_daily=7, keep_weekly=4, keep_monthly=0), env={})

    assert spec.kind is StageKind.PRUNE_ARCHIVES
    assert spec.argv == ("borg", "prune", "--keep-daily", "7", "--keep-weekly", "4", str(repo.path))


def test_rclone_sync(repo):
    remote = RemoteTarget(name="offsite-a", address="b2:bucket/home", extra_args=["--fast-list"])
    spec = rclone_sync(RCLONE, repo, remote)

    assert spec.kind is StageKind.SYNC_REMOTE
    assert spec.target == "offsite-a"
    assert spec.argv == ("rclone", "sync", "--retries", "1", "--fast-list", str(repo.path), "b2:bucket/home")


def test_archiver_env_sets_passphrase(tmp_path, monkeypatch):
    monkeypatch.setenv("BORGMAN_TEST_PASS", "hunter2")
    repo = RepositoryRef(name="home", path=tmp_path, sources=["/"], passphrase=SecretRef(env="BORGMAN_TEST_PASS"))

    env = archiver_env(repo, base={"PATH": "/usr/bin"})
    assert env["BORG_PASSPHRASE"] == "hunter2"
    assert env["PATH"] == "/usr/bin"


def test_archiver_env_missing_passphrase(tmp_path, monkeypatch):
    monkeypatch.delenv("BORGMAN_TEST_PASS", raising=False)
    repo = RepositoryRef(name="home", path=tmp_path, sources=["/"], passphrase=SecretRef(env="BORGMAN_TEST_PASS"))

    with pytest.raises(ToolError):
        archiver_env(repo)


def test_passphrase_not_in_repr(tmp_path, monkeypatch):
    monkeypatch.setenv("BORGMAN_TEST_PASS", "hunter2")
    repo = RepositoryRef(name="home", path=tmp_path, sources=["/"], passphrase=SecretRef(env="BORGMAN_TEST_PASS"))

    assert "hunter2" not in repr(borg_create(BORG, repo))


def test_create_args_never_reach_prune(repo):
    tool = ToolConfig(
        binary="borg",
        extra_args=["--lock-wait", "600"],
        command_args={"create": ["--compression", "lz4", "--one-file-system"], "prune": ["--list"]},
    )

    create = borg_create(tool, repo, env={})
    prune = borg_prune(tool, repo, RetentionPolicy(keep_daily=7), env={})

    assert create.argv[6:11] == ("--lock-wait", "600", "--compression", "lz4", "--one-file-system")
    assert prune.argv == ("borg", "prune", "--keep-daily", "7", "--lock-wait", "600", "--list", str(repo.path))
    assert "--compression" not in prune.argv


def test_archiver_env_requests_modern_exit_codes(repo):
    assert archiver_env(repo, base={})["BORG_EXIT_CODES"] == "modern"
    assert archiver_env(repo, base={"BORG_EXIT_CODES": "legacy"})["BORG_EXIT_CODES"] == "legacy"


def test_archiver_env_unreadable_passphrase_file(tmp_path):
    passdir = tmp_path / "passdir"
    passdir.mkdir()
    repo = RepositoryRef(name="home", path=tmp_path, sources=["/"], passphrase=SecretRef(file=passdir))

    with pytest.raises(ToolError, match="could not be read"):
        archiver_env(repo, base={})
