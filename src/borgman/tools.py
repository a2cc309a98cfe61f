from __future__ import annotations

import os
from typing import Dict, List, Optional

from .config import RemoteTarget, RepositoryRef, RetentionPolicy, ToolConfig
from .models import StageKind
from .stages import StageSpec


class ToolError(Exception):
    """Raised when a tool invocation cannot be built from the configuration."""


def archiver_env(repo: RepositoryRef, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    env = dict(os.environ if base is None else base)
    if repo.passphrase:
        try:
            passphrase = repo.passphrase.resolve()
        except OSError as exc:
            raise ToolError(f"Passphrase for repository '{repo.name}' could not be read: {exc}") from exc
        if passphrase is None:
            raise ToolError(f"Passphrase for repository '{repo.name}' could not be resolved.")
        env["BORG_PASSPHRASE"] = passphrase
    # Never block on an interactive prompt inside an unattended job.
    env.setdefault("BORG_RELOCATED_REPO_ACCESS_IS_OK", "no")
    env.setdefault("BORG_UNKNOWN_UNENCRYPTED_REPO_ACCESS_IS_OK", "no")
    # Distinct codes such as 73 (LockTimeout) instead of the legacy catch-all 2.
    env.setdefault("BORG_EXIT_CODES", "modern")
    return env


def borg_create(tool: ToolConfig, repo: RepositoryRef, env: Optional[Dict[str, str]] = None) -> StageSpec:
    if not repo.sources:
        raise ToolError(f"Repository '{repo.name}' has no source paths to archive.")

    cmd: List[str] = [tool.binary, "create"]
    for pattern in repo.excludes:
        cmd.extend(["--exclude", pattern])
    cmd.extend(tool.args_for("create"))
    cmd.append(f"{repo.path}::{repo.archive_name}")
    cmd.extend(repo.sources)
    return StageSpec(
        kind=StageKind.CREATE_ARCHIVE,
        repository=repo.name,
        argv=tuple(cmd),
        env=env if env is not None else archiver_env(repo),
    )


def borg_prune(
    tool: ToolConfig,
    repo: RepositoryRef,
    retention: RetentionPolicy,
    env: Optional[Dict[str, str]] = None,
) -> StageSpec:
    cmd: List[str] = [tool.binary, "prune"]
    for flag, count in (
        ("--keep-hourly", retention.keep_hourly),
        ("--keep-daily", retention.keep_daily),
        ("--keep-weekly", retention.keep_weekly),
        ("--keep-monthly", retention.keep_monthly),
    ):
        if count:
            cmd.extend([flag, str(count)])
    cmd.extend(tool.args_for("prune"))
    cmd.append(str(repo.path))
    return StageSpec(
        kind=StageKind.PRUNE_ARCHIVES,
        repository=repo.name,
        argv=tuple(cmd),
        env=env if env is not None else archiver_env(repo),
    )


def rclone_sync(tool: ToolConfig, repo: RepositoryRef, remote: RemoteTarget) -> StageSpec:
    cmd: List[str] = [tool.binary, "sync"]
    cmd.extend(tool.args_for("sync"))
    cmd.extend(remote.extra_args)
    cmd.extend([str(repo.path), remote.address])
    return StageSpec(
        kind=StageKind.SYNC_REMOTE,
        repository=repo.name,
        argv=tuple(cmd),
        target=remote.name,
    )
