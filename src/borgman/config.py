from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PruneMode = Literal["blocking", "best_effort"]


class ConfigurationError(Exception):
    """Raised when the borgman configuration is invalid."""


class SecretRef(BaseModel):
    """Reference to a secret stored in an environment variable or file."""

    env: Optional[str] = Field(default=None, description="Environment variable name.")
    file: Optional[Path] = Field(default=None, description="Path to a file containing the secret.")

    def resolve(self) -> Optional[str]:
        if self.env:
            value = os.getenv(self.env)
            if value:
                return value
        if self.file:
            file_path = Path(self.file).expanduser()
            if file_path.exists():
                return file_path.read_text(encoding="utf-8").strip()
        return None


# --- External tools ----------------------------------------------------------


class ToolConfig(BaseModel):
    binary: str
    extra_args: List[str] = Field(default_factory=list, description="Arguments passed to every subcommand.")
    command_args: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Arguments passed only to the named subcommand, e.g. create or prune.",
    )
    success_codes: List[int] = Field(default_factory=lambda: [0])
    transient_exit_codes: List[int] = Field(default_factory=list)

    @field_validator("success_codes")
    @classmethod
    def _require_success_code(cls, value: List[int]) -> List[int]:
        if 0 not in value:
            raise ValueError("success_codes must include 0.")
        return value

    @model_validator(mode="after")
    def _disjoint_codes(self) -> "ToolConfig":
        overlap = set(self.success_codes) & set(self.transient_exit_codes)
        if overlap:
            raise ValueError(f"Exit codes {sorted(overlap)} cannot be both success and transient.")
        return self

    def args_for(self, command: str) -> List[str]:
        return [*self.extra_args, *self.command_args.get(command, [])]


# Defaults follow the tools' documented exit codes: borg >= 1.4 reports
# LockTimeout as 73 when BORG_EXIT_CODES=modern, rclone reports "temporary
# error" as 5.
def _default_archiver() -> ToolConfig:
    return ToolConfig(binary="borg", transient_exit_codes=[73])


def _default_transporter() -> ToolConfig:
    return ToolConfig(binary="rclone", transient_exit_codes=[5])


# --- Repositories and remotes ------------------------------------------------


class RetentionPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    keep_hourly: int = Field(default=0, ge=0)
    keep_daily: int = Field(default=1, ge=0)
    keep_weekly: int = Field(default=1, ge=0)
    keep_monthly: int = Field(default=1, ge=0)

    @model_validator(mode="after")
    def _keep_something(self) -> "RetentionPolicy":
        if not any((self.keep_hourly, self.keep_daily, self.keep_weekly, self.keep_monthly)):
            raise ValueError("Retention policy must keep at least one archive.")
        return self


class RepositoryRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    path: Path
    passphrase: Optional[SecretRef] = None
    sources: List[str]
    excludes: List[str] = Field(default_factory=list)
    remotes: List[str] = Field(default_factory=list, description="Default remote names, in sync order.")
    retention: Optional[RetentionPolicy] = None
    archive_name: str = "{hostname}-{now}"
    prune_mode: Optional[PruneMode] = None

    @field_validator("path")
    @classmethod
    def _expand_path(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("sources")
    @classmethod
    def _require_sources(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("Repository must define at least one source path.")
        return value


class RemoteTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    address: str = Field(description="rclone destination, e.g. 'b2:bucket/path'.")
    extra_args: List[str] = Field(default_factory=list)


# --- Execution policy --------------------------------------------------------


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=5.0, ge=0)
    max_delay: float = Field(default=300.0, ge=0)
    jitter: float = Field(default=1.0, ge=0)

    @model_validator(mode="after")
    def _ceiling_above_base(self) -> "RetryConfig":
        if self.max_delay < self.base_delay:
            raise ValueError("retry.max_delay must be >= retry.base_delay.")
        return self


class StageConfig(BaseModel):
    timeout: Optional[float] = Field(default=None, gt=0, description="Seconds; unlimited when omitted.")
    retryable: bool = True


class StagesConfig(BaseModel):
    create: StageConfig = StageConfig(timeout=6 * 3600)
    prune: StageConfig = StageConfig(timeout=3600)
    sync: StageConfig = StageConfig(timeout=6 * 3600)


class ExitCodesConfig(BaseModel):
    partial: int = 3
    aborted: int = 4

    @model_validator(mode="after")
    def _distinct_codes(self) -> "ExitCodesConfig":
        if 0 in (self.partial, self.aborted):
            raise ValueError("Exit codes for partial and aborted jobs must be nonzero.")
        if self.partial == self.aborted:
            raise ValueError("Exit codes for partial and aborted jobs must differ.")
        return self


class LockConfig(BaseModel):
    stale_after: float = Field(default=3600.0, gt=0, description="Age before an unreadable lock file is reclaimed.")


class ReportsConfig(BaseModel):
    directory: Optional[Path] = None

    @field_validator("directory")
    @classmethod
    def _expand_directory(cls, value: Optional[Path]) -> Optional[Path]:
        return value.expanduser() if value else value


class NotificationsConfig(BaseModel):
    slack_webhook_env: Optional[str] = None

    def resolve_slack_webhook(self) -> Optional[str]:
        if not self.slack_webhook_env:
            return None
        return os.getenv(self.slack_webhook_env)


# --- Root --------------------------------------------------------------------


class CoreConfig(BaseModel):
    repositories: List[RepositoryRef]
    remotes: List[RemoteTarget] = Field(default_factory=list)
    archiver: ToolConfig = Field(default_factory=_default_archiver)
    transporter: ToolConfig = Field(default_factory=_default_transporter)
    retention: RetentionPolicy = RetentionPolicy()
    retry: RetryConfig = RetryConfig()
    stages: StagesConfig = StagesConfig()
    prune_mode: PruneMode = "blocking"
    exit_codes: ExitCodesConfig = ExitCodesConfig()
    max_parallel_jobs: int = Field(default=1, ge=1)
    lock: LockConfig = LockConfig()
    reports: ReportsConfig = ReportsConfig()
    notifications: NotificationsConfig = NotificationsConfig()

    @field_validator("repositories")
    @classmethod
    def _require_repositories(cls, value: List[RepositoryRef]) -> List[RepositoryRef]:
        if not value:
            raise ValueError("At least one repository must be configured.")
        names = [repo.name for repo in value]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate repository names: {', '.join(duplicates)}")
        return value

    @field_validator("remotes")
    @classmethod
    def _unique_remotes(cls, value: List[RemoteTarget]) -> List[RemoteTarget]:
        names = [remote.name for remote in value]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate remote names: {', '.join(duplicates)}")
        return value

    @model_validator(mode="after")
    def _ensure_repository_remotes(self) -> "CoreConfig":
        known = {remote.name for remote in self.remotes}
        for repo in self.repositories:
            for remote_name in repo.remotes:
                if remote_name not in known:
                    raise ValueError(f"Repository '{repo.name}' references unknown remote '{remote_name}'.")
        return self

    @property
    def remote_map(self) -> Dict[str, RemoteTarget]:
        return {remote.name: remote for remote in self.remotes}

    def repository(self, name: str) -> RepositoryRef:
        for repo in self.repositories:
            if repo.name == name:
                return repo
        raise ConfigurationError(f"Unknown repository '{name}'.")

    def effective_retention(self, repo: RepositoryRef) -> RetentionPolicy:
        return repo.retention or self.retention

    def effective_prune_mode(self, repo: RepositoryRef) -> PruneMode:
        return repo.prune_mode or self.prune_mode


def load_config(path: Path) -> CoreConfig:
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    try:
        return CoreConfig.model_validate(raw)
    except Exception as exc:  # noqa: BLE001
        raise ConfigurationError(str(exc)) from exc
