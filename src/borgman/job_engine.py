from __future__ import annotations

import enum
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence

from .config import CoreConfig, RemoteTarget, RepositoryRef, StageConfig, ToolConfig
from .locking import LockBusy, LockHandle, LockReleaseError, RepositoryLockManager
from .models import Classification, JobResult, StageKind, StageRun, Verdict
from .stages import ExitCodePolicy, StageExecutor, StagePolicy, StageSpec
from .tools import ToolError, archiver_env, borg_create, borg_prune, rclone_sync

LOG = logging.getLogger(__name__)


class PipelineState(str, enum.Enum):
    IDLE = "idle"
    LOCKING = "locking"
    ARCHIVING = "archiving"
    PRUNING = "pruning"
    SYNCING = "syncing"
    RELEASING = "releasing"
    DONE = "done"
    ABORTED = "aborted"


_ACTIVE = frozenset({PipelineState.LOCKING, PipelineState.ARCHIVING, PipelineState.PRUNING, PipelineState.SYNCING})

TRANSITIONS: Dict[PipelineState, FrozenSet[PipelineState]] = {
    PipelineState.IDLE: frozenset({PipelineState.LOCKING}),
    PipelineState.LOCKING: frozenset({PipelineState.ARCHIVING, PipelineState.RELEASING, PipelineState.ABORTED}),
    PipelineState.ARCHIVING: frozenset({PipelineState.PRUNING, PipelineState.RELEASING, PipelineState.ABORTED}),
    PipelineState.PRUNING: frozenset({PipelineState.SYNCING, PipelineState.RELEASING, PipelineState.ABORTED}),
    PipelineState.SYNCING: frozenset({PipelineState.SYNCING, PipelineState.RELEASING, PipelineState.ABORTED}),
    PipelineState.RELEASING: frozenset({PipelineState.DONE}),
    PipelineState.DONE: frozenset(),
    PipelineState.ABORTED: frozenset(),
}


def compute_verdict(stages: Sequence[StageRun], lock_acquired: bool, cancelled: bool = False) -> Verdict:
    if not lock_acquired:
        return Verdict.ABORTED
    create = next((run for run in stages if run.kind is StageKind.CREATE_ARCHIVE), None)
    if create is None or not create.succeeded:
        return Verdict.ABORTED
    if cancelled or any(not run.succeeded for run in stages):
        return Verdict.PARTIALLY_COMPLETED
    return Verdict.COMPLETED


def build_policy(config: CoreConfig, tool: ToolConfig, stage: StageConfig) -> StagePolicy:
    return StagePolicy(
        exit_codes=ExitCodePolicy(
            success_codes=frozenset(tool.success_codes),
            transient_codes=frozenset(tool.transient_exit_codes),
        ),
        max_attempts=config.retry.max_attempts,
        base_delay=config.retry.base_delay,
        max_delay=config.retry.max_delay,
        jitter=config.retry.jitter,
        timeout=stage.timeout,
        retryable=stage.retryable,
    )


class PipelineController:
    """Drives one job through lock, create, prune and per-remote sync.

    A controller is single use. Failures inside the pipeline become part of
    the returned result, and the lock is released on every path that
    acquired it.
    """

    def __init__(
        self,
        config: CoreConfig,
        repository: RepositoryRef,
        targets: Sequence[RemoteTarget],
        locks: RepositoryLockManager,
        executor: StageExecutor,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._config = config
        self._repo = repository
        self._targets = list(targets)
        self._locks = locks
        self._executor = executor
        self._cancel = cancel_event or threading.Event()
        self._clock = clock

        self.state = PipelineState.IDLE
        self.history: List[PipelineState] = [PipelineState.IDLE]
        self._stages: List[StageRun] = []
        self._diagnostics: List[str] = []
        self._lock_acquired = False
        self._cancelled = False

    def run(self) -> JobResult:
        if self.state is not PipelineState.IDLE:
            raise RuntimeError("PipelineController instances are single use")

        started_at = self._clock()
        LOG.info("Starting job for repository %s", self._repo.name)
        self._transition(PipelineState.LOCKING)

        if self._cancel.is_set():
            self._abort("Cancelled before the repository lock was requested")
            return self._result(started_at)

        try:
            handle = self._locks.acquire(self._repo.path)
        except LockBusy as exc:
            LOG.error("%s", exc)
            self._diagnostics.append(str(exc))
            self._transition(PipelineState.ABORTED)
            return self._result(started_at)
        except OSError as exc:
            LOG.error("Cannot lock repository %s: %s", self._repo.name, exc)
            self._diagnostics.append(f"Cannot lock repository: {exc}")
            self._transition(PipelineState.ABORTED)
            return self._result(started_at)

        self._lock_acquired = True
        try:
            self._run_stages()
        finally:
            if self.state is not PipelineState.ABORTED:
                self._transition(PipelineState.RELEASING)
            self._release(handle)
            if self.state is PipelineState.RELEASING:
                self._transition(PipelineState.DONE)

        return self._result(started_at)

    # Stage sequencing ------------------------------------------------------
    def _run_stages(self) -> None:
        if self._cancelled_at_boundary():
            return
        self._transition(PipelineState.ARCHIVING)
        create = self._run_stage(StageKind.CREATE_ARCHIVE, self._create_spec, self._config.stages.create)
        if not create.succeeded:
            self._diagnostics.append("Archive creation failed; prune and sync skipped")
            return

        if self._cancelled_at_boundary():
            return
        self._transition(PipelineState.PRUNING)
        prune = self._run_stage(StageKind.PRUNE_ARCHIVES, self._prune_spec, self._config.stages.prune)
        if not prune.succeeded:
            if self._config.effective_prune_mode(self._repo) == "blocking":
                self._diagnostics.append("Prune failed; remote sync skipped")
                return
            LOG.warning("Prune failed for %s; continuing with sync (best effort)", self._repo.name)

        for target in self._targets:
            if self._cancelled_at_boundary():
                return
            self._transition(PipelineState.SYNCING)
            self._run_stage(
                StageKind.SYNC_REMOTE,
                lambda target=target: self._sync_spec(target),
                self._config.stages.sync,
                target=target.name,
            )

    def _run_stage(
        self,
        kind: StageKind,
        build: Callable[[], StageSpec],
        stage_cfg: StageConfig,
        target: Optional[str] = None,
    ) -> StageRun:
        tool = self._config.transporter if kind is StageKind.SYNC_REMOTE else self._config.archiver
        try:
            spec = build()
        except ToolError as exc:
            LOG.error("Cannot build %s for %s: %s", kind.value, self._repo.name, exc)
            self._diagnostics.append(str(exc))
            run = StageRun(kind=kind, attempts=(), classification=Classification.FATAL_FAILURE, target=target)
        else:
            try:
                run = self._executor.run(spec, build_policy(self._config, tool, stage_cfg))
            except Exception as exc:  # noqa: BLE001
                LOG.exception("%s raised", spec.label)
                self._diagnostics.append(f"{spec.label} raised: {exc}")
                run = StageRun(kind=kind, attempts=(), classification=Classification.FATAL_FAILURE, target=target)
        self._stages.append(run)
        return run

    def _create_spec(self) -> StageSpec:
        return borg_create(self._config.archiver, self._repo, env=archiver_env(self._repo))

    def _prune_spec(self) -> StageSpec:
        retention = self._config.effective_retention(self._repo)
        return borg_prune(self._config.archiver, self._repo, retention, env=archiver_env(self._repo))

    def _sync_spec(self, target: RemoteTarget) -> StageSpec:
        return rclone_sync(self._config.transporter, self._repo, target)

    # State handling --------------------------------------------------------
    def _transition(self, new_state: PipelineState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal pipeline transition {self.state.value} -> {new_state.value}")
        LOG.debug("Pipeline %s: %s -> %s", self._repo.name, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    def _cancelled_at_boundary(self) -> bool:
        if not self._cancel.is_set():
            return False
        self._abort("Cancelled at stage boundary; remaining stages skipped")
        return True

    def _abort(self, reason: str) -> None:
        LOG.warning("Job for %s: %s", self._repo.name, reason)
        self._cancelled = True
        self._diagnostics.append(reason)
        if self.state in _ACTIVE:
            self._transition(PipelineState.ABORTED)

    def _release(self, handle: LockHandle) -> None:
        try:
            self._locks.release(handle)
        except LockReleaseError as exc:
            LOG.error("Lock release failed for %s: %s", self._repo.name, exc)
            self._diagnostics.append(f"Lock release failed: {exc}")

    def _result(self, started_at: datetime) -> JobResult:
        verdict = compute_verdict(self._stages, self._lock_acquired, self._cancelled)
        LOG.info("Job for repository %s finished: %s", self._repo.name, verdict.value)
        return JobResult(
            repository=self._repo.name,
            repository_path=str(self._repo.path),
            verdict=verdict,
            started_at=started_at,
            completed_at=self._clock(),
            stages=tuple(self._stages),
            lock_acquired=self._lock_acquired,
            cancelled=self._cancelled,
            diagnostics=tuple(self._diagnostics),
        )
