"""Value types shared by the stage executor, pipeline controller and reporter."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Tuple


class StageKind(str, enum.Enum):
    CREATE_ARCHIVE = "create_archive"
    PRUNE_ARCHIVES = "prune_archives"
    SYNC_REMOTE = "sync_remote"


class Classification(str, enum.Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    FATAL_FAILURE = "fatal_failure"


class Verdict(str, enum.Enum):
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class StageOutcome:
    """One invocation attempt of an external tool."""

    kind: StageKind
    attempt: int
    exit_status: Optional[int]
    duration: float
    classification: Classification
    target: Optional[str] = None
    timed_out: bool = False
    output: bytes = b""


@dataclass(frozen=True)
class StageRun:
    """All attempts of one stage and the disposition used for sequencing.

    ``classification`` is ``FATAL_FAILURE`` when transient failures exhausted
    the retry budget, even though the last attempt itself was transient.
    """

    kind: StageKind
    attempts: Tuple[StageOutcome, ...]
    classification: Classification
    target: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.classification is Classification.SUCCESS

    @property
    def retries_exhausted(self) -> bool:
        return bool(self.attempts) and self.attempts[-1].classification is Classification.TRANSIENT_FAILURE

    @property
    def duration(self) -> float:
        return sum(attempt.duration for attempt in self.attempts)


@dataclass(frozen=True)
class JobResult:
    repository: str
    repository_path: str
    verdict: Verdict
    started_at: datetime
    completed_at: datetime
    stages: Tuple[StageRun, ...] = ()
    lock_acquired: bool = False
    cancelled: bool = False
    diagnostics: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def outcomes(self) -> Tuple[StageOutcome, ...]:
        return tuple(attempt for stage in self.stages for attempt in stage.attempts)

    @property
    def success(self) -> bool:
        return self.verdict is Verdict.COMPLETED

    def stage(self, kind: StageKind, target: Optional[str] = None) -> Optional[StageRun]:
        for run in self.stages:
            if run.kind is kind and run.target == target:
                return run
        return None

    def sync_runs(self) -> Tuple[StageRun, ...]:
        return tuple(run for run in self.stages if run.kind is StageKind.SYNC_REMOTE)
