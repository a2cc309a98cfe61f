from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from .models import Classification, JobResult, StageKind, StageOutcome, StageRun

LOG = logging.getLogger(__name__)

OUTPUT_PREVIEW_CHARS = 2000


@dataclass(frozen=True)
class JobReport:
    repository: str
    verdict: str
    headline: str
    data: Dict[str, Any] = field(default_factory=dict)
    details: List[str] = field(default_factory=list)
    schema_version: str = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        return {"schema_version": self.schema_version, **self.data}

    def lines(self) -> List[str]:
        return [self.headline, *self.details]

    def text(self) -> str:
        return "\n".join(self.lines())


def summarize(result: JobResult) -> JobReport:
    """Build a report from a job result without touching anything else."""
    syncs = result.sync_runs()
    synced = sum(1 for run in syncs if run.succeeded)
    headline = f"[{result.verdict.value}] {result.repository}: {_stage_summary(result)}"
    if syncs:
        headline += f"; {synced} of {len(syncs)} remotes synced"

    details: List[str] = []
    for run in result.stages:
        details.append(f"  {_stage_label(run)}: {run.classification.value} after {len(run.attempts)} attempt(s)")
        for outcome in run.attempts:
            details.append(f"    attempt {outcome.attempt}: {_status(outcome)} in {outcome.duration:.2f}s ({outcome.classification.value})")
    for diagnostic in result.diagnostics:
        details.append(f"  note: {diagnostic}")

    data = {
        "repository": result.repository,
        "repository_path": result.repository_path,
        "verdict": result.verdict.value,
        "started_at": result.started_at.isoformat(),
        "completed_at": result.completed_at.isoformat(),
        "duration": (result.completed_at - result.started_at).total_seconds(),
        "lock_acquired": result.lock_acquired,
        "cancelled": result.cancelled,
        "remotes_synced": synced,
        "remotes_attempted": len(syncs),
        "stages": [_stage_dict(run) for run in result.stages],
        "diagnostics": list(result.diagnostics),
    }
    return JobReport(
        repository=result.repository,
        verdict=result.verdict.value,
        headline=headline,
        data=data,
        details=details,
    )


def write_report(report: JobReport, directory: Path) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    started = report.data.get("started_at", "").replace(":", "").replace("+0000", "Z")
    path = directory / f"{report.repository}-{started}.json"
    with path.open("w", encoding="utf-8") as fh:
        json.dump(report.to_dict(), fh, indent=2)
    LOG.info("Job report written to %s", path)
    return path


def _stage_summary(result: JobResult) -> str:
    if not result.lock_acquired:
        return "no stages attempted"
    create = result.stage(StageKind.CREATE_ARCHIVE)
    if create is None:
        return "no archive created"
    if not create.succeeded:
        return "archive creation failed"
    prune = result.stage(StageKind.PRUNE_ARCHIVES)
    if prune is None:
        return "archive created, prune skipped"
    return "archive created, prune " + ("ok" if prune.succeeded else "failed")


def _stage_label(run: StageRun) -> str:
    if run.target:
        return f"{run.kind.value} -> {run.target}"
    return run.kind.value


def _status(outcome: StageOutcome) -> str:
    if outcome.timed_out:
        return "timed out"
    return f"exit {outcome.exit_status}"


def _stage_dict(run: StageRun) -> Dict[str, Any]:
    return {
        "kind": run.kind.value,
        "target": run.target,
        "classification": run.classification.value,
        "retries_exhausted": run.retries_exhausted and run.classification is Classification.FATAL_FAILURE,
        "duration": run.duration,
        "attempts": [_attempt_dict(outcome) for outcome in run.attempts],
    }


def _attempt_dict(outcome: StageOutcome) -> Dict[str, Any]:
    return {
        "attempt": outcome.attempt,
        "exit_status": outcome.exit_status,
        "timed_out": outcome.timed_out,
        "duration": outcome.duration,
        "classification": outcome.classification.value,
        "output": outcome.output.decode("utf-8", "replace")[-OUTPUT_PREVIEW_CHARS:],
    }
