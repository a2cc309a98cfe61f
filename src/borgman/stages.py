from __future__ import annotations

import logging
import random
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Protocol, Sequence

from .models import Classification, StageKind, StageOutcome, StageRun

LOG = logging.getLogger(__name__)

OUTPUT_TAIL_BYTES = 8192
COMMAND_NOT_FOUND = 127


@dataclass(frozen=True)
class StageSpec:
    """A fully built external-tool invocation for one pipeline stage."""

    kind: StageKind
    repository: str
    argv: Sequence[str]
    target: Optional[str] = None
    env: Optional[Dict[str, str]] = field(default=None, repr=False)

    @property
    def label(self) -> str:
        if self.target:
            return f"{self.kind.value}[{self.repository} -> {self.target}]"
        return f"{self.kind.value}[{self.repository}]"


@dataclass(frozen=True)
class ExitCodePolicy:
    success_codes: FrozenSet[int] = frozenset({0})
    transient_codes: FrozenSet[int] = frozenset()

    def classify(self, exit_status: int) -> Classification:
        if exit_status in self.success_codes:
            return Classification.SUCCESS
        if exit_status in self.transient_codes:
            return Classification.TRANSIENT_FAILURE
        return Classification.FATAL_FAILURE


@dataclass(frozen=True)
class StagePolicy:
    exit_codes: ExitCodePolicy = ExitCodePolicy()
    max_attempts: int = 3
    base_delay: float = 5.0
    max_delay: float = 300.0
    jitter: float = 1.0
    timeout: Optional[float] = None
    retryable: bool = True


@dataclass(frozen=True)
class Invocation:
    exit_status: Optional[int]
    duration: float
    output: bytes = b""
    timed_out: bool = False


class ProcessRunner(Protocol):
    def invoke(self, spec: StageSpec, timeout: Optional[float]) -> Invocation:
        ...


class SubprocessRunner:
    """Runs the stage command as a child process and waits for it to exit."""

    def invoke(self, spec: StageSpec, timeout: Optional[float]) -> Invocation:
        LOG.debug("Running %s", " ".join(spec.argv))
        started = time.monotonic()
        try:
            completed = subprocess.run(
                list(spec.argv),
                env=spec.env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            return Invocation(
                exit_status=None,
                duration=time.monotonic() - started,
                output=_tail(exc.output or b""),
                timed_out=True,
            )
        except OSError as exc:
            LOG.error("Could not start %s: %s", spec.argv[0], exc)
            return Invocation(
                exit_status=COMMAND_NOT_FOUND,
                duration=time.monotonic() - started,
                output=str(exc).encode("utf-8"),
            )
        return Invocation(
            exit_status=completed.returncode,
            duration=time.monotonic() - started,
            output=_tail(completed.stdout or b""),
        )


def _tail(data: bytes) -> bytes:
    return data[-OUTPUT_TAIL_BYTES:]


def backoff_delay(attempt: int, policy: StagePolicy, rng: Optional[random.Random] = None) -> float:
    """Delay to wait after failed attempt number ``attempt`` (1-based)."""
    delay = min(policy.base_delay * (2 ** (attempt - 1)), policy.max_delay)
    if policy.jitter:
        delay += (rng or random).uniform(0, policy.jitter)
    return delay


class StageExecutor:
    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._runner = runner or SubprocessRunner()
        self._sleep = sleep
        self._rng = rng or random.Random()

    def run(self, spec: StageSpec, policy: StagePolicy) -> StageRun:
        attempts: List[StageOutcome] = []
        max_attempts = policy.max_attempts if policy.retryable else 1

        for attempt in range(1, max_attempts + 1):
            invocation = self._runner.invoke(spec, policy.timeout)
            outcome = StageOutcome(
                kind=spec.kind,
                attempt=attempt,
                exit_status=invocation.exit_status,
                duration=invocation.duration,
                classification=self._classify(invocation, policy),
                target=spec.target,
                timed_out=invocation.timed_out,
                output=invocation.output,
            )
            attempts.append(outcome)
            self._log_attempt(spec, outcome, max_attempts)

            if outcome.classification is not Classification.TRANSIENT_FAILURE:
                return StageRun(spec.kind, tuple(attempts), outcome.classification, spec.target)

            if attempt < max_attempts:
                delay = backoff_delay(attempt, policy, self._rng)
                LOG.warning("Retrying %s in %.1fs", spec.label, delay)
                self._sleep(delay)

        LOG.error("%s failed after %d attempts", spec.label, len(attempts))
        return StageRun(spec.kind, tuple(attempts), Classification.FATAL_FAILURE, spec.target)

    @staticmethod
    def _classify(invocation: Invocation, policy: StagePolicy) -> Classification:
        if invocation.timed_out or invocation.exit_status is None:
            return Classification.TRANSIENT_FAILURE if policy.retryable else Classification.FATAL_FAILURE
        classification = policy.exit_codes.classify(invocation.exit_status)
        if classification is Classification.TRANSIENT_FAILURE and not policy.retryable:
            return Classification.FATAL_FAILURE
        return classification

    @staticmethod
    def _log_attempt(spec: StageSpec, outcome: StageOutcome, max_attempts: int) -> None:
        status = "timeout" if outcome.timed_out else outcome.exit_status
        level = logging.INFO if outcome.classification is Classification.SUCCESS else logging.WARNING
        LOG.log(
            level,
            "%s attempt %d/%d: exit %s in %.2fs (%s)",
            spec.label,
            outcome.attempt,
            max_attempts,
            status,
            outcome.duration,
            outcome.classification.value,
        )
