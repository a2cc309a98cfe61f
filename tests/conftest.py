from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from borgman.config import CoreConfig
from borgman.locking import RepositoryLockManager
from borgman.models import StageKind
from borgman.stages import Invocation, StageExecutor, StageSpec

StageKey = Tuple[StageKind, Optional[str]]


class FakeRunner:
    """Returns scripted exit statuses per stage; the last status repeats."""

    def __init__(self, script: Optional[Dict[StageKey, Sequence[Optional[int]]]] = None, duration: float = 0.01) -> None:
        self.script = {key: list(codes) for key, codes in (script or {}).items()}
        self.duration = duration
        self.calls: List[StageSpec] = []
        self.timeouts: List[Optional[float]] = []
        self.before_invoke = None

    def invoke(self, spec: StageSpec, timeout: Optional[float]) -> Invocation:
        if self.before_invoke:
            self.before_invoke(spec)
        self.calls.append(spec)
        self.timeouts.append(timeout)
        codes = self.script.get((spec.kind, spec.target), [0])
        index = sum(1 for call in self.calls if call.kind is spec.kind and call.target == spec.target) - 1
        status = codes[min(index, len(codes) - 1)]
        if status is None:
            return Invocation(exit_status=None, duration=self.duration, output=b"timeout", timed_out=True)
        return Invocation(exit_status=status, duration=self.duration, output=f"exit {status}".encode())

    def attempts(self, kind: StageKind, target: Optional[str] = None) -> int:
        return sum(1 for call in self.calls if call.kind is kind and call.target == target)


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def config_data(tmp_path, **overrides) -> dict:
    data = {
        "repositories": [
            {
                "name": "home",
                "path": str(tmp_path / "repos" / "home"),
                "sources": ["/home"],
                "remotes": ["offsite-a", "offsite-b"],
            },
            {
                "name": "media",
                "path": str(tmp_path / "repos" / "media"),
                "sources": ["/srv/media"],
                "remotes": ["offsite-a"],
            },
        ],
        "remotes": [
            {"name": "offsite-a", "address": "b2:bucket/a"},
            {"name": "offsite-b", "address": "s3:bucket/b"},
            {"name": "offsite-c", "address": "gcs:bucket/c"},
        ],
        "retry": {"max_attempts": 3, "base_delay": 1, "max_delay": 4, "jitter": 0},
    }
    data.update(overrides)
    return data


@pytest.fixture
def config(tmp_path) -> CoreConfig:
    return CoreConfig.model_validate(config_data(tmp_path))


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def executor(runner, sleeper) -> StageExecutor:
    return StageExecutor(runner=runner, sleep=sleeper)


@pytest.fixture
def locks() -> RepositoryLockManager:
    return RepositoryLockManager()
