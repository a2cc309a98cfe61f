from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Sequence

from .config import ConfigurationError, CoreConfig, ExitCodesConfig, RemoteTarget, RepositoryRef
from .job_engine import PipelineController
from .locking import RepositoryLockManager
from .models import JobResult, Verdict
from .notifications import SlackNotifier, build_notifier
from .report import summarize, write_report
from .stages import StageExecutor

LOG = logging.getLogger(__name__)

ExecutorFactory = Callable[[], StageExecutor]


class BackupOrchestrator:
    """Runs backup jobs for configured repositories through the pipeline controller."""

    def __init__(
        self,
        config: CoreConfig,
        executor_factory: ExecutorFactory = StageExecutor,
        locks: Optional[RepositoryLockManager] = None,
        notifier: Optional[SlackNotifier] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self._config = config
        self._executor_factory = executor_factory
        self._locks = locks or RepositoryLockManager(stale_after=config.lock.stale_after)
        self._notifier = notifier if notifier is not None else build_notifier(config.notifications)
        self.cancel_event = cancel_event or threading.Event()

    def run_job(self, repository_name: str, target_names: Optional[Sequence[str]] = None) -> JobResult:
        repo = self._config.repository(repository_name)
        targets = self._select_targets(repo, target_names)
        controller = PipelineController(
            config=self._config,
            repository=repo,
            targets=targets,
            locks=self._locks,
            executor=self._executor_factory(),
            cancel_event=self.cancel_event,
        )
        result = controller.run()
        self._publish(result)
        return result

    def run(
        self,
        repository_names: Optional[Sequence[str]] = None,
        target_names: Optional[Sequence[str]] = None,
    ) -> List[JobResult]:
        repos = list(self._select_repositories(repository_names))
        for repo in repos:
            # Fail before any job starts if a requested remote is unknown.
            self._select_targets(repo, target_names)

        workers = min(self._config.max_parallel_jobs, len(repos))
        if workers <= 1:
            return [self.run_job(repo.name, target_names) for repo in repos]

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="borgman-job") as pool:
            futures = [pool.submit(self.run_job, repo.name, target_names) for repo in repos]
            return [future.result() for future in futures]

    def _select_repositories(self, names: Optional[Sequence[str]]) -> Iterable[RepositoryRef]:
        if names:
            name_set = set(names)
            missing = name_set - {repo.name for repo in self._config.repositories}
            if missing:
                missing_str = ", ".join(sorted(missing))
                raise ConfigurationError(f"Unknown repository(s) requested: {missing_str}")
            for repo in self._config.repositories:
                if repo.name in name_set:
                    yield repo
        else:
            yield from self._config.repositories

    def _select_targets(self, repo: RepositoryRef, names: Optional[Sequence[str]]) -> List[RemoteTarget]:
        remote_map = self._config.remote_map
        requested = list(names) if names else list(repo.remotes)
        missing = [name for name in requested if name not in remote_map]
        if missing:
            raise ConfigurationError(f"Unknown remote(s) requested for '{repo.name}': {', '.join(missing)}")
        return [remote_map[name] for name in requested]

    def _publish(self, result: JobResult) -> None:
        report = summarize(result)
        if self._config.reports.directory:
            try:
                write_report(report, self._config.reports.directory)
            except OSError as exc:
                LOG.error("Could not write report for %s: %s", result.repository, exc)
        if self._notifier and result.verdict is not Verdict.COMPLETED:
            self._notifier.notify(report)


def exit_code_for(results: Sequence[JobResult], codes: ExitCodesConfig) -> int:
    verdicts = {result.verdict for result in results}
    if Verdict.ABORTED in verdicts:
        return codes.aborted
    if Verdict.PARTIALLY_COMPLETED in verdicts:
        return codes.partial
    return 0

