from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .config import ConfigurationError, CoreConfig, load_config
from .logger import configure_logging
from .orchestrator import BackupOrchestrator, exit_code_for
from .report import summarize

DEFAULT_CONFIG_PATH = "/etc/borgman/borgman.yaml"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="borgman",
        description="Create, prune and replicate borg repositories.",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("BORGMAN_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to configuration YAML file.",
    )
    parser.add_argument(
        "--repository",
        "-r",
        action="append",
        help="Repository to back up (can be specified multiple times). Runs all repositories when omitted.",
    )
    parser.add_argument(
        "--remote",
        action="append",
        help="Remote to sync to (can be specified multiple times). Uses each repository's remotes when omitted.",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List repositories and remotes defined in the configuration and exit.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print job reports as JSON instead of text.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Log level (default INFO).",
    )
    return parser.parse_args(argv)


def load_configuration(path: Path) -> CoreConfig:
    try:
        return load_config(path)
    except ConfigurationError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc


def list_entries(config: CoreConfig) -> None:
    for repo in config.repositories:
        remotes = ", ".join(repo.remotes) or "-"
        print(f"{repo.name}\t{repo.path}\tremotes: {remotes}")
    for remote in config.remotes:
        print(f"remote {remote.name}\t{remote.address}")


def run_jobs(
    config: CoreConfig,
    repository_names: Optional[List[str]],
    remote_names: Optional[List[str]],
    as_json: bool = False,
) -> int:
    orchestrator = BackupOrchestrator(config=config)
    previous = _install_signal_handlers(orchestrator)
    try:
        results = orchestrator.run(repository_names, remote_names)
    except ConfigurationError as exc:
        raise SystemExit(f"Configuration error: {exc}") from exc
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    for result in results:
        report = summarize(result)
        if as_json:
            print(json.dumps(report.to_dict(), indent=2))
        else:
            print(report.text())
        if result.success:
            logging.info(
                "Job %s completed in %.2fs",
                result.repository,
                (result.completed_at - result.started_at).total_seconds(),
            )
        else:
            logging.error("Job %s ended %s", result.repository, result.verdict.value)

    return exit_code_for(results, config.exit_codes)


def _install_signal_handlers(orchestrator: BackupOrchestrator) -> Dict[int, Any]:
    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        logging.warning("Received signal %s; stopping at the next stage boundary", signum)
        orchestrator.cancel_event.set()

    previous = {}
    for signum in (signal.SIGTERM, signal.SIGINT):
        previous[signum] = signal.signal(signum, _handle_signal)
    return previous


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    config = load_configuration(Path(args.config).expanduser())

    if args.list:
        list_entries(config)
        return 0

    return run_jobs(config, args.repository, args.remote, as_json=args.json)


if __name__ == "__main__":
    sys.exit(main())
