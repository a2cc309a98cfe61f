from __future__ import annotations

import logging
from typing import Optional

import requests

from .config import NotificationsConfig
from .report import JobReport

LOG = logging.getLogger(__name__)


class SlackNotifier:
    """Posts job summaries to a Slack incoming webhook.

    Jobs may finish on different worker threads, so every notification is
    sent with its own request rather than through a shared session.
    """

    def __init__(self, webhook_url: str, timeout: float = 10.0) -> None:
        self._webhook_url = webhook_url
        self._timeout = timeout

    def notify(self, report: JobReport) -> bool:
        try:
            response = requests.post(self._webhook_url, json={"text": report.text()}, timeout=self._timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            LOG.error("Slack notification for %s failed: %s", report.repository, exc)
            return False
        return True


def build_notifier(config: NotificationsConfig) -> Optional[SlackNotifier]:
    webhook = config.resolve_slack_webhook()
    if not webhook:
        if config.slack_webhook_env:
            LOG.warning("Slack webhook env %s is not set; notifications disabled", config.slack_webhook_env)
        return None
    return SlackNotifier(webhook)
