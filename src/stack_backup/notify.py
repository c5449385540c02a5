from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

import requests

from .config import NotificationsConfig

LOG = logging.getLogger(__name__)


class Summary(Protocol):
    status: str

    def summary(self) -> str:
        ...


class NotificationSink(Protocol):
    name: str

    def send(self, report: Summary) -> None:
        ...


@dataclass
class NtfySink:
    url: str
    timeout: int = 10
    name: str = "ntfy"

    def send(self, report: Summary) -> None:
        failed = report.status != "success"
        headers = {
            "Title": "Backup Failed" if failed else "Backup Completed",
            "Priority": "urgent" if failed else "default",
            "Tags": "x" if failed else "white_check_mark",
        }
        response = requests.post(
            self.url,
            data=report.summary().encode("utf-8"),
            headers=headers,
            timeout=self.timeout,
        )
        response.raise_for_status()


@dataclass
class SlackSink:
    webhook: str
    timeout: int = 10
    name: str = "slack"

    def send(self, report: Summary) -> None:
        response = requests.post(self.webhook, json={"text": report.summary()}, timeout=self.timeout)
        response.raise_for_status()


@dataclass
class DiscordSink:
    webhook: str
    timeout: int = 10
    name: str = "discord"

    def send(self, report: Summary) -> None:
        response = requests.post(self.webhook, json={"content": report.summary()}, timeout=self.timeout)
        response.raise_for_status()


class Notifier:
    """Fan a run summary out to every sink; sink failures never propagate."""

    def __init__(self, sinks: Optional[List[NotificationSink]] = None) -> None:
        self._sinks = list(sinks or [])

    @property
    def sinks(self) -> List[NotificationSink]:
        return list(self._sinks)

    def notify(self, report: Summary) -> None:
        for sink in self._sinks:
            try:
                sink.send(report)
            except Exception as exc:  # noqa: BLE001
                LOG.warning("Notification via %s failed: %s", sink.name, exc)
            else:
                LOG.debug("Notification sent via %s", sink.name)


def build_notifier(config: NotificationsConfig) -> Notifier:
    sinks: List[NotificationSink] = []
    ntfy_url = config.resolve_ntfy_url()
    if ntfy_url:
        sinks.append(NtfySink(url=ntfy_url, timeout=config.timeout))
    slack_webhook = config.resolve_slack_webhook()
    if slack_webhook:
        sinks.append(SlackSink(webhook=slack_webhook, timeout=config.timeout))
    discord_webhook = config.resolve_discord_webhook()
    if discord_webhook:
        sinks.append(DiscordSink(webhook=discord_webhook, timeout=config.timeout))
    return Notifier(sinks)
