"""Operational alerts posted to a Slack incoming webhook.

Alerting never raises: a failed post is logged and reported as False.
"""

from __future__ import annotations

import logging

import requests

log = logging.getLogger(__name__)

ERROR_PREFIX = "\U0001f6a8 Error: "


class SlackAlerter:
    def __init__(
        self,
        webhook_url: str,
        timeout: float = 10,
        session: requests.Session | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._session = session or requests.Session()

    def send(self, message: str, is_error: bool = False) -> bool:
        text = f"{ERROR_PREFIX if is_error else ''}{message}"
        try:
            resp = self._session.post(self.webhook_url, json={"text": text}, timeout=self.timeout)
        except requests.RequestException as exc:
            log.error("Slack notification failed: %s", exc)
            return False
        if not resp.ok:
            log.error("Slack notification failed: %s %s", resp.status_code, resp.text)
            return False
        return True


class NullAlerter:
    """Used when no webhook is configured."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, bool]] = []

    def send(self, message: str, is_error: bool = False) -> bool:
        self.messages.append((message, is_error))
        log.info("Alert (no webhook configured)%s: %s", " [error]" if is_error else "", message)
        return False


def build_alerter(webhook_url: str | None, timeout: float = 10) -> SlackAlerter | NullAlerter:
    if not webhook_url:
        log.warning("SLACK_WEBHOOK_URL not set; alerts will only be logged")
        return NullAlerter()
    return SlackAlerter(webhook_url, timeout=timeout)
