"""
Best-effort run alerts.

A finished run is summarised into Alert values (run_alerts), which are fanned
out to every configured sender:

- Webhook: POST the alert as JSON to NOTIFY_WEBHOOK_URL, per-account counts included.
- Gotify: POST /message with an app token (GOTIFY_URL + GOTIFY_TOKEN); errors
  are raised to at least GOTIFY_ERROR_PRIORITY.

Delivery failures are logged at DEBUG and never affect the run.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List

import requests

from rockbox_scrobbler.scrobbler import AccountOutcome, RunReport

log = logging.getLogger("notifier")

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40, "CRITICAL": 50}
DEFAULT_APP_TAG = "Rockbox→Last.fm"


@dataclass(frozen=True)
class Alert:
    level: str
    title: str
    message: str
    fields: Dict[str, Any] = field(default_factory=dict)

    @property
    def severity(self) -> int:
        return _LEVELS.get(self.level.upper(), 30)


def _account_fields(outcome: AccountOutcome) -> Dict[str, Any]:
    return {
        "pending": outcome.pending,
        "accepted": outcome.accepted,
        "rejected": len(outcome.rejected),
        "failed": len(outcome.failed),
    }


def run_alerts(report: RunReport) -> List[Alert]:
    """What a finished run should tell the user about; empty for a clean run."""
    alerts = []
    for outcome in report.accounts:
        if outcome.auth_error:
            alerts.append(Alert(
                "ERROR",
                f"Cannot sign in to {outcome.service} as {outcome.username}",
                outcome.auth_error,
                {"service": outcome.service, "username": outcome.username, "pending": outcome.pending},
            ))
        if outcome.store_error:
            alerts.append(Alert(
                "ERROR",
                "Cannot record submissions",
                outcome.store_error,
                {"service": outcome.service, "username": outcome.username},
            ))
    if report.exit_code:
        collected = report.collected
        alerts.append(Alert(
            "WARNING",
            "Scrobble run incomplete",
            f"{len(collected.candidates)} eligible plays; playback log "
            f"{'truncated' if report.truncated else 'kept for the next run'}",
            {f"{o.service}/{o.username}": _account_fields(o) for o in report.accounts},
        ))
    return alerts


class WebhookNotifier:
    def __init__(self, url: str | None, min_level: str = "WARNING", app_tag: str = DEFAULT_APP_TAG):
        self.url = url.strip() if url else None
        self.min_level = _LEVELS.get(min_level.upper(), 30)
        self.app_tag = app_tag

    def deliver(self, alert: Alert) -> None:
        if not self.url or alert.severity < self.min_level:
            return
        payload = {
            "source": self.app_tag,
            "level": alert.level.upper(),
            "title": f"{self.app_tag}: {alert.title}",
            "message": alert.message,
            "fields": alert.fields,
        }
        try:
            requests.post(self.url, json=payload, timeout=5)
        except requests.RequestException as e:
            log.debug("Webhook delivery failed: %s", e)


class GotifyNotifier:
    """Plain-text Gotify messages; fields are rendered one per line."""

    def __init__(self, url: str | None, token: str | None, min_level: str = "WARNING",
                 priority: int = 5, error_priority: int = 8, app_tag: str = DEFAULT_APP_TAG):
        self.url = url.rstrip("/") if url else None
        self.token = token.strip() if token else None
        self.min_level = _LEVELS.get(min_level.upper(), 30)
        self.priority = priority
        self.error_priority = error_priority
        self.app_tag = app_tag

    def priority_for(self, alert: Alert) -> int:
        if alert.severity >= _LEVELS["ERROR"]:
            return max(self.priority, self.error_priority)
        return self.priority

    @staticmethod
    def render(alert: Alert) -> str:
        lines = [alert.message]
        if alert.fields:
            lines.append("")
            lines.extend(f"{name}: {value}" for name, value in alert.fields.items())
        return "\n".join(lines)

    def deliver(self, alert: Alert) -> None:
        if not self.url or not self.token or alert.severity < self.min_level:
            return
        body = {
            "title": f"{self.app_tag}: {alert.title}",
            "message": self.render(alert),
            "priority": self.priority_for(alert),
        }
        try:
            requests.post(f"{self.url}/message", json=body, headers={"X-Gotify-Key": self.token}, timeout=5)
        except requests.RequestException as e:
            log.debug("Gotify delivery failed: %s", e)


class Alerts:
    """Fans an alert out to every configured sender."""

    def __init__(self, *senders):
        self.senders = senders

    def send(self, alert: Alert) -> None:
        for sender in self.senders:
            sender.deliver(alert)


def from_env() -> Alerts:
    app_tag = os.getenv("APP_TAG", DEFAULT_APP_TAG)
    return Alerts(
        WebhookNotifier(
            url=os.getenv("NOTIFY_WEBHOOK_URL"),
            min_level=os.getenv("NOTIFY_MIN_LEVEL", "WARNING"),
            app_tag=app_tag,
        ),
        GotifyNotifier(
            url=os.getenv("GOTIFY_URL"),
            token=os.getenv("GOTIFY_TOKEN"),
            min_level=os.getenv("GOTIFY_MIN_LEVEL", "WARNING"),
            priority=int(os.getenv("GOTIFY_PRIORITY", "5")),
            error_priority=int(os.getenv("GOTIFY_ERROR_PRIORITY", "8")),
            app_tag=app_tag,
        ),
    )
