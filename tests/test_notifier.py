from __future__ import annotations

import requests

from rockbox_scrobbler import notifier
from rockbox_scrobbler.notifier import Alert, GotifyNotifier, run_alerts
from rockbox_scrobbler.scrobbler import AccountOutcome, CandidateSet, RunReport


def capture_posts(monkeypatch) -> list[dict]:
    sent: list[dict] = []

    def fake_post(url, json=None, headers=None, timeout=None):
        sent.append({"url": url, "json": json, "headers": headers})

    monkeypatch.setattr(notifier.requests, "post", fake_post)
    return sent


def report_with(*outcomes: AccountOutcome, truncated: bool = False) -> RunReport:
    return RunReport(collected=CandidateSet(), accounts=list(outcomes), truncated=truncated)


def test_clean_run_has_no_alerts() -> None:
    assert run_alerts(report_with(AccountOutcome("lastfm", "alice", pending=2, accepted=2))) == []


def test_auth_failure_and_incomplete_run_alerts() -> None:
    alice = AccountOutcome("lastfm", "alice", pending=3, auth_error="Missing API key/secret for lastfm")
    bob = AccountOutcome("librefm", "bob", pending=3, accepted=3)
    alerts = run_alerts(report_with(alice, bob))

    assert [(a.level, a.title) for a in alerts] == [
        ("ERROR", "Cannot sign in to lastfm as alice"),
        ("WARNING", "Scrobble run incomplete"),
    ]
    assert alerts[0].message == "Missing API key/secret for lastfm"
    assert alerts[1].message.endswith("playback log kept for the next run")
    assert alerts[1].fields["librefm/bob"] == {"pending": 3, "accepted": 3, "rejected": 0, "failed": 0}


def test_unconfigured_senders_are_silent(monkeypatch) -> None:
    for var in ("NOTIFY_WEBHOOK_URL", "GOTIFY_URL", "GOTIFY_TOKEN"):
        monkeypatch.delenv(var, raising=False)
    sent = capture_posts(monkeypatch)
    notifier.from_env().send(Alert("ERROR", "Scrobble run failed", "bad index"))
    assert sent == []


def test_fan_out_respects_min_level(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFY_WEBHOOK_URL", "https://hooks.example.test/x ")
    monkeypatch.setenv("GOTIFY_URL", "https://gotify.example.test/")
    monkeypatch.setenv("GOTIFY_TOKEN", "tok")
    monkeypatch.setenv("GOTIFY_MIN_LEVEL", "ERROR")
    monkeypatch.delenv("GOTIFY_PRIORITY", raising=False)
    monkeypatch.delenv("GOTIFY_ERROR_PRIORITY", raising=False)
    sent = capture_posts(monkeypatch)
    alerts = notifier.from_env()

    alerts.send(Alert("WARNING", "Scrobble run incomplete", "2 failed", {"lastfm/alice": {"failed": 2}}))
    assert [s["url"] for s in sent] == ["https://hooks.example.test/x"]
    assert sent[0]["json"]["title"].endswith("Scrobble run incomplete")
    assert sent[0]["json"]["fields"] == {"lastfm/alice": {"failed": 2}}

    alerts.send(Alert("ERROR", "Cannot sign in to lastfm as alice", "bad password", {"username": "alice"}))
    gotify = sent[-1]
    assert gotify["url"] == "https://gotify.example.test/message"
    assert gotify["headers"] == {"X-Gotify-Key": "tok"}
    assert gotify["json"]["priority"] == 8
    assert gotify["json"]["message"] == "bad password\n\nusername: alice"


def test_gotify_priority_by_level() -> None:
    gotify = GotifyNotifier("https://gotify.example.test", "tok", priority=3, error_priority=9)
    assert gotify.priority_for(Alert("WARNING", "t", "m")) == 3
    assert gotify.priority_for(Alert("CRITICAL", "t", "m")) == 9


def test_delivery_failure_is_ignored(monkeypatch) -> None:
    def boom(*args, **kwargs):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(notifier.requests, "post", boom)
    notifier.WebhookNotifier("https://hooks.example.test/x").deliver(Alert("ERROR", "t", "m"))
