from __future__ import annotations

import pytest

from rockbox_scrobbler.eligibility import ScrobbleCandidate, threshold_ms, validate
from rockbox_scrobbler.playback_log import RawPlayEvent, StopReason
from rockbox_scrobbler.tagcache import TrackMetadata


def meta(duration_ms: int, artist: str = "Stereolab", title: str = "Metronomic Underground") -> TrackMetadata:
    return TrackMetadata(title=title, artist=artist, album=None, duration_ms=duration_ms)


def play(played_ms: int, started_at: int = 1_700_000_000) -> RawPlayEvent:
    return RawPlayEvent(track_ref=0, started_at=started_at, played_ms=played_ms, stop_reason=StopReason.SKIPPED)


def test_threshold_is_half_or_four_minutes() -> None:
    assert threshold_ms(180_000) == 90_000
    assert threshold_ms(480_000) == 240_000
    assert threshold_ms(900_000) == 240_000


@pytest.mark.parametrize(
    ("duration_ms", "played_ms", "eligible"),
    [
        (180_000, 90_000, True),      # exactly half
        (180_000, 89_999, False),
        (900_000, 240_000, True),     # four minutes of a long track
        (900_000, 239_000, False),
        (30_000, 15_000, True),       # shortest allowed track
        (29_999, 29_999, False),      # too short regardless of play time
        (0, 500_000, False),          # unknown duration
    ],
)
def test_eligibility_rule(duration_ms: int, played_ms: int, eligible: bool) -> None:
    result = validate(play(played_ms), meta(duration_ms))
    assert (result is not None) is eligible


def test_candidate_fields() -> None:
    candidate = validate(play(200_000, started_at=1_650_000_000), meta(300_000))
    assert candidate == ScrobbleCandidate(meta(300_000), 1_650_000_000, 200.0)
    assert candidate.artist == "Stereolab"
    assert candidate.title == "Metronomic Underground"


def test_key_is_stable_and_scoped() -> None:
    a = validate(play(200_000), meta(300_000))
    b = validate(play(250_000), meta(300_000))
    # same artist/title/start -> same identity, whatever the played time
    assert a.key("lastfm", "alice") == b.key("lastfm", "alice")
    assert a.key("lastfm", "alice") != a.key("lastfm", "bob")
    assert a.key("lastfm", "alice") != a.key("librefm", "alice")
    assert a.key("lastfm", "alice") == "lastfm:alice:" + a.key("x", "y").split(":")[2]

    later = validate(play(200_000, started_at=1_700_000_001), meta(300_000))
    assert later.key("lastfm", "alice") != a.key("lastfm", "alice")
