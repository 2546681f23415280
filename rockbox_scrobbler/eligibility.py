import hashlib
import logging
from dataclasses import dataclass

from rockbox_scrobbler.playback_log import RawPlayEvent
from rockbox_scrobbler.tagcache import TrackMetadata

log = logging.getLogger("eligibility")

MIN_TRACK_SECONDS = 30
MAX_THRESHOLD_MS = 240_000


# -------------------------
# A play that counts as a scrobble
# -------------------------
@dataclass(frozen=True)
class ScrobbleCandidate:
    metadata: TrackMetadata
    started_at: int
    played_duration_seconds: float

    @property
    def artist(self) -> str:
        return self.metadata.artist

    @property
    def title(self) -> str:
        return self.metadata.title

    def key(self, service: str, account: str) -> str:
        """Dedup identity: stable across runs for the same (service, account, artist, title, start)."""
        ident = "\x1f".join((self.artist, self.title, str(self.started_at)))
        digest = hashlib.sha1(ident.encode("utf-8")).hexdigest()
        return f"{service}:{account}:{digest}"


def threshold_ms(duration_ms: int) -> int:
    """Last.fm guideline: scrobble at halfway or 240s (4min), whichever comes first."""
    return min(MAX_THRESHOLD_MS, duration_ms // 2)


def validate(event: RawPlayEvent, metadata: TrackMetadata) -> ScrobbleCandidate | None:
    # Unknown or very short tracks never count, since the threshold is relative to duration
    if metadata.duration_seconds < MIN_TRACK_SECONDS:
        log.debug("Skipping %s - %s: duration %ss below %ss",
                  metadata.artist, metadata.title, metadata.duration_seconds, MIN_TRACK_SECONDS)
        return None
    if event.played_ms < threshold_ms(metadata.duration_ms):
        log.debug("Skipping %s - %s: played %.1fs of %ss",
                  metadata.artist, metadata.title, event.played_duration_seconds, metadata.duration_seconds)
        return None
    return ScrobbleCandidate(
        metadata=metadata,
        started_at=event.started_at,
        played_duration_seconds=event.played_duration_seconds,
    )
