"""
Pipeline: playback log -> tag cache -> eligibility -> dedup -> batches -> submit -> record -> truncate.

Parsing and validation happen once, up front. Each account is then handled by
its own worker thread; batches within an account go out sequentially in log
order. The log is only truncated after every worker has finished and every
accepted scrobble has been recorded in the submission store.
"""

from __future__ import annotations

import enum
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Sequence

from rockbox_scrobbler.eligibility import ScrobbleCandidate, validate
from rockbox_scrobbler.lastfm_client import (
    MAX_BATCH, AccountBinding, AuthenticationFailed, ScrobbleClient,
    SubmissionResult, SubmissionStatus, TransientError,
)
from rockbox_scrobbler.playback_log import PlaybackLog, truncate_log
from rockbox_scrobbler.submission_store import SubmissionRecord, SubmissionStore
from rockbox_scrobbler.tagcache import IndexRefNotFound, TagCache

log = logging.getLogger("scrobbler")


class DiagnosticKind(enum.Enum):
    UNRESOLVED_TRACK = "UnresolvedTrack"
    TRUNCATED_TAIL = "TruncatedTail"


@dataclass(frozen=True)
class Diagnostic:
    kind: DiagnosticKind
    detail: str


@dataclass
class CandidateSet:
    candidates: List[ScrobbleCandidate] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    events: int = 0
    ineligible: int = 0


@dataclass
class AccountOutcome:
    service: str
    username: str
    pending: int = 0
    already_submitted: int = 0
    accepted: int = 0
    batches: int = 0
    rejected: List[SubmissionResult] = field(default_factory=list)
    failed: List[SubmissionResult] = field(default_factory=list)
    auth_error: str | None = None
    unreachable: str | None = None
    store_error: str | None = None

    @property
    def outstanding(self) -> bool:
        """Something may still need submitting on a later run."""
        return bool(self.failed or self.auth_error or self.unreachable or self.store_error)

    @property
    def complete(self) -> bool:
        return not self.outstanding and not self.rejected and self.accepted == self.pending


@dataclass
class RunReport:
    collected: CandidateSet
    accounts: List[AccountOutcome]
    dry_run: bool = False
    truncated: bool = False

    @property
    def exit_code(self) -> int:
        if self.dry_run:
            return 0
        return 0 if all(o.complete for o in self.accounts) else 1


def batched(items: Sequence[ScrobbleCandidate], size: int) -> Iterator[Sequence[ScrobbleCandidate]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def collect_candidates(playback_log: PlaybackLog, tagcache: TagCache) -> CandidateSet:
    """Parse the whole log and keep the plays that qualify. LogCorrupt and index errors propagate."""
    collected = CandidateSet()
    for event in playback_log:
        collected.events += 1
        try:
            metadata = tagcache.lookup(event.track_ref)
        except IndexRefNotFound as e:
            log.warning("Unresolved track at %s: %s", event.started_at, e)
            collected.diagnostics.append(Diagnostic(DiagnosticKind.UNRESOLVED_TRACK, str(e)))
            continue

        candidate = validate(event, metadata)
        if candidate is None:
            collected.ineligible += 1
        else:
            collected.candidates.append(candidate)

    if playback_log.truncated_tail_bytes:
        collected.diagnostics.append(Diagnostic(
            DiagnosticKind.TRUNCATED_TAIL,
            f"{playback_log.path}: dropped {playback_log.truncated_tail_bytes} trailing bytes",
        ))
    log.info("Parsed %d plays: %d eligible, %d too short, %d unresolved",
             collected.events, len(collected.candidates), collected.ineligible,
             sum(d.kind is DiagnosticKind.UNRESOLVED_TRACK for d in collected.diagnostics))
    return collected


class Scrobbler:
    def __init__(self, store: SubmissionStore,
                 client_factory: Callable[[AccountBinding], ScrobbleClient], *,
                 batch_size: int = MAX_BATCH, clock: Callable[[], float] = time.time):
        if not 0 < batch_size <= MAX_BATCH:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH}")
        self.store = store
        self.client_factory = client_factory
        self.batch_size = batch_size
        self.clock = clock

    def _pending(self, account: AccountBinding, candidates: Sequence[ScrobbleCandidate],
                 outcome: AccountOutcome) -> List[ScrobbleCandidate]:
        pending: List[ScrobbleCandidate] = []
        seen = set()
        for c in candidates:
            key = c.key(account.service, account.username)
            if key in seen:
                continue
            seen.add(key)
            if self.store.has(key):
                outcome.already_submitted += 1
            else:
                pending.append(c)
        outcome.pending = len(pending)
        return pending

    def preview_account(self, account: AccountBinding, candidates: Sequence[ScrobbleCandidate]) -> AccountOutcome:
        """Dry run: what would be sent, without touching the network."""
        outcome = AccountOutcome(account.service, account.username)
        self._pending(account, candidates, outcome)
        log.info("[dry run] %s/%s: would scrobble %d (%d already submitted)",
                 account.service, account.username, outcome.pending, outcome.already_submitted)
        return outcome

    def submit_account(self, account: AccountBinding, candidates: Sequence[ScrobbleCandidate]) -> AccountOutcome:
        outcome = AccountOutcome(account.service, account.username)
        pending = self._pending(account, candidates, outcome)
        if not pending:
            log.info("%s/%s: nothing new to scrobble", account.service, account.username)
            return outcome

        try:
            client = self.client_factory(account)
        except AuthenticationFailed as e:
            log.error("Cannot scrobble to %s/%s: %s", account.service, account.username, e)
            outcome.auth_error = str(e)
            return outcome

        try:
            try:
                client.authenticate()
            except AuthenticationFailed as e:
                log.error("Authentication failed for %s/%s: %s", account.service, account.username, e)
                outcome.auth_error = str(e)
                return outcome
            except TransientError as e:
                log.error("Could not reach %s for %s: %s", account.service, account.username, e)
                outcome.unreachable = str(e)
                return outcome

            for batch in batched(pending, self.batch_size):
                try:
                    results = client.submit_batch(batch)
                except AuthenticationFailed as e:
                    log.error("Session lost for %s/%s: %s", account.service, account.username, e)
                    outcome.auth_error = str(e)
                    break
                outcome.batches += 1
                try:
                    self._record_results(account, results, outcome)
                except OSError as e:
                    log.error("Cannot record submissions for %s/%s: %s", account.service, account.username, e)
                    outcome.store_error = str(e)
                    break
        finally:
            client.close()

        log.info("%s/%s: %d accepted, %d rejected, %d failed (%d already submitted)",
                 account.service, account.username, outcome.accepted,
                 len(outcome.rejected), len(outcome.failed), outcome.already_submitted)
        return outcome

    def _record_results(self, account: AccountBinding, results: Sequence[SubmissionResult],
                        outcome: AccountOutcome) -> None:
        for result in results:
            c = result.candidate
            if result.status is SubmissionStatus.ACCEPTED:
                self.store.record(SubmissionRecord(
                    key=c.key(account.service, account.username),
                    submitted_at=int(self.clock()),
                    service=account.service,
                    account=account.username,
                ))
                outcome.accepted += 1
            elif result.status is SubmissionStatus.REJECTED:
                log.warning("Rejected by %s: %s - %s (code %s: %s)",
                            account.service, c.artist, c.title, result.code, result.message)
                outcome.rejected.append(result)
            else:
                log.warning("Not submitted to %s: %s - %s: %s",
                            account.service, c.artist, c.title, result.message)
                outcome.failed.append(result)

    def run(self, playback_log: PlaybackLog, tagcache: TagCache, accounts: Sequence[AccountBinding], *,
            dry_run: bool = False, truncate: bool = True, remove_log: bool = False) -> RunReport:
        collected = collect_candidates(playback_log, tagcache)
        candidates = collected.candidates

        if dry_run:
            outcomes = [self.preview_account(a, candidates) for a in accounts]
        elif not accounts:
            outcomes = []
        else:
            with ThreadPoolExecutor(max_workers=len(accounts), thread_name_prefix="scrobble") as pool:
                futures = [pool.submit(self.submit_account, a, candidates) for a in accounts]
                outcomes = [f.result() for f in futures]

        report = RunReport(collected=collected, accounts=outcomes, dry_run=dry_run)
        if dry_run or not truncate:
            return report
        if collected.events == 0 or not outcomes:
            return report
        if any(o.outstanding for o in outcomes):
            log.warning("Keeping %s: some scrobbles are still outstanding", playback_log.path)
            return report

        truncate_log(playback_log.path, remove=remove_log)
        report.truncated = True
        log.info("%s %s", "Removed" if remove_log else "Truncated", playback_log.path)
        return report
