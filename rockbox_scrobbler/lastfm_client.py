"""
Client for the Last.fm 2.0 scrobbling API (also spoken by Libre.fm).

One ScrobbleClient per (service, account). It performs the mobile-session
handshake, signs every call, and submits batches of up to 50 scrobbles,
reporting the outcome of each item separately.
"""

from __future__ import annotations

import enum
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence

import pylast
import requests

from rockbox_scrobbler import __version__
from rockbox_scrobbler.eligibility import ScrobbleCandidate

log = logging.getLogger("lastfm")

LASTFM_API_ROOT = "https://ws.audioscrobbler.com/2.0/"
LIBREFM_API_ROOT = "https://libre.fm/2.0/"
SERVICE_URLS = {"lastfm": LASTFM_API_ROOT, "librefm": LIBREFM_API_ROOT}

# Libre.fm does not issue keys; any fixed pair identifies the client
LIBREFM_API_KEY = "rockbox-2-lastfm"
LIBREFM_API_SECRET = "rockbox-2-lastfm"

USER_AGENT = f"rockbox-2-lastfm/{__version__}"
MAX_BATCH = 50
MAX_RETRY_DELAY = 300.0  # upper bound for any single wait, Retry-After included
SIGNING_SKIP = {"format", "callback"}

# Service error codes, as named by pylast
AUTH_ERRORS = {
    pylast.STATUS_AUTH_FAILED,
    pylast.STATUS_INVALID_SK,
    pylast.STATUS_INVALID_API_KEY,
    pylast.STATUS_INVALID_SIGNATURE,
    pylast.STATUS_TOKEN_UNAUTHORIZED,
    pylast.STATUS_TOKEN_EXPIRED,
    pylast.STATUS_API_KEY_SUSPENDED,
}
TRANSIENT_ERRORS = {
    pylast.STATUS_OPERATION_FAILED,
    pylast.STATUS_OFFLINE,
    pylast.STATUS_TEMPORARILY_UNAVAILABLE,
    pylast.STATUS_RATE_LIMIT_EXCEEDED,
}

# ignoredMessage codes inside an otherwise successful track.scrobble response
IGNORED_OK = {"0", "91"}  # 91: Libre.fm already has this scrobble
IGNORED_RETRY_LATER = {"5"}  # daily scrobble limit
IGNORED_REASONS = {
    "1": "Artist ignored",
    "2": "Track ignored",
    "3": "Timestamp too old",
    "4": "Timestamp too new",
    "5": "Daily scrobble limit exceeded",
}


# Custom error classes so callers can branch
class ScrobblerError(Exception): ...
class AuthenticationFailed(ScrobblerError): ...
class TransientError(ScrobblerError): ...


class RateLimited(TransientError):
    def __init__(self, msg: str, retry_after: float | None = None):
        super().__init__(msg)
        self.retry_after = retry_after


class ServiceError(ScrobblerError):
    def __init__(self, code: int | None, msg: str):
        super().__init__(f"API error {code}: {msg}" if code is not None else msg)
        self.code = code


@dataclass(frozen=True)
class ServiceEndpoint:
    name: str
    api_url: str
    api_key: str
    api_secret: str


@dataclass(frozen=True)
class AccountBinding:
    service: str
    username: str
    password_md5: str | None = None
    session_key: str | None = None


def endpoint_for(service: str, api_key: str | None = None, api_secret: str | None = None) -> ServiceEndpoint:
    if service not in SERVICE_URLS:
        raise ValueError(f"Unsupported service: {service}")
    if service == "librefm":
        api_key = api_key or LIBREFM_API_KEY
        api_secret = api_secret or LIBREFM_API_SECRET
    if not api_key or not api_secret:
        raise ValueError(f"Missing API key/secret for {service}")
    return ServiceEndpoint(service, SERVICE_URLS[service], api_key, api_secret)


class ClientState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    SUBMITTING = "submitting"
    FAILED = "failed"


class SubmissionStatus(enum.Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"   # the service ignored it; resubmitting will not help
    FAILED = "failed"       # outcome unknown or retries exhausted (SubmissionFailed)


@dataclass(frozen=True)
class SubmissionResult:
    candidate: ScrobbleCandidate
    status: SubmissionStatus
    code: str | None = None
    message: str = ""


def sign(params: Dict[str, str], api_secret: str) -> str:
    """MD5 over key+value pairs sorted by key (minus format/callback), then the secret."""
    items = sorted((k, v) for k, v in params.items() if k not in SIGNING_SKIP)
    return pylast.md5("".join(k + v for k, v in items) + api_secret)


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    delay = min(cap, base * (2 ** (attempt - 1)))
    return delay + random.uniform(0.0, 0.25 * delay)


def _redacted(params: Dict[str, str]) -> Dict[str, str]:
    return {k: v for k, v in params.items() if k not in {"api_sig", "sk", "authToken"}}


def _to_int(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ScrobbleClient:
    """Signed Last.fm-protocol calls for one account, with bounded retries."""

    def __init__(self, endpoint: ServiceEndpoint, account: AccountBinding, *,
                 session: requests.Session | None = None, timeout: float = 30,
                 max_attempts: int = 4, debug_responses: bool = False,
                 sleep: Callable[[float], None] = time.sleep):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.endpoint = endpoint
        self.account = account
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.debug_responses = debug_responses
        self._sleep = sleep
        self._owns_session = session is None
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": USER_AGENT})
        self.session = session
        self._session_key = account.session_key
        self._failure: str | None = None
        self.state = ClientState.AUTHENTICATED if self._session_key else ClientState.UNAUTHENTICATED

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    @property
    def label(self) -> str:
        return f"{self.endpoint.name}/{self.account.username}"

    # -------- wire --------
    def _post_once(self, params: Dict[str, str]) -> dict:
        signed = dict(params)
        signed["api_sig"] = sign(params, self.endpoint.api_secret)
        signed["format"] = "json"
        try:
            resp = self.session.post(self.endpoint.api_url, data=signed, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientError(f"{params.get('method')}: {e.__class__.__name__}: {e}") from e

        if self.debug_responses:
            log.debug("%s %s -> HTTP %s %s", self.endpoint.api_url, _redacted(signed),
                      resp.status_code, resp.text[:4000])

        if resp.status_code == 429:
            raise RateLimited("HTTP 429", retry_after=_to_int(resp.headers.get("Retry-After")))
        if resp.status_code >= 500 or resp.status_code == 408:
            raise TransientError(f"HTTP {resp.status_code} from {self.endpoint.api_url}")

        try:
            data = resp.json()
        except ValueError:
            if resp.status_code >= 400:
                raise ServiceError(None, f"HTTP {resp.status_code} from {self.endpoint.api_url}") from None
            raise TransientError(f"Malformed response from {self.endpoint.api_url}") from None

        if isinstance(data, dict) and "error" in data:
            code = _to_int(data.get("error"))
            msg = str(data.get("message") or "API error")
            if code in AUTH_ERRORS:
                raise AuthenticationFailed(f"API error {code}: {msg}")
            if code == pylast.STATUS_RATE_LIMIT_EXCEEDED:
                raise RateLimited(f"API error {code}: {msg}")
            if code in TRANSIENT_ERRORS:
                raise TransientError(f"API error {code}: {msg}")
            raise ServiceError(code, msg)
        if resp.status_code >= 400:
            raise ServiceError(None, f"HTTP {resp.status_code} from {self.endpoint.api_url}")
        if not isinstance(data, dict):
            raise TransientError(f"Unexpected response from {self.endpoint.api_url}")
        return data

    def _call(self, params: Dict[str, str]) -> dict:
        """Signed POST; transient failures are retried with exponential backoff."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._post_once(params)
            except TransientError as e:
                if attempt >= self.max_attempts:
                    log.error("%s: %s failed after %d attempts: %s",
                              self.label, params.get("method"), attempt, e)
                    raise
                delay = backoff_delay(attempt)
                if isinstance(e, RateLimited) and e.retry_after:
                    delay = min(MAX_RETRY_DELAY, max(delay, float(e.retry_after)))
                log.warning("%s: %s (attempt %d/%d); retrying in %.1fs",
                            self.label, e, attempt, self.max_attempts, delay)
                self._sleep(delay)
        raise AssertionError("unreachable")

    # -------- handshake --------
    def authenticate(self) -> str:
        """Obtain (or return the cached) session key. AuthenticationFailed is final for this client."""
        if self.state is ClientState.FAILED:
            raise AuthenticationFailed(self._failure or f"{self.label}: authentication failed")
        if self._session_key:
            return self._session_key

        if not self.account.username or not self.account.password_md5:
            self._fail(f"{self.label}: no password or session key configured")

        self.state = ClientState.AUTHENTICATING
        params = {
            "method": "auth.getMobileSession",
            "username": self.account.username,
            "authToken": pylast.md5(self.account.username + self.account.password_md5),
            "api_key": self.endpoint.api_key,
        }
        try:
            data = self._call(params)
        except (AuthenticationFailed, ServiceError) as e:
            self._fail(f"{self.label}: {e}")
        except TransientError:
            self.state = ClientState.UNAUTHENTICATED
            raise

        key = (data.get("session") or {}).get("key")
        if not key:
            self._fail(f"{self.label}: handshake returned no session key")
        self._session_key = key
        self.state = ClientState.AUTHENTICATED
        log.info("Authenticated %s", self.label)
        return key

    def _fail(self, msg: str):
        self.state = ClientState.FAILED
        self._failure = msg
        raise AuthenticationFailed(msg)

    # -------- submission --------
    def _batch_params(self, candidates: Sequence[ScrobbleCandidate]) -> Dict[str, str]:
        params = {
            "method": "track.scrobble",
            "api_key": self.endpoint.api_key,
            "sk": self._session_key or "",
        }
        for i, c in enumerate(candidates):
            params[f"artist[{i}]"] = c.artist
            params[f"track[{i}]"] = c.title
            params[f"timestamp[{i}]"] = str(c.started_at)
            if c.metadata.album:
                params[f"album[{i}]"] = c.metadata.album
            if c.metadata.duration_seconds > 0:
                params[f"duration[{i}]"] = str(c.metadata.duration_seconds)
        return params

    def submit_batch(self, candidates: Sequence[ScrobbleCandidate]) -> List[SubmissionResult]:
        """
        Scrobble up to MAX_BATCH candidates in one call.

        Returns one SubmissionResult per candidate, in order. Raises
        AuthenticationFailed if the account cannot (or can no longer) authenticate.
        """
        if len(candidates) > MAX_BATCH:
            raise ValueError(f"Batch of {len(candidates)} exceeds the service limit of {MAX_BATCH}")
        if not candidates:
            return []
        if self.state is not ClientState.AUTHENTICATED:
            self.authenticate()

        self.state = ClientState.SUBMITTING
        try:
            data = self._call(self._batch_params(candidates))
        except AuthenticationFailed as e:
            self._failure = f"{self.label}: {e}"
            self.state = ClientState.FAILED
            raise
        except TransientError as e:
            self.state = ClientState.AUTHENTICATED
            return [SubmissionResult(c, SubmissionStatus.FAILED, None, str(e)) for c in candidates]
        except ServiceError as e:
            self.state = ClientState.AUTHENTICATED
            if e.code is None:
                # an HTTP error page without an API error code says nothing about the items
                return [SubmissionResult(c, SubmissionStatus.FAILED, None, str(e)) for c in candidates]
            return [SubmissionResult(c, SubmissionStatus.REJECTED, str(e.code), str(e)) for c in candidates]

        self.state = ClientState.AUTHENTICATED
        return parse_scrobble_response(data, candidates)


def _ignored_message(item) -> tuple[str, str]:
    msg = item.get("ignoredMessage") if isinstance(item, dict) else None
    if msg is None:
        return "0", ""
    if isinstance(msg, dict):
        return str(msg.get("code", "0")), str(msg.get("#text") or "")
    if isinstance(msg, int) or (isinstance(msg, str) and msg.isdigit()):
        return str(msg), ""
    return ("unknown", msg) if msg else ("0", "")


def parse_scrobble_response(data: dict, candidates: Sequence[ScrobbleCandidate]) -> List[SubmissionResult]:
    """Map a track.scrobble JSON response back onto the submitted candidates."""
    scrobbles = data.get("scrobbles")
    if not isinstance(scrobbles, dict):
        return [SubmissionResult(c, SubmissionStatus.FAILED, None, "Response has no scrobbles element")
                for c in candidates]

    attr = scrobbles.get("@attr") or {}
    accepted = _to_int(attr.get("accepted")) or 0
    ignored = _to_int(attr.get("ignored")) or 0
    items = scrobbles.get("scrobble")
    if isinstance(items, dict):
        items = [items]

    if isinstance(items, list) and len(items) == len(candidates):
        results = []
        for c, item in zip(candidates, items):
            code, text = _ignored_message(item)
            if code in IGNORED_OK:
                results.append(SubmissionResult(c, SubmissionStatus.ACCEPTED, code))
                continue
            text = text or IGNORED_REASONS.get(code, "Scrobble rejected")
            status = SubmissionStatus.FAILED if code in IGNORED_RETRY_LATER else SubmissionStatus.REJECTED
            results.append(SubmissionResult(c, status, code, text))
        return results

    if accepted == len(candidates):
        return [SubmissionResult(c, SubmissionStatus.ACCEPTED) for c in candidates]
    if accepted == 0 and ignored == len(candidates):
        return [SubmissionResult(c, SubmissionStatus.REJECTED, None, "Scrobble rejected") for c in candidates]
    msg = f"Could not match response (accepted={accepted}, ignored={ignored}) to batch of {len(candidates)}"
    return [SubmissionResult(c, SubmissionStatus.FAILED, None, msg) for c in candidates]
