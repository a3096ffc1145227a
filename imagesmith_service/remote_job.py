"""
Remote background removal through an asynchronous provider queue.

Flow:
 1) POST the image (multipart field `image`) with a Bearer token. The
    provider either answers with the result right away or with a 202 and a
    response URL to poll.
 2) Poll the response URL until the job reports success. The response URL
    may be pre-signed and reject credentials it does not expect: the first
    401 while polling is retried once without Authorization, and every later
    poll of that job stays anonymous.
 3) Normalize the completion payload (URL, inline base64 or data: URI) into
    raw image bytes.

The job lifecycle is an explicit state machine. Transition functions are
pure: they take a `RemoteJob` and return a new one, raising `ProtocolError`
on an illegal transition. Submission is never retried, since a second
submission would create a second paid job.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, replace
from enum import Enum
import logging
import re
import threading
import time
from typing import Any, Callable, Optional, Sequence, Tuple, Union

import requests

from .config import PollPolicy, Settings
from .errors import (
    AuthError,
    ConfigError,
    InvalidRequestError,
    JobCancelledError,
    JobTimeoutError,
    ProtocolError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

SUBMIT_SNIPPET_CHARS = 400
POLL_SNIPPET_CHARS = 200


# ------------------------------------------------------------------------------
# State machine
# ------------------------------------------------------------------------------


class JobState(str, Enum):
    SUBMITTED = "submitted"
    POLLING_AUTHED = "polling_authed"
    POLLING_ANONYMOUS = "polling_anonymous"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class AuthMode(str, Enum):
    BEARER = "bearer"
    ANONYMOUS = "anonymous"


POLLING_STATES = (JobState.POLLING_AUTHED, JobState.POLLING_ANONYMOUS)
TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED, JobState.TIMED_OUT)


@dataclass(frozen=True)
class RemoteJob:
    status_url: str
    submission_id: Optional[str] = None
    state: JobState = JobState.SUBMITTED
    auth_mode: AuthMode = AuthMode.BEARER
    started_at: float = 0.0
    delay_ms: int = 500
    polls: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


def _require(job: RemoteJob, allowed: Sequence[JobState], event: str) -> None:
    if job.state not in allowed:
        raise ProtocolError(f"Illegal job transition '{event}' from state {job.state.value}")


def start_polling(job: RemoteJob) -> RemoteJob:
    _require(job, (JobState.SUBMITTED,), "start_polling")
    state = JobState.POLLING_AUTHED if job.auth_mode is AuthMode.BEARER else JobState.POLLING_ANONYMOUS
    return replace(job, state=state)


def on_unauthorized(job: RemoteJob) -> RemoteJob:
    """First 401 while polling: drop credentials for the rest of the job.

    Only legal from POLLING_AUTHED, so the anonymous fallback can happen at
    most once per job.
    """
    _require(job, (JobState.POLLING_AUTHED,), "unauthorized")
    return replace(job, state=JobState.POLLING_ANONYMOUS, auth_mode=AuthMode.ANONYMOUS)


def on_in_progress(job: RemoteJob, policy: PollPolicy) -> RemoteJob:
    _require(job, POLLING_STATES, "in_progress")
    next_delay = min(int(job.delay_ms * policy.backoff_factor), policy.max_delay_ms)
    return replace(job, delay_ms=next_delay, polls=job.polls + 1)


def complete(job: RemoteJob) -> RemoteJob:
    _require(job, (JobState.SUBMITTED,) + POLLING_STATES, "complete")
    return replace(job, state=JobState.COMPLETED)


def fail(job: RemoteJob) -> RemoteJob:
    _require(job, (JobState.SUBMITTED,) + POLLING_STATES, "fail")
    return replace(job, state=JobState.FAILED)


def time_out(job: RemoteJob) -> RemoteJob:
    _require(job, POLLING_STATES, "time_out")
    return replace(job, state=JobState.TIMED_OUT)


# ------------------------------------------------------------------------------
# Status classification
# ------------------------------------------------------------------------------


class StatusKind(str, Enum):
    SUCCESS = "success"
    IN_PROGRESS = "in_progress"
    UNKNOWN = "unknown"


STATUS_FIELDS = ("status", "state", "phase")
SUCCESS_SUBSTRINGS = ("succeeded", "completed")
SUCCESS_EXACT = ("success",)
IN_PROGRESS_SUBSTRINGS = ("queue", "processing", "running", "in_progress", "loading")


def status_token(document: dict) -> str:
    """Lowercased value of the first non-empty status-like field ('' if none)."""
    for field in STATUS_FIELDS:
        value = document.get(field)
        if value not in (None, ""):
            return str(value).strip().lower()
    return ""


def classify_status(document: dict) -> Tuple[StatusKind, str]:
    token = status_token(document)
    # A missing status on a 2xx poll means the body is the result itself.
    if not token or token in SUCCESS_EXACT or any(s in token for s in SUCCESS_SUBSTRINGS):
        return StatusKind.SUCCESS, token
    if any(s in token for s in IN_PROGRESS_SUBSTRINGS):
        return StatusKind.IN_PROGRESS, token
    return StatusKind.UNKNOWN, token


# ------------------------------------------------------------------------------
# Extraction rules over heterogeneous response documents
# ------------------------------------------------------------------------------

PathPart = Union[str, int]


def dig(document: Any, path: Sequence[PathPart]) -> Any:
    current = document
    for part in path:
        if isinstance(part, int):
            if not isinstance(current, list) or len(current) <= part:
                return None
        elif not isinstance(current, dict):
            return None
        current = current[part] if isinstance(part, int) else current.get(part)
        if current is None:
            return None
    return current


@dataclass(frozen=True)
class ExtractionRule:
    name: str
    path: Tuple[PathPart, ...]

    def extract(self, document: Any) -> Optional[str]:
        value = dig(document, self.path)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None


def _rules(*paths: Tuple[PathPart, ...]) -> Tuple[ExtractionRule, ...]:
    return tuple(ExtractionRule(".".join(str(p) for p in path), path) for path in paths)


RESPONSE_HANDLE_RULES = _rules(("response_url",), ("result_url",), ("url",), ("results_url",))
SUBMISSION_ID_RULES = _rules(("request_id",), ("id",))
OUTPUT_URL_RULES = _rules(
    ("image", "url"),
    ("output", "url"),
    ("result", "url"),
    ("images", 0, "url"),
    ("output", 0, "content", "url"),
    ("outputs", 0, "url"),
)
INLINE_BASE64_RULES = _rules(
    ("image", "b64_json"),
    ("b64image",),
    ("images", 0, "b64_json"),
    ("output", 0, "content", "b64_json"),
    ("outputs", 0, "b64_json"),
)
DATA_URI_RULES = _rules(("image",), ("output",), ("result",))

_DATA_URI_RE = re.compile(r"^data:[^,]*;base64,(.+)$", re.DOTALL)


def first_match(rules: Sequence[ExtractionRule], document: Any) -> Optional[Tuple[ExtractionRule, str]]:
    for rule in rules:
        value = rule.extract(document)
        if value is not None:
            return rule, value
    return None


def decode_base64(value: str) -> bytes:
    try:
        return base64.b64decode(value)
    except (binascii.Error, ValueError) as exc:
        raise ProtocolError(f"Provider returned invalid base64 image data: {exc}") from exc


def decode_data_uri(value: str) -> Optional[bytes]:
    match = _DATA_URI_RE.match(value)
    if not match:
        return None
    return decode_base64(match.group(1))


def sniff_image_mime(data: bytes) -> Tuple[str, str]:
    """(mime type, filename) for the multipart upload, from magic bytes."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg", "input.jpg"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp", "input.webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif", "input.gif"
    return "image/png", "input.png"


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


def _snippet(response: requests.Response, limit: int) -> str:
    try:
        return (response.text or "")[:limit]
    except Exception:  # noqa: BLE001
        return ""


# ------------------------------------------------------------------------------
# Client
# ------------------------------------------------------------------------------


class BackgroundRemovalClient:
    """Submits background-removal jobs and drives them to raw image bytes."""

    def __init__(
        self,
        endpoint: str,
        token: Optional[str] = None,
        policy: Optional[PollPolicy] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not endpoint:
            raise ConfigError("Background removal endpoint is not configured (set FAL_TASK_URL)")
        self.endpoint = endpoint
        self.token = token
        self.policy = policy or PollPolicy()
        self.session = session or requests.Session()
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings, session: Optional[requests.Session] = None) -> "BackgroundRemovalClient":
        return cls(
            endpoint=settings.fal_task_url,
            token=settings.hf_token,
            policy=settings.poll_policy(),
            session=session,
        )

    def remove_background(
        self,
        image_bytes: bytes,
        auth_token: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> bytes:
        """Return the background-removed image bytes for `image_bytes`.

        Raises:
            ConfigError: no credential, or the provider route does not exist.
            AuthError: the provider rejected the credential at submission.
            UpstreamError: unexpected provider status or transport failure.
            ProtocolError: a response shape that cannot be interpreted.
            JobTimeoutError: the job did not finish before the deadline.
            JobCancelledError: `cancel_event` was set while polling.
        """
        token = (auth_token or self.token or "").strip()
        if not token:
            raise ConfigError("Missing credential: set HF_TOKEN")
        if not image_bytes:
            raise InvalidRequestError("Image bytes are empty")

        started = self._clock()
        deadline = started + self.policy.deadline_seconds

        response = self._submit(image_bytes, token, deadline)
        if response.headers.get("content-type", "").startswith("image/"):
            logger.info("background removal answered inline with image bytes")
            return response.content

        document = self._json_or_none(response)
        immediate = self._resolve_output(document, token, deadline) if document is not None else None
        if immediate is not None:
            logger.info("background removal completed without queueing")
            return immediate

        handle = first_match(RESPONSE_HANDLE_RULES, document)
        if handle is None:
            raise ProtocolError("Provider queue did not provide a response handle")
        submission = first_match(SUBMISSION_ID_RULES, document)

        job = RemoteJob(
            status_url=handle[1],
            submission_id=submission[1] if submission else None,
            started_at=started,
            delay_ms=self.policy.initial_delay_ms,
        )
        logger.info("background removal queued id=%s", job.submission_id or "-")
        return self._poll(start_polling(job), token, deadline, cancel_event)

    # ---------------------------------------------------------------------
    # Protocol steps
    # ---------------------------------------------------------------------

    def _submit(self, image_bytes: bytes, token: str, deadline: float) -> requests.Response:
        mime, filename = sniff_image_mime(image_bytes)
        try:
            response = self.session.post(
                self.endpoint,
                headers={"Authorization": f"Bearer {token}"},
                files={"image": (filename, image_bytes, mime)},
                timeout=self._request_timeout(deadline),
            )
        except requests.RequestException as exc:
            raise UpstreamError(f"Background removal submit failed: {exc}") from exc

        status = response.status_code
        if status == 202 or _is_success(status):
            return response

        snippet = _snippet(response, SUBMIT_SNIPPET_CHARS)
        if status == 401:
            raise AuthError(f"Provider rejected the token (401): invalid or expired. {snippet}".strip())
        if status == 403:
            raise AuthError(
                f"Provider refused the token (403): it lacks permission to call Inference Providers. {snippet}".strip()
            )
        if status == 404:
            raise ConfigError(f"Provider route not found at {self.endpoint}")
        raise UpstreamError(f"Background removal submit failed: {status} {snippet}".strip(), status, snippet)

    def _poll(
        self,
        job: RemoteJob,
        token: str,
        deadline: float,
        cancel_event: Optional[threading.Event],
    ) -> bytes:
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelledError("Background removal was cancelled while polling")
            if self._clock() >= deadline:
                job = time_out(job)
                raise JobTimeoutError("Background removal timed out. Try again.")

            response = self._poll_once(job, token, deadline)
            if response.status_code == 401 and job.state is JobState.POLLING_AUTHED:
                job = on_unauthorized(job)
                logger.warning("poll got 401 with credentials; retrying anonymously (pre-signed URL)")
                response = self._poll_once(job, token, deadline)

            logger.debug(
                "poll #%d state=%s status=%s",
                job.polls + 1,
                job.state.value,
                response.status_code,
            )

            if not _is_success(response.status_code):
                job = fail(job)
                snippet = _snippet(response, POLL_SNIPPET_CHARS)
                raise UpstreamError(
                    f"Background removal poll failed: {response.status_code} {snippet}".strip(),
                    response.status_code,
                    snippet,
                )

            if response.headers.get("content-type", "").startswith("image/"):
                job = complete(job)
                logger.info("background removal completed after %d polls", job.polls + 1)
                return response.content

            document = self._json_or_none(response)
            if document is None:
                job = fail(job)
                raise ProtocolError("Poll returned non-JSON without an image content-type")

            kind, token_value = classify_status(document)
            if kind is StatusKind.SUCCESS:
                output = self._resolve_output(document, token, deadline)
                if output is None:
                    job = fail(job)
                    raise ProtocolError("Job completed but its output is unresolvable (no image url/base64)")
                job = complete(job)
                logger.info("background removal completed after %d polls", job.polls + 1)
                return output

            if kind is StatusKind.UNKNOWN:
                job = fail(job)
                raise UpstreamError(f'Background removal job ended with unexpected status "{token_value}"')

            remaining = deadline - self._clock()
            if remaining <= 0:
                job = time_out(job)
                raise JobTimeoutError("Background removal timed out. Try again.")
            wait_seconds = min(job.delay_ms / 1000.0, remaining)
            job = on_in_progress(job, self.policy)
            logger.debug("job %s is %s; next poll in %.2fs", job.submission_id or "-", token_value, wait_seconds)
            self._wait(wait_seconds, cancel_event)

    def _poll_once(self, job: RemoteJob, token: str, deadline: float) -> requests.Response:
        headers = {"Authorization": f"Bearer {token}"} if job.auth_mode is AuthMode.BEARER else {}
        try:
            return self.session.get(job.status_url, headers=headers, timeout=self._request_timeout(deadline))
        except requests.RequestException as exc:
            if self._clock() >= deadline:
                raise JobTimeoutError("Background removal timed out. Try again.") from exc
            raise UpstreamError(f"Background removal poll failed: {exc}") from exc

    def _resolve_output(self, document: Any, token: Optional[str], deadline: float) -> Optional[bytes]:
        """Turn a completion payload into bytes: URL, then base64, then data: URI."""
        match = first_match(OUTPUT_URL_RULES, document)
        if match is not None:
            url = match[1]
            if url.startswith("data:"):
                inline = decode_data_uri(url)
                if inline is not None:
                    return inline
            return self._fetch_output(url, token, deadline)

        match = first_match(INLINE_BASE64_RULES, document)
        if match is not None:
            return decode_base64(match[1])

        for rule in DATA_URI_RULES:
            value = rule.extract(document)
            if value is None:
                continue
            decoded = decode_data_uri(value)
            if decoded is not None:
                return decoded
        return None

    def _fetch_output(self, url: str, token: Optional[str], deadline: float) -> bytes:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            response = self.session.get(url, headers=headers, timeout=self._request_timeout(deadline))
        except requests.RequestException as exc:
            raise UpstreamError(f"Fetching background removal output failed: {exc}") from exc
        if not _is_success(response.status_code):
            raise UpstreamError(
                f"Fetching background removal output failed: {response.status_code}",
                response.status_code,
                _snippet(response, POLL_SNIPPET_CHARS),
            )
        return response.content

    # ---------------------------------------------------------------------
    # Helpers
    # ---------------------------------------------------------------------

    def _request_timeout(self, deadline: float) -> float:
        remaining = deadline - self._clock()
        return max(0.001, min(self.policy.request_timeout_seconds, remaining))

    def _wait(self, seconds: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is None:
            self._sleep(seconds)
            return
        if cancel_event.wait(seconds):
            raise JobCancelledError("Background removal was cancelled while polling")

    @staticmethod
    def _json_or_none(response: requests.Response) -> Optional[dict]:
        try:
            document = response.json()
        except ValueError:
            return None
        if isinstance(document, list):
            document = document[0] if document else None
        return document if isinstance(document, dict) else None
