from __future__ import annotations

import http.client
import re
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
from urllib.parse import urlparse

from portal_agent.payload.models import MetricsPayload
from portal_common.errors import NoTransportAvailable
from portal_common.settings import (
    DEFAULT_REQUEST_ATTEMPTS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    Settings,
)
from portal_common.utils.logging_setup import setup_logger

logger = setup_logger("uploader")

RETRY_DELAY_SECONDS = 1.0
READ_CHUNK_BYTES = 8192
SUPPORTED_SCHEMES = ("http", "https")

# Matched against the raw body, not parsed as JSON.
SUCCESS_MARKER_RE = re.compile(r'"success"\s*:\s*true')


class TransmitOutcome(Enum):
    SUCCESS = "success"
    SOFT_REJECTION = "soft_rejection"
    TRANSPORT_FAILURE = "transport_failure"


@dataclass
class TransmitResult:
    ok: bool
    raw_response: str
    outcome: TransmitOutcome
    attempts: int = 0
    status: Optional[int] = None
    error: Optional[str] = None


def is_success_body(body: str) -> bool:
    return bool(SUCCESS_MARKER_RE.search(body or ""))


class MetricsTransmitter:
    """
    POSTs a metrics payload to the portal server.

    Transport failures (connection errors, timeouts, HTTP 5xx) are retried
    until ``attempts`` is used up. A reply without ``"success": true`` in
    its body is a soft rejection even when the HTTP status is 2xx.
    """

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        attempts: int = DEFAULT_REQUEST_ATTEMPTS,
        retry_delay: float = RETRY_DELAY_SECONDS,
        opener: Optional[Callable] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        scheme = urlparse(endpoint).scheme.lower()
        if scheme not in SUPPORTED_SCHEMES:
            raise NoTransportAvailable(
                f"No HTTP transport for endpoint {endpoint!r} (scheme {scheme or 'missing'!r})"
            )
        self._endpoint = endpoint
        self._timeout = timeout
        self._attempts = max(1, attempts)
        self._retry_delay = retry_delay
        self._opener = opener or urllib.request.urlopen
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "MetricsTransmitter":
        return cls(
            settings.metrics_endpoint,
            timeout=settings.request_timeout,
            attempts=settings.request_attempts,
            **kwargs,
        )

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def send(
        self, payload: MetricsPayload, router_id: str, contract_id: str
    ) -> TransmitResult:
        data = payload.to_json().encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Router-ID": router_id,
            "X-Contract-ID": contract_id,
        }

        status: Optional[int] = None
        last_error: Optional[str] = None
        for attempt in range(1, self._attempts + 1):
            request = urllib.request.Request(
                self._endpoint, data=data, method="POST", headers=headers
            )
            deadline = self._clock() + self._timeout
            try:
                with self._opener(request, timeout=self._timeout) as response:
                    status = response.status
                    body = self._read_body(response, deadline)
                return self._classify(body, status, attempt)
            except urllib.error.HTTPError as exc:
                status = exc.code
                last_error = f"HTTP {exc.code}: {exc.reason}"
                if exc.code < 500 or attempt >= self._attempts:
                    return TransmitResult(
                        ok=False,
                        raw_response=_read_error_body(exc),
                        outcome=TransmitOutcome.TRANSPORT_FAILURE,
                        attempts=attempt,
                        status=status,
                        error=last_error,
                    )
            except urllib.error.URLError as exc:
                last_error = str(exc.reason)
            except (OSError, http.client.HTTPException) as exc:
                last_error = str(exc) or exc.__class__.__name__

            if attempt < self._attempts:
                logger.debug(
                    "Metrics POST attempt %s/%s failed: %s",
                    attempt,
                    self._attempts,
                    last_error,
                )
                self._sleep(self._retry_delay)

        return TransmitResult(
            ok=False,
            raw_response="",
            outcome=TransmitOutcome.TRANSPORT_FAILURE,
            attempts=self._attempts,
            status=status,
            error=last_error,
        )

    def _read_body(self, response, deadline: float) -> str:
        """Read the reply in chunks, giving up once the attempt deadline passes."""
        read = getattr(response, "read1", None) or response.read
        chunks = []
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise TimeoutError(f"response not complete within {self._timeout}s")
            _limit_socket_timeout(response, remaining)
            chunk = read(READ_CHUNK_BYTES)
            if not chunk:
                break
            chunks.append(chunk)
        return b"".join(chunks).decode("utf-8", errors="replace")

    @staticmethod
    def _classify(body: str, status: Optional[int], attempt: int) -> TransmitResult:
        if is_success_body(body):
            outcome = TransmitOutcome.SUCCESS
        else:
            outcome = TransmitOutcome.SOFT_REJECTION
        return TransmitResult(
            ok=outcome is TransmitOutcome.SUCCESS,
            raw_response=body,
            outcome=outcome,
            attempts=attempt,
            status=status,
        )


def _limit_socket_timeout(response, remaining: float) -> None:
    # http.client keeps the socket behind its buffered reader.
    raw = getattr(getattr(response, "fp", None), "raw", None)
    sock = getattr(raw, "_sock", None)
    if sock is not None:
        sock.settimeout(max(0.01, remaining))


def _read_error_body(exc: urllib.error.HTTPError) -> str:
    try:
        return exc.read().decode("utf-8", errors="replace")
    except (OSError, http.client.HTTPException, AttributeError):
        return ""
