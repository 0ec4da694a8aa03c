"""
Invoice Hub - Delivery Executor

Performs one external call (HTTP POST) with a per-attempt timeout and a
bounded, linear retry loop. Knows nothing about invoices: the caller decides
which attempts are retried by passing a predicate.

Outcome kinds:
- success:       HTTP 2xx (body parsed as JSON when possible)
- http_error:    non-2xx (body still parsed when possible)
- timeout:       attempt exceeded timeout_ms and was abandoned
- network_error: connection / protocol failure

execute() never raises; every failure mode is carried by the returned outcome.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .pipeline_config import RETRY_BACKOFF_STEP_MS

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    HTTP_ERROR = "http_error"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"


@dataclass
class AttemptRecord:
    """Result of a single call attempt."""
    index: int  # 1-based
    kind: OutcomeKind
    http_status: Optional[int] = None
    body: Any = None
    body_parsed: bool = False
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


@dataclass
class DeliveryOutcome:
    """Final outcome of an execute() call, plus every attempt made."""
    kind: OutcomeKind
    http_status: Optional[int] = None
    body: Any = None
    body_parsed: bool = False
    message: Optional[str] = None
    attempts: List[AttemptRecord] = field(default_factory=list)
    elapsed_ms: int = 0

    @property
    def attempt_count(self) -> int:
        return len(self.attempts)

    @property
    def is_success(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS

    @classmethod
    def from_attempts(cls, attempts: List[AttemptRecord], elapsed_ms: int) -> "DeliveryOutcome":
        last = attempts[-1]
        return cls(
            kind=last.kind,
            http_status=last.http_status,
            body=last.body,
            body_parsed=last.body_parsed,
            message=last.error,
            attempts=attempts,
            elapsed_ms=elapsed_ms,
        )


RetryPredicate = Callable[[AttemptRecord], bool]
SleepFunc = Callable[[float], Awaitable[Any]]

RETRYABLE_HTTP_STATUSES = {408, 429}


def is_transient(attempt: AttemptRecord) -> bool:
    """Timeouts, network errors, 5xx, 408 and 429 are worth retrying."""
    if attempt.kind in (OutcomeKind.TIMEOUT, OutcomeKind.NETWORK_ERROR):
        return True
    if attempt.kind == OutcomeKind.HTTP_ERROR and attempt.http_status is not None:
        return attempt.http_status >= 500 or attempt.http_status in RETRYABLE_HTTP_STATUSES
    return False


def _parse_body(response: httpx.Response):
    """Returns (body, parsed). Unparsable bodies come back as raw text."""
    text = response.text
    if not text.strip():
        return None, False
    try:
        return json.loads(text), True
    except ValueError:
        return text, False


class DeliveryExecutor:
    """
    Runs an already-decided retry loop against one endpoint.

    Args:
        transport: optional httpx transport (tests pass httpx.MockTransport)
        sleep: coroutine used for backoff waits
        backoff_step_ms: wait before retry N is N * backoff_step_ms
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Optional[SleepFunc] = None,
        backoff_step_ms: int = RETRY_BACKOFF_STEP_MS,
    ):
        self.transport = transport
        self.sleep = sleep or asyncio.sleep
        self.backoff_step_ms = backoff_step_ms

    async def execute(
        self,
        url: str,
        method: str,
        headers: Dict[str, str],
        body: Any,
        timeout_ms: int,
        max_retries: int,
        should_retry: Optional[RetryPredicate] = None,
    ) -> DeliveryOutcome:
        """
        Perform the call, retrying up to max_retries extra times while
        should_retry(attempt) is true. Defaults to retrying transient failures.
        """
        should_retry = should_retry or is_transient
        timeout_s = max(timeout_ms, 1) / 1000.0
        attempts: List[AttemptRecord] = []
        started = time.monotonic()

        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), transport=self.transport) as client:
            for index in range(1, max(0, max_retries) + 2):
                if index > 1:
                    await self.sleep((index - 1) * self.backoff_step_ms / 1000.0)

                attempt = await self._attempt(client, index, url, method, headers, body, timeout_s)
                attempts.append(attempt)

                if index > max_retries or not should_retry(attempt):
                    break

                logger.warning(
                    "Delivery attempt %d to %s failed (%s), retrying",
                    index, url, attempt.error or attempt.kind.value
                )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        outcome = DeliveryOutcome.from_attempts(attempts, elapsed_ms)
        logger.info(
            "Delivery to %s finished: kind=%s status=%s attempts=%d elapsed=%dms",
            url, outcome.kind.value, outcome.http_status, outcome.attempt_count, elapsed_ms
        )
        return outcome

    async def _attempt(
        self,
        client: httpx.AsyncClient,
        index: int,
        url: str,
        method: str,
        headers: Dict[str, str],
        body: Any,
        timeout_s: float,
    ) -> AttemptRecord:
        started = time.monotonic()

        def _duration() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            response = await asyncio.wait_for(
                client.request(method.upper(), url, headers=headers, json=body),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return AttemptRecord(
                index=index,
                kind=OutcomeKind.TIMEOUT,
                error=f"Request timed out after {int(timeout_s * 1000)}ms",
                duration_ms=_duration(),
            )
        except httpx.HTTPError as e:
            return AttemptRecord(
                index=index,
                kind=OutcomeKind.NETWORK_ERROR,
                error=f"{type(e).__name__}: {e}",
                duration_ms=_duration(),
            )
        except Exception as e:
            logger.error("Unexpected error calling %s: %s", url, str(e), exc_info=True)
            return AttemptRecord(
                index=index,
                kind=OutcomeKind.NETWORK_ERROR,
                error=f"{type(e).__name__}: {e}",
                duration_ms=_duration(),
            )

        parsed_body, parsed = _parse_body(response)
        if response.is_success:
            return AttemptRecord(
                index=index,
                kind=OutcomeKind.SUCCESS,
                http_status=response.status_code,
                body=parsed_body,
                body_parsed=parsed,
                error=None if parsed else "Response body is not valid JSON",
                duration_ms=_duration(),
            )

        return AttemptRecord(
            index=index,
            kind=OutcomeKind.HTTP_ERROR,
            http_status=response.status_code,
            body=parsed_body,
            body_parsed=parsed,
            error=f"HTTP {response.status_code}",
            duration_ms=_duration(),
        )
