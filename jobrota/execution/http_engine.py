"""Execution engine adapter for a remote executor service over HTTP.

Posts every work item to ``POST {base_url}/execute`` and maps the response
onto the execution error taxonomy:

* **2xx** — the JSON body is parsed into an
  :class:`~jobrota.core.models.ExecutionOutcome`.
* **429** — :class:`~jobrota.core.exceptions.RateLimitError` (the account is
  throttled; never retried here, the escalation policy blocks it).
* **401 / 403** — :class:`~jobrota.core.exceptions.AuthenticationError`.
* **5xx and network errors** — retried with exponential back-off via
  :mod:`tenacity`, then :class:`~jobrota.core.exceptions.TransientExecutionError`.
* **other 4xx** — :class:`~jobrota.core.exceptions.PermanentJobError`.

Request body::

    {
        "job_id": "...", "job_type": "profile",
        "account_id": "...", "session_credential": "...",
        "work_item": ...
    }

Typical usage::

    async with HttpExecutionEngine("https://executor.internal", token="s3cr3t") as engine:
        outcome = await engine.execute(job, account, work_item)
"""

from __future__ import annotations

import logging
import random
import time
from typing import Any, Final

import httpx
from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from jobrota.core.exceptions import (
    AuthenticationError,
    PermanentJobError,
    RateLimitError,
    TransientExecutionError,
)
from jobrota.core.models import Account, ExecutionOutcome, Job
from jobrota.core.settings import Settings
from jobrota.execution.base import ExecutionEngine

__all__ = ["HttpExecutionEngine"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: HTTP status codes that signal a transient server-side fault (safe to retry).
_RETRYABLE_STATUS: Final[frozenset[int]] = frozenset({500, 502, 503, 504})

#: HTTP status codes meaning the account session was rejected.
_AUTH_STATUS: Final[frozenset[int]] = frozenset({401, 403})

#: Default connection timeout in seconds.
_DEFAULT_CONNECT_TIMEOUT: Final[float] = 10.0

#: Default timeout for one executor response; executions can be slow.
_DEFAULT_READ_TIMEOUT: Final[float] = 110.0

#: Default total attempts (1 initial + 2 retries).
_DEFAULT_MAX_ATTEMPTS: Final[int] = 3

#: Hard cap on exponential back-off base before adding jitter (seconds).
_MAX_BACKOFF_BASE: Final[float] = 8.0

#: Upper bound on jitter added on top of the exponential base (seconds).
_MAX_BACKOFF_JITTER: Final[float] = 1.0

_EXECUTE_PATH: Final[str] = "/execute"


class _RetryableServerError(TransientExecutionError):
    """Internal: signals a 5xx status for tenacity to retry.

    Never escapes :meth:`HttpExecutionEngine.execute`.
    """


def _executor_wait(retry_state: RetryCallState) -> float:
    """Exponential back-off with random jitter: 1 s, 2 s, 4 s, … capped."""
    attempt = max(retry_state.attempt_number, 1)
    base = min(2.0 ** (attempt - 1), _MAX_BACKOFF_BASE)
    return base + random.uniform(0.0, min(base, _MAX_BACKOFF_JITTER))


class HttpExecutionEngine(ExecutionEngine):
    """Execution engine that delegates to a remote executor over HTTP.

    Args:
        base_url: Executor service base URL (no trailing slash needed).
        token: Bearer token sent in the ``Authorization`` header.
        max_attempts: Total attempts for transport errors and 5xx responses.
        connect_timeout: TCP connection establishment timeout in seconds.
        read_timeout: Timeout waiting for the executor's response.
        transport: Optional custom :class:`httpx.AsyncBaseTransport`
            (e.g. :class:`httpx.MockTransport` in tests).

    Raises:
        ValueError: If ``base_url`` is empty or ``max_attempts`` < 1.
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        connect_timeout: float = _DEFAULT_CONNECT_TIMEOUT,
        read_timeout: float = _DEFAULT_READ_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url must not be empty.")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be ≥ 1, got {max_attempts!r}.")
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._max_attempts = max_attempts
        self._timeout = httpx.Timeout(
            connect=connect_timeout,
            read=read_timeout,
            write=10.0,
            pool=5.0,
        )
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> HttpExecutionEngine:
        """Build an engine from the ``EXECUTION_ENGINE_*`` settings."""
        return cls(
            settings.execution_engine_url,
            token=settings.execution_engine_token,
            max_attempts=settings.execution_engine_max_attempts,
            read_timeout=settings.execution_timeout_seconds,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client.  Safe to call repeatedly."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            logger.debug("HttpExecutionEngine session closed.")
        self._http = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            headers = {"Accept": "application/json"}
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            self._http = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers=headers,
                transport=self._transport,
            )
            logger.debug("HttpExecutionEngine session opened (base_url=%r).", self._base_url)
        return self._http

    # ------------------------------------------------------------------
    # Core contract
    # ------------------------------------------------------------------

    async def execute(self, job: Job, account: Account, work_item: Any) -> ExecutionOutcome:
        """POST the work item to the executor and return its outcome."""
        body = {
            "job_id": job.id,
            "job_type": str(job.job_type),
            "account_id": account.id,
            "session_credential": account.session_credential,
            "work_item": work_item,
        }

        def _before_sleep(rs: RetryCallState) -> None:
            exc = rs.outcome.exception() if rs.outcome else None
            logger.warning(
                "Executor call for account %s — attempt %d/%d failed (%s). Retrying…",
                account.id,
                rs.attempt_number,
                self._max_attempts,
                type(exc).__name__ if exc else "?",
            )

        started = time.monotonic()
        response: httpx.Response | None = None
        try:
            async for attempt in AsyncRetrying(
                wait=_executor_wait,
                stop=stop_after_attempt(self._max_attempts),
                retry=retry_if_exception_type((_RetryableServerError, httpx.TransportError)),
                reraise=True,
                before_sleep=_before_sleep,
            ):
                with attempt:
                    response = await self._single_request(account.id, body)
        except _RetryableServerError as exc:
            raise TransientExecutionError(account.id, str(exc)) from exc
        except httpx.TransportError as exc:
            raise TransientExecutionError(
                account.id, f"Executor unreachable: {type(exc).__name__}: {exc}"
            ) from exc

        assert response is not None, "tenacity exited without a response or exception"
        latency_ms = int((time.monotonic() - started) * 1000)
        return self._parse_outcome(account.id, response, latency_ms)

    async def _single_request(self, account_id: str, body: dict[str, Any]) -> httpx.Response:
        """Perform exactly one POST and map non-2xx statuses to exceptions."""
        client = self._ensure_client()
        response = await client.post(_EXECUTE_PATH, json=body)

        logger.debug(
            "POST %s%s → %d for account %s",
            self._base_url,
            _EXECUTE_PATH,
            response.status_code,
            account_id,
        )

        if response.is_success:
            return response
        if response.status_code == 429:
            raise RateLimitError(account_id, retry_after=_parse_retry_after(response))
        if response.status_code in _AUTH_STATUS:
            raise AuthenticationError(
                account_id, f"Session rejected (HTTP {response.status_code})"
            )
        if response.status_code in _RETRYABLE_STATUS:
            raise _RetryableServerError(
                account_id, f"Transient HTTP {response.status_code} from executor"
            )
        raise PermanentJobError(
            account_id,
            f"HTTP {response.status_code} from executor: {response.text[:200]}",
        )

    @staticmethod
    def _parse_outcome(account_id: str, response: httpx.Response, latency_ms: int) -> ExecutionOutcome:
        try:
            data = response.json()
        except ValueError as exc:
            raise TransientExecutionError(account_id, "Executor returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise TransientExecutionError(account_id, "Executor returned an unexpected body")
        try:
            outcome = ExecutionOutcome.model_validate({"success": True, **data})
        except ValidationError as exc:
            raise TransientExecutionError(
                account_id, f"Executor returned an invalid outcome: {exc.error_count()} error(s)"
            ) from exc
        if outcome.latency_ms is None:
            outcome = outcome.model_copy(update={"latency_ms": latency_ms})
        return outcome


def _parse_retry_after(response: httpx.Response) -> float | None:
    """Extract the ``Retry-After`` header in seconds, if present and numeric."""
    header = response.headers.get("retry-after", "")
    if not header:
        return None
    try:
        return max(float(header), 0.0)
    except ValueError:
        logger.debug("Could not parse Retry-After header %r.", header)
        return None
