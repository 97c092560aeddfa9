"""HTTP transport with bounded retries and exponential backoff."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any

import httpx

from llm_gateway.errors import GatewayError, RequestCancelledError

_logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Exceptions treated as transient: timeouts, resets, refused connections and
# dropped streams.  Anything else raised by httpx is fatal.
_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    asyncio.TimeoutError,
)

_MAX_JITTER = 0.3


@dataclass(frozen=True)
class RetryPolicy:
    """Retry bounds.  Delays are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    jitter: float | None = None,
) -> float:
    """Delay before retrying after 0-indexed *attempt*.

    ``min(base * 2**attempt * (1 + jitter), max_delay)`` with jitter drawn
    uniformly from [0, 0.3) unless given.
    """
    if jitter is None:
        jitter = random.random() * _MAX_JITTER
    return min(base_delay * (2 ** attempt) * (1 + jitter), max_delay)


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES


def is_transient_error(error: BaseException) -> bool:
    return isinstance(error, _TRANSIENT_ERRORS)


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    delay: float
    status_code: int | None = None
    error: BaseException | None = None


class RetryingTransport:
    """Send requests through an ``httpx.AsyncClient`` with retries.

    The returned response is always opened in streaming mode; the caller
    owns it and must close it (``await response.aclose()``).  Non-retryable
    statuses are returned as-is so the caller can read the body.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: RetryPolicy | None = None,
        timeout: float = 60.0,
    ) -> None:
        self._client = client
        self.policy = policy or RetryPolicy()
        self.timeout = timeout

    async def send(
        self,
        method: str,
        url: str,
        operation: str,
        *,
        headers: dict[str, str] | None = None,
        json: Any = None,
        cancel_event: asyncio.Event | None = None,
    ) -> httpx.Response:
        """Issue the request, retrying transient failures.

        Raises
        ------
        RequestCancelledError
            If *cancel_event* is set before a response is obtained.
        GatewayError
            On a fatal error or once all attempts are exhausted.
        """
        last: RetryAttempt | None = None
        max_attempts = self.policy.max_attempts

        for attempt in range(max_attempts):
            if cancel_event is not None and cancel_event.is_set():
                raise RequestCancelledError(operation)

            request = self._client.build_request(
                method, url, headers=headers, json=json,
            )
            try:
                response = await asyncio.wait_for(
                    self._client.send(request, stream=True),
                    timeout=self.timeout,
                )
            except _TRANSIENT_ERRORS as e:
                last = RetryAttempt(attempt, self._delay(attempt), error=e)
                if attempt + 1 >= max_attempts:
                    break
                _logger.info(
                    "%s failed with error: %s, retrying in %.2fs (attempt %d/%d)",
                    operation, _describe(e), last.delay, attempt + 1,
                    self.policy.max_retries,
                )
                await self._sleep(last.delay, cancel_event, operation)
                continue
            except httpx.HTTPError as e:
                _logger.error(
                    "%s failed with non-retryable error after %d attempt(s): %s",
                    operation, attempt + 1, _describe(e),
                )
                raise GatewayError(
                    f"{operation} failed after {attempt + 1} attempts: {_describe(e)}",
                    cause=e,
                ) from e

            if not is_retryable_status(response.status_code):
                return response

            await response.aclose()
            last = RetryAttempt(
                attempt, self._delay(attempt), status_code=response.status_code,
            )
            if attempt + 1 >= max_attempts:
                break
            _logger.info(
                "%s failed with status %d, retrying in %.2fs (attempt %d/%d)",
                operation, response.status_code, last.delay, attempt + 1,
                self.policy.max_retries,
            )
            await self._sleep(last.delay, cancel_event, operation)

        status = last.status_code if last else None
        cause = last.error if last else None
        detail = f": {_describe(cause)}" if cause else f" (last status {status})"
        _logger.error("%s exhausted %d attempts%s", operation, max_attempts, detail)
        raise GatewayError(
            f"{operation} failed after {max_attempts} attempts{detail}",
            status_code=status,
            retryable=False,
            cause=cause,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _delay(self, attempt: int) -> float:
        return backoff_delay(
            attempt, self.policy.base_delay, self.policy.max_delay,
        )

    @staticmethod
    async def _sleep(
        delay: float,
        cancel_event: asyncio.Event | None,
        operation: str,
    ) -> None:
        if cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RequestCancelledError(operation)


def _describe(error: BaseException) -> str:
    text = str(error)
    if text:
        return text
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return f"{type(error).__name__}: request timed out"
    return type(error).__name__
