"""Exception types raised by the gateway."""

from __future__ import annotations


class GatewayError(Exception):
    """A terminal failure talking to the inference server.

    ``status_code`` is the HTTP status when one was received.  ``retryable``
    is always ``False`` once the error reaches a caller: retries already
    happened inside the transport.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        self.cause = cause


class RequestCancelledError(GatewayError):
    """The caller raised its cancellation signal before a response arrived."""

    def __init__(self, operation: str) -> None:
        super().__init__(f"{operation} cancelled by caller")


class ConfigError(GatewayError):
    """Configuration cannot be used to build requests."""
