"""
Error taxonomy for the chat pipeline.

Provider failures are classified once, where they happen, and mapped to a
small stable vocabulary before anything reaches the client.
"""

from enum import Enum


class ErrorKind(str, Enum):
    CLIENT = "client"              # 4xx, terminal
    RATE_LIMITED = "rate_limited"  # 429, terminal
    SERVER = "server"              # 5xx, retryable
    NETWORK = "network"            # reset / abort, retryable
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class ProviderError(Exception):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.retryable = retryable

    @classmethod
    def from_status(cls, status_code: int, body: str = "") -> "ProviderError":
        message = f"Provider API error: {status_code} {body}".strip()
        if status_code == 429:
            return cls(ErrorKind.RATE_LIMITED, message, status_code=status_code)
        if 400 <= status_code < 500:
            return cls(ErrorKind.CLIENT, message, status_code=status_code)
        return cls(ErrorKind.SERVER, message, status_code=status_code, retryable=status_code >= 500)

    def to_payload(self) -> dict:
        return {"message": str(self), "kind": self.kind.value, "status_code": self.status_code}


# Stable client-facing vocabulary: code -> message
RATE_LIMIT = ("RATE_LIMIT", "Overloaded, please try again soon.")
SERVER_ERROR = ("SERVER_ERROR", "Server error, please try again later.")
TIMEOUT = ("TIMEOUT", "Request timed out. Please try again with a shorter message.")
PROVIDER_ERROR = ("PROVIDER_ERROR", "Service temporarily unavailable. Please try again.")
GENERIC_ERROR = ("INTERNAL_ERROR", "An error occurred while processing your request.")


def user_facing(error: BaseException) -> tuple[str, str]:
    """Map an internal failure to a (code, message) pair safe to show a client."""
    if not isinstance(error, ProviderError):
        return GENERIC_ERROR
    if error.kind is ErrorKind.RATE_LIMITED:
        return RATE_LIMIT
    if error.kind is ErrorKind.TIMEOUT:
        return TIMEOUT
    if error.kind is ErrorKind.SERVER or (error.status_code or 0) >= 500:
        return SERVER_ERROR
    return PROVIDER_ERROR
