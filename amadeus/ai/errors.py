"""
Provider errors - One exception type for every way a turn can fail, plus the
in-character lines shown to the user for each failure kind.
"""

from enum import Enum
from typing import List, Optional


class ErrorKind(Enum):
    """Failure taxonomy surfaced to the conversation layer."""
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    RATE_LIMITED = "rate_limited"
    SERVER_FAULT = "server_fault"
    TIMEOUT = "timeout"
    NETWORK_UNREACHABLE = "network_unreachable"
    UNKNOWN_PROVIDER = "unknown_provider"
    DECODE_FAILURE = "decode_failure"
    ALL_REGIONS_EXHAUSTED = "all_regions_exhausted"
    STREAM_INTERRUPTED = "stream_interrupted"
    UNKNOWN = "unknown"


def classify_status(status: Optional[int]) -> ErrorKind:
    """Map an HTTP status code to an error kind."""
    if status in (401, 403):
        return ErrorKind.INVALID_CREDENTIAL
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status is not None and status >= 500:
        return ErrorKind.SERVER_FAULT
    return ErrorKind.UNKNOWN


class ProviderError(Exception):
    """A failed provider call: transport failure, bad status or undecodable body."""

    def __init__(self, message: str, status: Optional[int] = None,
                 raw_body: str = "", kind: Optional[ErrorKind] = None,
                 region: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.raw_body = raw_body
        self.kind = kind or classify_status(status)
        self.region = region

    @classmethod
    def from_response(cls, provider: str, status: int, raw_body: str,
                      region: Optional[str] = None) -> "ProviderError":
        where = f" ({region})" if region else ""
        return cls(f"{provider}{where} returned HTTP {status}", status=status,
                   raw_body=raw_body, region=region)

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.RATE_LIMITED, ErrorKind.SERVER_FAULT)

    def __repr__(self):
        return f"ProviderError(kind={self.kind.value}, status={self.status}, message={str(self)!r})"


class AllRegionsExhaustedError(ProviderError):
    """Every candidate region answered with a retryable failure."""

    def __init__(self, attempts: List["RegionAttempt"]):
        detail = "; ".join(f"{a.region}: {a.status if a.status is not None else a.outcome.value}"
                           for a in attempts)
        last_status = attempts[-1].status if attempts else None
        super().__init__(f"All regions failed ({len(attempts)}). Errors: {detail}",
                         status=last_status, kind=ErrorKind.ALL_REGIONS_EXHAUSTED)
        self.attempts = attempts


# Lines the character says when a turn fails
ERROR_MESSAGES = {
    ErrorKind.MISSING_CREDENTIAL: "...You haven't given me an API key. Open the settings and enter one, then we can talk.",
    ErrorKind.INVALID_CREDENTIAL: "That API key was rejected. Check it in the settings. I can't do anything with a wrong key.",
    ErrorKind.RATE_LIMITED: "Too many requests at once. Give it a moment before asking again.",
    ErrorKind.SERVER_FAULT: "The server on the other end is having trouble. It's not my fault, so try again later.",
    ErrorKind.TIMEOUT: "No answer in time. The connection must be slow... try once more.",
    ErrorKind.NETWORK_UNREACHABLE: "I can't reach the network. Check your connection.",
    ErrorKind.UNKNOWN_PROVIDER: "That AI service isn't one I know how to talk to. Pick another one in the settings.",
    ErrorKind.DECODE_FAILURE: "[Parse Error] I couldn't make sense of the reply I got. Say that again?",
    ErrorKind.ALL_REGIONS_EXHAUSTED: "Every server region I tried is busy. Wait a little and try again.",
    ErrorKind.STREAM_INTERRUPTED: "...The connection dropped in the middle of my answer. Sorry, ask me again.",
}
DEFAULT_ERROR_MESSAGE = "Something went wrong and I can't answer right now. Try again in a bit."

ERROR_EMOTION = "ANGRY"


def user_message_for(error: BaseException) -> str:
    """Pick the in-character message for an error."""
    kind = getattr(error, "kind", ErrorKind.UNKNOWN)
    return ERROR_MESSAGES.get(kind, DEFAULT_ERROR_MESSAGE)
