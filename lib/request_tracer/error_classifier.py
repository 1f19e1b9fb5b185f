"""
Maps provider failure messages to coarse error categories for analytics.

Keyword groups are checked in order and the first match wins. Network is
checked before timeout so "dial tcp: connection timeout" is a network error,
and a timeout mentioning 504 is a server error (504 Gateway Timeout).
"""
from typing import Optional, Union

from lib.request_tracer.models import ErrorType

RATE_LIMIT_KEYWORDS = ("rate limit", "too many requests", "429")
AUTHENTICATION_KEYWORDS = ("unauthorized", "authentication", "api key", "401", "403", "forbidden")
NETWORK_KEYWORDS = ("connection", "network", "dial tcp", "dns", "no such host")
TIMEOUT_KEYWORDS = ("timeout", "deadline exceeded", "context canceled")
INVALID_REQUEST_KEYWORDS = ("invalid", "bad request", "400", "malformed")
SERVER_ERROR_KEYWORDS = ("500", "502", "503", "504", "server error", "internal error")


def error_message(error: Optional[Union[BaseException, str]]) -> str:
    """
    Text of an error as stored on a request record.

    Exceptions with an empty message fall back to their class name so a bare
    ``TimeoutError()`` still carries something to classify.
    """
    if error is None:
        return ""
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


def _contains_any(text: str, keywords) -> bool:
    return any(keyword in text for keyword in keywords)


def categorize_error(error: Optional[Union[BaseException, str]]) -> ErrorType:
    """
    Classify an error into an ErrorType.

    Args:
        error: An exception, a raw error message, or None

    Returns:
        ErrorType.NONE for no error, otherwise the first matching category
    """
    message = error_message(error)
    if not message:
        return ErrorType.NONE

    text = message.lower()

    if _contains_any(text, RATE_LIMIT_KEYWORDS):
        return ErrorType.RATE_LIMIT

    if _contains_any(text, AUTHENTICATION_KEYWORDS):
        return ErrorType.AUTHENTICATION

    if _contains_any(text, NETWORK_KEYWORDS):
        return ErrorType.NETWORK

    if _contains_any(text, TIMEOUT_KEYWORDS):
        if "504" in text:
            return ErrorType.SERVER_ERROR
        return ErrorType.TIMEOUT

    if _contains_any(text, INVALID_REQUEST_KEYWORDS):
        return ErrorType.INVALID_REQUEST

    if _contains_any(text, SERVER_ERROR_KEYWORDS):
        return ErrorType.SERVER_ERROR

    return ErrorType.UNKNOWN
