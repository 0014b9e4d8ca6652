"""Classification of provisioning API errors.

Provisioning APIs are not idempotent: a create may report that the object
already exists because an earlier, unobserved attempt succeeded, and a delete
may report that the object is gone. These races mean the desired state was
reached and must be treated as success.

All matching on error codes and message text lives in this module so that
provider wording changes are fixed in one place.
"""

from __future__ import annotations

import logging
from enum import Enum

from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    """The kind of call that produced an error."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CONFIRM_WRITE = "confirm_write"  # describe after create/update
    CONFIRM_DELETE = "confirm_delete"  # describe after delete


class Disposition(str, Enum):
    """How the caller must treat an error."""

    IGNORABLE = "ignorable"  # desired state already holds
    RETRYABLE = "retryable"  # observe again later
    FATAL = "fatal"  # stop and record the failure


ALREADY_EXISTS_CODES: frozenset[str] = frozenset({
    "ResourceExistsException",
    "AlreadyExistsException",
    "EntityAlreadyExists",
})

# Codes that only mean "already exists" when the message says so
CONFLICT_CODES: frozenset[str] = frozenset({
    "ConflictException",
    "ValidationException",
    "ActiveStatementsExceededException",
})

NOT_FOUND_CODES: frozenset[str] = frozenset({
    "NotFoundException",
    "ResourceNotFoundException",
    "NoSuchKey",
    "NoSuchEntity",
    "404",
})

THROTTLING_CODES: frozenset[str] = frozenset({
    "ThrottlingException",
    "TooManyRequestsException",
    "Throttling",
    "RequestLimitExceeded",
})

ALREADY_EXISTS_MESSAGE = "already exists"
NOT_FOUND_MESSAGES = ("not found", "does not exist")
IDENTICAL_VALUE_MESSAGE = "identical to the current value"


def error_code(error: BaseException) -> str:
    """Return the provider error code of an exception, or its class name."""
    if isinstance(error, ClientError):
        return str(error.response.get("Error", {}).get("Code", ""))
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code
    return type(error).__name__


def error_message(error: BaseException) -> str:
    """Return the provider error message of an exception."""
    if isinstance(error, ClientError):
        message = error.response.get("Error", {}).get("Message")
        if message:
            return str(message)
    return str(error)


def _message_applies(error: BaseException) -> bool:
    # SDK errors carry codes; only generic codes fall back to message text.
    # Statement failures have no SDK code and are matched on text alone.
    return not isinstance(error, ClientError) or error_code(error) in CONFLICT_CODES


def is_already_exists(error: BaseException) -> bool:
    if error_code(error) in ALREADY_EXISTS_CODES:
        return True
    return _message_applies(error) and ALREADY_EXISTS_MESSAGE in error_message(error).lower()


def is_not_found(error: BaseException) -> bool:
    if error_code(error) in NOT_FOUND_CODES:
        return True
    message = error_message(error).lower()
    return _message_applies(error) and any(m in message for m in NOT_FOUND_MESSAGES)


def is_identical_value(error: BaseException) -> bool:
    return IDENTICAL_VALUE_MESSAGE in error_message(error).lower()


def classify(operation: OperationKind, error: BaseException, *, strict: bool = False) -> Disposition:
    """Decide whether a provisioning error is a benign race.

    Args:
        operation: The call that raised the error.
        error: The raised exception.
        strict: Treat "already exists" on create as fatal, for kinds that
            must never adopt an object they did not create.

    Returns:
        The disposition the caller must apply.
    """
    match operation:
        case OperationKind.CREATE:
            if is_already_exists(error):
                return Disposition.FATAL if strict else Disposition.IGNORABLE
        case OperationKind.UPDATE:
            if is_identical_value(error):
                return Disposition.IGNORABLE
            if is_not_found(error):
                return Disposition.FATAL
        case OperationKind.DELETE | OperationKind.CONFIRM_DELETE:
            if is_not_found(error):
                return Disposition.IGNORABLE
            if operation == OperationKind.CONFIRM_DELETE and error_code(error) in THROTTLING_CODES:
                return Disposition.RETRYABLE
        case OperationKind.CONFIRM_WRITE:
            if is_not_found(error) or error_code(error) in THROTTLING_CODES:
                return Disposition.RETRYABLE

    logger.debug(
        "Error classified as fatal",
        extra={"operation": operation.value, "code": error_code(error)},
    )
    return Disposition.FATAL
