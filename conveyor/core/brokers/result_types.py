"""Typed error types for storage, queue and event-bus operations.

Result propagation policy
-------------------------
* **Broker layer** (queue, record store, event bus) returns
  ``BrokerResult[T]``. It never raises for operational failures, only for
  ``asyncio.CancelledError`` and programming errors.

* **Admission** branches on the ``Err`` values: dependency failures become
  ``DEPENDENCY_UNAVAILABLE`` rejections and count against the breaker.

* **Worker** converts ``Err`` into ``BrokerUnavailableError`` via
  ``unwrap_or_raise``; the exception escapes per-entry handling and is
  absorbed at batch scope (log, cool down, continue).

* **Process boundaries** (CLI startup checks) convert ``Err`` into a
  ``StartupError`` and exit non-zero.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from conveyor.core.types.result import Result, is_err
from conveyor.core.utils.db import is_retryable_connection_error


class BrokerErrorCode(str, Enum):
    """Categorized broker operation failure codes."""

    SCHEMA_INIT_FAILED = 'SCHEMA_INIT_FAILED'
    HEALTH_CHECK_FAILED = 'HEALTH_CHECK_FAILED'
    APPEND_FAILED = 'APPEND_FAILED'
    GROUP_CREATE_FAILED = 'GROUP_CREATE_FAILED'
    READ_FAILED = 'READ_FAILED'
    ACK_FAILED = 'ACK_FAILED'
    CLAIM_FAILED = 'CLAIM_FAILED'
    TOUCH_FAILED = 'TOUCH_FAILED'
    DEPTH_QUERY_FAILED = 'DEPTH_QUERY_FAILED'
    TRIM_FAILED = 'TRIM_FAILED'
    RECORD_WRITE_FAILED = 'RECORD_WRITE_FAILED'
    RECORD_QUERY_FAILED = 'RECORD_QUERY_FAILED'
    PUBLISH_FAILED = 'PUBLISH_FAILED'
    LISTENER_START_FAILED = 'LISTENER_START_FAILED'
    LISTENER_SUBSCRIBE_FAILED = 'LISTENER_SUBSCRIBE_FAILED'


@dataclass(slots=True, frozen=True)
class BrokerOperationError:
    """Error payload carried inside Err(...) for broker operations.

    Fields:
        code: which operation category failed
        message: human-readable description
        retryable: whether the caller can retry this operation
        exception: the original cause (if any)
    """

    code: BrokerErrorCode
    message: str
    retryable: bool
    exception: BaseException | None = None


type BrokerResult[T] = Result[T, BrokerOperationError]


class BrokerUnavailableError(Exception):
    """Raised by callers that cannot continue after a broker ``Err``."""

    def __init__(self, error: BrokerOperationError) -> None:
        super().__init__(f'{error.code.value}: {error.message}')
        self.error = error


def unwrap_or_raise[T](result: BrokerResult[T]) -> T:
    """Return the Ok value or raise ``BrokerUnavailableError`` chained to the cause."""
    if is_err(result):
        err = result.err_value
        raise BrokerUnavailableError(err) from err.exception
    return result.ok_value


def broker_error(
    code: BrokerErrorCode, message: str, exc: BaseException
) -> BrokerOperationError:
    """Wrap a caught driver exception, classifying it as retryable or not."""
    return BrokerOperationError(
        code=code,
        message=f'{message}: {exc}',
        retryable=is_retryable_connection_error(exc),
        exception=exc,
    )
