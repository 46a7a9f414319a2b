"""
Retry utilities for handling transient failures.

Only connection establishment is retried. Directory operations on an open
connection are attempted once; the executor decides what a failure means.
"""

import time
import logging
from typing import Callable, Any, Tuple, Type, Optional

from ldap3.core.exceptions import (
    LDAPSocketOpenError,
    LDAPSocketReceiveError,
    LDAPSocketSendError,
    LDAPSessionTerminatedByServerError,
    LDAPResponseTimeoutError,
    LDAPCommunicationError,
)

logger = logging.getLogger(__name__)

# Exceptions that mean the server could not be reached, as opposed to a rejected request
TRANSIENT_LDAP_EXCEPTIONS = (
    LDAPSocketOpenError,
    LDAPSocketReceiveError,
    LDAPSocketSendError,
    LDAPSessionTerminatedByServerError,
    LDAPResponseTimeoutError,
    LDAPCommunicationError,
    ConnectionError,
    TimeoutError,
)


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    sleep: Callable[[float], None] = time.sleep
) -> Any:
    """
    Call a function with retry logic.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts
        delay: Initial delay between retries
        backoff: Delay multiplier for exponential backoff
        exceptions: Exception types to catch and retry on
        on_retry: Optional callback for retry events
        sleep: Function used to wait between attempts

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all retry attempts fail
    """
    if kwargs is None:
        kwargs = {}

    last_exception = None
    current_delay = delay

    for attempt in range(max_attempts):
        try:
            result = func(*args, **kwargs)
            if attempt > 0:
                logger.info(f"Operation succeeded on attempt {attempt + 1}")
            return result

        except exceptions as e:
            last_exception = e

            if attempt == max_attempts - 1:
                break

            logger.debug(f"Attempt {attempt + 1} failed with {type(e).__name__}: {e}")
            logger.debug(f"Retrying in {current_delay:.1f} seconds...")

            if on_retry:
                try:
                    on_retry(attempt + 1, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            sleep(current_delay)
            current_delay *= backoff

    raise MaxRetriesExceeded(max_attempts, last_exception)


def create_retry_callback(operation_name: str) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                       f"retrying due to {type(exception).__name__}: {exception}")

    return on_retry
