"""Error handling helpers for API responses.

Stack traces stay in the server log; clients get a short message and, for
application errors, a status code derived from the exception type.
"""

import logging
from typing import Any, Dict

from fastapi import HTTPException

from dockwatch.exceptions import (
    DockwatchError,
    NotFoundError,
    RateLimitExceededError,
    RemoteAPIError,
    UpgradeError,
    UpgradeInProgressError,
    ValidationError,
)

# Most specific first
STATUS_CODES = (
    (UpgradeInProgressError, 409),
    (ValidationError, 400),
    (NotFoundError, 404),
    (RateLimitExceededError, 429),
    (RemoteAPIError, 502),
    (UpgradeError, 500),
)


def safe_error_response(
    logger_instance: logging.Logger,
    error: Exception,
    user_message: str,
    status_code: int = 500,
    log_level: str = "error",
) -> None:
    """Log full error details server-side and raise generic HTTPException for user.

    Args:
        logger_instance: Logger instance to use for server-side logging
        error: The exception that was caught
        user_message: Generic message to show to the user
        status_code: HTTP status code for the response (default: 500)
        log_level: Logging level to use (error, warning, info)

    Raises:
        HTTPException: With the user_message as detail
    """
    log_method = getattr(logger_instance, log_level, logger_instance.error)
    log_method(f"{user_message}: {type(error).__name__}", exc_info=True)
    raise HTTPException(status_code=status_code, detail=user_message)


def status_code_for(error: DockwatchError) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def error_body(error: DockwatchError) -> Dict[str, Any]:
    """JSON body for an application error.

    Upgrade failures carry the failed step and recent container logs.
    """
    body: Dict[str, Any] = {"detail": str(error)}
    if isinstance(error, UpgradeError):
        body["step"] = error.step
        body["logs"] = error.logs
    elif isinstance(error, UpgradeInProgressError):
        body["container_id"] = error.container_id
    elif isinstance(error, RateLimitExceededError) and error.retry_after is not None:
        body["retry_after"] = error.retry_after
    return body
