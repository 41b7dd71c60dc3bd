"""Security utilities for the dispatch API.

This module provides standardized error responses (safe for production).
"""
import logging
from typing import Optional

from flask import current_app, jsonify


# =============================================================================
# Standardized Error Responses
# =============================================================================

def safe_error_response(
    message: str,
    exception: Optional[Exception] = None,
    status_code: int = 500,
    code: str = None,
    log_level: str = 'error',
    extra: Optional[dict] = None,
) -> tuple:
    """
    Create a standardized, safe error response.

    In production:
    - Only shows the safe message
    - Logs the full error server-side
    - Never exposes stack traces or internal details

    In debug mode:
    - Includes exception details for easier debugging

    Args:
        message: Safe error message for clients
        exception: The caught exception (optional)
        status_code: HTTP status code
        code: Optional error code for client parsing
        log_level: Logging level ('error', 'warning', 'info')
        extra: Additional safe fields to include in the payload

    Returns:
        Tuple of (response, status_code)
    """
    response = {'error': message}

    if code:
        response['code'] = code
    if extra:
        response.update(extra)

    # Log the error server-side
    logger = current_app.logger if current_app else logging.getLogger(__name__)
    log_message = f"{message}"
    if exception:
        log_message += f": {type(exception).__name__}: {exception}"

    log_func = getattr(logger, log_level, logger.error)
    log_func(log_message)

    # Only include details in debug mode
    if current_app and current_app.config.get('DEBUG') and exception:
        response['details'] = str(exception)
        response['exception_type'] = type(exception).__name__

    return jsonify(response), status_code


def error_404(message: str = "Not found", exception: Exception = None, code: str = None):
    """Not found error."""
    return safe_error_response(message, exception, 404, code, 'info')
