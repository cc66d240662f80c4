"""
Error handling utilities for version control API endpoints.

Maps the typed version control errors onto HTTP responses so every endpoint
reports failures the same way.
"""

import functools
from typing import Callable, Optional

import structlog
from fastapi import HTTPException, status

from ..core.exceptions import VersionControlError

logger = structlog.get_logger(__name__)


class VCSErrorHandler:
    """Centralized error mapping for version control operations."""

    @staticmethod
    def get_http_status(error: VersionControlError) -> int:
        return error.http_status

    @staticmethod
    def format_error_detail(error: VersionControlError) -> dict:
        return error.to_dict()


def handle_vcs_errors(
    operation: Optional[str] = None,
    log_errors: bool = True,
    default_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
):
    """
    Decorator for handling version control errors in API endpoints.

    Usage:
        @handle_vcs_errors(operation="create_branch")
        async def create_branch(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)

            except HTTPException:
                raise

            except VersionControlError as e:
                if log_errors:
                    logger.warning(
                        f"vcs_{operation or 'operation'}_failed",
                        code=e.code,
                        error=e.message,
                        status_code=e.http_status,
                    )
                raise HTTPException(
                    status_code=VCSErrorHandler.get_http_status(e),
                    detail=VCSErrorHandler.format_error_detail(e),
                )

            except ValueError as e:
                if log_errors:
                    logger.warning(f"vcs_{operation or 'operation'}_validation_failed", error=str(e))
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail={"code": "vcs.validation_error", "message": str(e)},
                )

            except Exception as e:
                if log_errors:
                    logger.error(
                        f"vcs_{operation or 'operation'}_unexpected_error",
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                # Internals stay out of the response
                raise HTTPException(
                    status_code=default_status,
                    detail={
                        "code": "vcs.internal_error",
                        "message": "An unexpected error occurred",
                    },
                )

        return wrapper
    return decorator
