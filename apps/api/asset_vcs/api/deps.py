"""
Request dependencies shared by the API routers.
"""

from fastapi import HTTPException, Request, status

from ..services.version_control_service import VersionControlService


def get_service(request: Request) -> VersionControlService:
    """Version control service attached to the application at startup."""
    service = getattr(request.app.state, "vcs_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "vcs.unavailable", "message": "Version control service is not initialized"},
        )
    return service
