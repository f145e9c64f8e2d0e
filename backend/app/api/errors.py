"""JSON rendering of API exceptions"""

from datetime import datetime, timezone

from fastapi import Request
from fastapi.responses import JSONResponse

from app.core.exceptions import BaseAPIException


def api_error_response(request: Request, exc: BaseAPIException) -> JSONResponse:
    """Render ``exc`` in the standard error envelope, with Retry-After when known."""
    response = JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.message,
            "details": exc.details,
            "path": request.url.path,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )
    retry_after = getattr(exc, "retry_after_seconds", None)
    if retry_after is not None:
        response.headers["Retry-After"] = str(retry_after)
    return response
