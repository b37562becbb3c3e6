"""
Mapping of service results onto HTTP responses
"""

from typing import Any, Dict

from fastapi import status
from fastapi.responses import JSONResponse


def workflow_result(result: Dict[str, Any], success_status: int = status.HTTP_200_OK):
    """Result dicts with success=False are expected workflow refusals (409)"""
    if result.get("success", True):
        return JSONResponse(status_code=success_status, content=result)
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=result)
