"""
Response helpers for the settlement endpoints.

Success payloads carry ``success: true`` plus the operation's fields;
error payloads carry ``success: false``, a human-readable ``error`` and
a machine-readable ``code``.
"""

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """
    Error payload returned by every endpoint on failure.

    Attributes:
        success: Always False
        error: Detailed error message
        code: Error code (e.g., "NOT_FOUND", "SETTLEMENT_FAILED")
        details: Optional extra diagnostic information
    """
    success: bool = Field(default=False)
    error: str = Field(..., description="Detailed error message")
    code: str = Field(..., description="Error code")
    details: Optional[Any] = Field(default=None, description="Extra diagnostics")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "success": False,
                "error": "Position is not open",
                "code": "INVALID_STATE",
                "details": None
            }
        }
    )


def success_response(**data: Any) -> dict:
    """
    Create a success response.

    Args:
        **data: Response fields

    Returns:
        dict: Success payload

    Example:
        >>> success_response(imported=3, skipped=1, total=4)
        {"success": True, "imported": 3, "skipped": 1, "total": 4}
    """
    return {"success": True, **data}


def error_response(
    error_code: str,
    error_message: str,
    details: Any = None
) -> dict:
    """
    Create an error response.

    Args:
        error_code: Specific error code
        error_message: Detailed error message
        details: Optional diagnostics (omitted when None)

    Returns:
        dict: Error payload
    """
    response = {
        "success": False,
        "error": error_message,
        "code": error_code,
    }
    if details is not None:
        response["details"] = details
    return response
