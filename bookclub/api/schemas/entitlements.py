"""
Pydantic schemas for the entitlements API.

Enforcement rejections keep the standard ``{"error": {...}}`` envelope and
carry upgrade and limit information inside ``details``.
"""

from typing import List, Optional

from pydantic import BaseModel, Field
from starlette.responses import JSONResponse

from bookclub.entitlements.limits import EnforcementResult


class EntitlementsResponse(BaseModel):
    """Resolved capabilities for the current user."""

    user_id: str = Field(..., description="Authenticated user id")
    entitlements: List[str] = Field(..., description="Flat capability list, global and contextual")


class PermissionCheckResponse(BaseModel):
    user_id: str
    entitlement: str
    context_id: Optional[str] = None
    granted: bool


class InvalidateResponse(BaseModel):
    user_id: str
    invalidated: bool = True


class UpgradeInfo(BaseModel):
    required: bool = True
    required_tier: str = Field(..., description="Lowest tier that permits the action")
    benefits: List[str] = Field(default_factory=list)
    upgrade_url: str = "/upgrade"


class LimitInfo(BaseModel):
    current: int
    limit: Optional[int] = None


class EnforcementDetails(BaseModel):
    upgrade: Optional[UpgradeInfo] = None
    limits: Optional[LimitInfo] = None
    store_restriction: Optional[bool] = None
    store_id: Optional[str] = None
    already_member: Optional[bool] = None
    club_type: Optional[str] = None
    content_type: Optional[str] = None
    target_restriction: Optional[bool] = None


class EnforcementError(BaseModel):
    code: str = "ENFORCEMENT_FAILED"
    message: str
    details: EnforcementDetails = Field(default_factory=EnforcementDetails)


class EnforcementErrorResponse(BaseModel):
    error: EnforcementError


class LimitCheckResponse(BaseModel):
    limit_type: str
    allowed: bool = True


def build_enforcement_response(result: EnforcementResult) -> JSONResponse:
    """Render a denied EnforcementResult as an error response."""
    error = result.to_error()
    body = EnforcementErrorResponse(
        error=EnforcementError(
            code=error.code,
            message=error.message,
            details=EnforcementDetails(**error.details),
        )
    )
    return JSONResponse(status_code=error.status_code, content=body.model_dump(exclude_none=True))
