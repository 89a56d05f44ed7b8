"""
Entitlements endpoints.

Clients use these for UX hints; enforcement on the gated endpoints stays
authoritative.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from bookclub.api.schemas.entitlements import (
    EntitlementsResponse,
    InvalidateResponse,
    LimitCheckResponse,
    PermissionCheckResponse,
    build_enforcement_response,
)
from bookclub.entitlements.limits import LIMIT_TYPES
from bookclub.entitlements.middleware import (
    AuthenticatedUser,
    get_entitlement_service,
    permission_dependency,
    with_auth,
    with_platform_admin,
)
from bookclub.platform.errors import ValidationError

router = APIRouter(prefix="/entitlements", tags=["entitlements"])

authenticated = permission_dependency(with_auth())
platform_admin = permission_dependency(with_platform_admin())


@router.get("/me", response_model=EntitlementsResponse)
async def get_my_entitlements(
    request: Request,
    refresh: bool = Query(False, description="Recalculate instead of using the cache"),
    user: AuthenticatedUser = Depends(authenticated),
) -> EntitlementsResponse:
    entitlements = await get_entitlement_service(request).get_user_entitlements(user.user_id, force_refresh=refresh)
    return EntitlementsResponse(user_id=user.user_id, entitlements=entitlements)


@router.get("/check", response_model=PermissionCheckResponse)
async def check_permission(
    request: Request,
    entitlement: str = Query(..., min_length=1),
    context_id: Optional[str] = Query(None),
    user: AuthenticatedUser = Depends(authenticated),
) -> PermissionCheckResponse:
    granted = await get_entitlement_service(request).check_permission(user.user_id, entitlement, context_id)
    return PermissionCheckResponse(
        user_id=user.user_id, entitlement=entitlement, context_id=context_id, granted=granted
    )


@router.get("/limits/{limit_type}", response_model=LimitCheckResponse)
async def check_limit(
    request: Request,
    limit_type: str,
    club_id: Optional[str] = Query(None),
    store_id: Optional[str] = Query(None),
    target_user_id: Optional[str] = Query(None),
    content_type: str = Query("premium"),
    user: AuthenticatedUser = Depends(authenticated),
):
    if limit_type not in LIMIT_TYPES:
        raise ValidationError(f"Unknown limit type: {limit_type}")

    result = await get_entitlement_service(request).limits.enforce_membership_limit(
        limit_type,
        {
            "user_id": user.user_id,
            "club_id": club_id,
            "store_id": store_id,
            "target_user_id": target_user_id,
            "content_type": content_type,
        },
    )
    if not result.allowed:
        return build_enforcement_response(result)
    return LimitCheckResponse(limit_type=limit_type, allowed=True)


@router.post("/{user_id}/invalidate", response_model=InvalidateResponse)
async def invalidate_entitlements(
    request: Request,
    user_id: str,
    _: AuthenticatedUser = Depends(platform_admin),
) -> InvalidateResponse:
    get_entitlement_service(request).invalidate_user_entitlements(user_id)
    return InvalidateResponse(user_id=user_id)
