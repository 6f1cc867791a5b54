from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from salesdesk.core.auth import AuthUser, get_current_user
from salesdesk.core.config import get_settings
from salesdesk.crm.api import clients_router, deals_router, notifications_router, pricing_router
from salesdesk.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(deals_router)
router.include_router(clients_router)
router.include_router(notifications_router)
router.include_router(pricing_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str]:
    return {
        "user_id": user.user_id,
        "organization_id": user.organization_id,
        "role": user.role,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing role: ADMIN")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
