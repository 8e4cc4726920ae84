from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from partnerhub.authz.api import admin_router
from partnerhub.authz.permissions import ADMIN_SYSTEM
from partnerhub.core.auth import ActorUser, AuthUser, get_current_user
from partnerhub.core.config import get_settings
from partnerhub.core.rbac import require_permissions
from partnerhub.metrics import generate_metrics_payload, metrics_content_type
from partnerhub.referrals.api import clients_router, prospects_router

router = APIRouter()
router.include_router(prospects_router)
router.include_router(clients_router)
router.include_router(admin_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(_actor: ActorUser = Depends(require_permissions(ADMIN_SYSTEM))) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
