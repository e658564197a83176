from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.business.companies.api import profiles_router, router as companies_router
from app.business.notifications.api import router as notifications_router
from app.business.requests.api import router as requests_router
from app.business.workflows.api import router as workflows_router
from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(companies_router, prefix="/api")
router.include_router(profiles_router, prefix="/api")
router.include_router(requests_router, prefix="/api")
router.include_router(workflows_router, prefix="/api")
router.include_router(notifications_router, prefix="/api")


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "company_id": user.company_id,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
