from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from pipecd_api.core.config import get_settings
from pipecd_api.core.context import request_identity
from pipecd_api.metrics import generate_metrics_payload, metrics_content_type
from pipecd_api.platform.security import Identity

router = APIRouter()


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(identity: Identity | None = Depends(request_identity)) -> dict[str, str | bool | None]:
    if identity is None:
        return {"authenticated": False, "id": None, "email": None}
    return {"authenticated": True, "id": identity.id, "email": identity.email}


@router.get("/metrics", tags=["system"])
def metrics(identity: Identity | None = Depends(request_identity)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if identity is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Authentication required")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
