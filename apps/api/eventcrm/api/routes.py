from fastapi import APIRouter, HTTPException, status
from fastapi.responses import Response

from eventcrm.core.config import get_settings
from eventcrm.metrics import generate_metrics_payload, metrics_content_type
from eventcrm.crm.api import (
    companies_router,
    contacts_router,
    deals_router,
    engagements_router,
    pipelines_router,
    properties_router,
    reports_router,
    tickets_router,
    workflows_router,
    workspaces_router,
)

router = APIRouter()
router.include_router(workspaces_router)
router.include_router(contacts_router)
router.include_router(properties_router)
router.include_router(companies_router)
router.include_router(pipelines_router)
router.include_router(deals_router)
router.include_router(tickets_router)
router.include_router(engagements_router)
router.include_router(workflows_router)
router.include_router(reports_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
