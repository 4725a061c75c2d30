"""
Campaign Workflow Service Main Application

FastAPI application for the campaign workflow engine: campaign
definitions, event ingestion, schedule ticks and delivery callbacks.
Port: 8251
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from core.config import get_settings, setup_logging

from . import __version__
from .factory import CampaignWorkflowServiceFactory
from .models import (
    CampaignCreateRequest,
    CampaignListResponse,
    CampaignResponse,
    CampaignStatus,
    CampaignUpdateRequest,
    DeliveryStatusRecord,
    DomainEvent,
    DeliveryStatusRequest,
    Enrollment,
    EnrollmentResponse,
    EnrollmentStatus,
    EventIngestResponse,
    HealthResponse,
    ManualTriggerRequest,
    TickRequest,
    TickResponse,
    utcnow,
)
from .protocols import (
    AudienceQueryError,
    CampaignNotFoundError,
    EnrollmentConflict,
    EnrollmentNotFoundError,
    InvalidCampaignStateError,
    ValidationError,
)

settings = get_settings()
setup_logging(settings.logging)
logger = logging.getLogger(__name__)

# Service configuration
SERVICE_NAME = "campaign_workflow_service"
SERVICE_PORT = settings.port
SERVICE_VERSION = __version__

# Track startup time for uptime calculation
startup_time = time.time()

# Global factory instance
factory: Optional[CampaignWorkflowServiceFactory] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global factory

    logger.info(f"Starting {SERVICE_NAME} on port {SERVICE_PORT}")

    factory = CampaignWorkflowServiceFactory(settings)
    await factory.initialize()
    await factory.subscribe()
    factory.start_workers()

    yield

    # Cleanup
    logger.info(f"Shutting down {SERVICE_NAME}")
    await factory.close()
    factory = None


# Create FastAPI application
app = FastAPI(
    title="Campaign Workflow Service",
    description="Event and schedule driven multi-step patient communication campaigns",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


# ====================
# Exception Handlers
# ====================


@app.exception_handler(CampaignNotFoundError)
async def campaign_not_found_handler(request: Request, exc: CampaignNotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc)},
    )


@app.exception_handler(EnrollmentNotFoundError)
async def enrollment_not_found_handler(request: Request, exc: EnrollmentNotFoundError):
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"detail": str(exc)},
    )


@app.exception_handler(InvalidCampaignStateError)
async def invalid_state_handler(request: Request, exc: InvalidCampaignStateError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc), "current_status": exc.current_status},
    )


@app.exception_handler(EnrollmentConflict)
async def enrollment_conflict_handler(request: Request, exc: EnrollmentConflict):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc)},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "field": exc.field},
    )


@app.exception_handler(AudienceQueryError)
async def audience_query_handler(request: Request, exc: AudienceQueryError):
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc)},
    )


# ====================
# Dependencies
# ====================


def get_factory_instance() -> CampaignWorkflowServiceFactory:
    """Get initialized factory"""
    if not factory:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service not initialized",
        )
    return factory


def get_admin(f: CampaignWorkflowServiceFactory = Depends(get_factory_instance)):
    """Get campaign admin service from factory"""
    return f.admin


# ====================
# Health Endpoints
# ====================


@app.get("/api/v1/workflows/health")
@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint"""
    dependencies = {}

    if factory:
        try:
            db_healthy = await factory.repository.health_check()
            dependencies["postgres"] = "healthy" if db_healthy else "unhealthy"
        except Exception:
            dependencies["postgres"] = "unhealthy"

        if factory.nats_client:
            dependencies["nats"] = "healthy" if factory.nats_client.is_connected else "unhealthy"
        else:
            dependencies["nats"] = "not_configured"

    return HealthResponse(
        status="healthy",
        service=SERVICE_NAME,
        port=SERVICE_PORT,
        version=SERVICE_VERSION,
        dependencies=dependencies,
    )


@app.get("/health/live", tags=["Health"])
async def liveness_check():
    """Liveness check endpoint"""
    return {"alive": True, "uptime_seconds": time.time() - startup_time}


# ====================
# Campaign Endpoints
# ====================


@app.post(
    "/api/v1/workflows/campaigns",
    response_model=CampaignResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Campaigns"],
)
async def create_campaign(request: CampaignCreateRequest, admin=Depends(get_admin)):
    """Create a campaign in draft status"""
    campaign = await admin.create_campaign(request)
    return CampaignResponse(campaign=campaign, message="Campaign created successfully")


@app.get("/api/v1/workflows/campaigns", response_model=CampaignListResponse, tags=["Campaigns"])
async def list_campaigns(
    status_filter: Optional[List[CampaignStatus]] = Query(None, alias="status"),
    clinic_id: Optional[str] = Query(None),
    admin=Depends(get_admin),
):
    campaigns = await admin.list_campaigns(status=status_filter, clinic_id=clinic_id)
    return CampaignListResponse(campaigns=campaigns, total=len(campaigns))


@app.get("/api/v1/workflows/campaigns/{campaign_id}", response_model=CampaignResponse, tags=["Campaigns"])
async def get_campaign(campaign_id: str, admin=Depends(get_admin)):
    campaign = await admin.get_campaign(campaign_id)
    return CampaignResponse(campaign=campaign)


@app.patch("/api/v1/workflows/campaigns/{campaign_id}", response_model=CampaignResponse, tags=["Campaigns"])
async def update_campaign(campaign_id: str, request: CampaignUpdateRequest, admin=Depends(get_admin)):
    """Edit a draft campaign"""
    campaign = await admin.update_campaign(campaign_id, request)
    return CampaignResponse(campaign=campaign, message="Campaign updated successfully")


@app.delete(
    "/api/v1/workflows/campaigns/{campaign_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Campaigns"],
)
async def delete_campaign(campaign_id: str, admin=Depends(get_admin)):
    """Delete a draft campaign"""
    await admin.delete_campaign(campaign_id)


@app.post("/api/v1/workflows/campaigns/{campaign_id}/activate", response_model=CampaignResponse, tags=["Campaign Lifecycle"])
async def activate_campaign(campaign_id: str, admin=Depends(get_admin)):
    """Validate and activate a draft campaign"""
    campaign = await admin.activate_campaign(campaign_id)
    return CampaignResponse(campaign=campaign, message="Campaign activated")


@app.post("/api/v1/workflows/campaigns/{campaign_id}/pause", response_model=CampaignResponse, tags=["Campaign Lifecycle"])
async def pause_campaign(campaign_id: str, admin=Depends(get_admin)):
    campaign = await admin.pause_campaign(campaign_id)
    return CampaignResponse(campaign=campaign, message="Campaign paused")


@app.post("/api/v1/workflows/campaigns/{campaign_id}/resume", response_model=CampaignResponse, tags=["Campaign Lifecycle"])
async def resume_campaign(campaign_id: str, admin=Depends(get_admin)):
    campaign = await admin.resume_campaign(campaign_id)
    return CampaignResponse(campaign=campaign, message="Campaign resumed")


@app.post("/api/v1/workflows/campaigns/{campaign_id}/archive", response_model=CampaignResponse, tags=["Campaign Lifecycle"])
async def archive_campaign(campaign_id: str, admin=Depends(get_admin)):
    """Archive a campaign and cancel its open enrollments"""
    campaign = await admin.archive_campaign(campaign_id)
    return CampaignResponse(campaign=campaign, message="Campaign archived")


@app.post("/api/v1/workflows/campaigns/{campaign_id}/revise", response_model=CampaignResponse, tags=["Campaign Lifecycle"])
async def revise_campaign(campaign_id: str, request: CampaignUpdateRequest, admin=Depends(get_admin)):
    """Publish a new version of an active or paused campaign"""
    campaign = await admin.revise_campaign(campaign_id, request)
    return CampaignResponse(campaign=campaign, message=f"Campaign revised to version {campaign.version}")


# ====================
# Enrollment Endpoints
# ====================


@app.post(
    "/api/v1/workflows/campaigns/{campaign_id}/trigger",
    response_model=Enrollment,
    status_code=status.HTTP_201_CREATED,
    tags=["Enrollments"],
)
async def trigger_campaign(campaign_id: str, request: ManualTriggerRequest, admin=Depends(get_admin)):
    """Enroll one recipient manually"""
    return await admin.trigger_manual(campaign_id, request.recipient_id, request.context)


@app.get("/api/v1/workflows/campaigns/{campaign_id}/enrollments", response_model=List[Enrollment], tags=["Enrollments"])
async def list_enrollments(
    campaign_id: str,
    status_filter: Optional[List[EnrollmentStatus]] = Query(None, alias="status"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    admin=Depends(get_admin),
):
    return await admin.list_enrollments(campaign_id, status=status_filter, limit=limit, offset=offset)


@app.get("/api/v1/workflows/enrollments/{enrollment_id}", response_model=EnrollmentResponse, tags=["Enrollments"])
async def get_enrollment(enrollment_id: str, admin=Depends(get_admin)):
    """Enrollment with its step execution history"""
    return await admin.get_enrollment(enrollment_id)


# ====================
# Engine Endpoints
# ====================


@app.post("/api/v1/workflows/events", response_model=EventIngestResponse, tags=["Engine"])
async def ingest_event(event: DomainEvent, f: CampaignWorkflowServiceFactory = Depends(get_factory_instance)):
    """Ingest one business event"""
    return await f.trigger_listener.on_event(event)


@app.post("/api/v1/workflows/tick", response_model=TickResponse, tags=["Engine"])
async def tick(
    request: TickRequest,
    process: bool = Query(False, description="Also run one scheduler pass"),
    f: CampaignWorkflowServiceFactory = Depends(get_factory_instance),
):
    """Fire due scheduled and recurring campaigns"""
    now = request.now or utcnow()
    fired = await f.trigger_listener.on_tick(now)
    processed = await f.scheduler.run_once(now) if process else 0
    return TickResponse(fired=fired, processed=processed)


@app.post("/api/v1/workflows/delivery-status", response_model=DeliveryStatusRecord, tags=["Engine"])
async def delivery_status(
    request: DeliveryStatusRequest,
    f: CampaignWorkflowServiceFactory = Depends(get_factory_instance),
):
    """Record a delivery callback from the messaging hub"""
    return await f.gateway.record_delivery_status(
        dispatch_id=request.dispatch_id,
        status=request.status,
        detail=request.detail,
        occurred_at=request.occurred_at,
    )


# ====================
# Main Entry Point
# ====================


def main():
    """Run the service"""
    import uvicorn

    uvicorn.run(
        "microservices.campaign_workflow_service.main:app",
        host=settings.host,
        port=SERVICE_PORT,
        reload=settings.debug,
        log_level=settings.logging.log_level.lower(),
    )


if __name__ == "__main__":
    main()
