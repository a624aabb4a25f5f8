"""
Health check endpoints for the facevoice service.
"""

from fastapi import APIRouter, Request

from facevoice.schemas.responses import HealthResponse, ReadinessResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    """
    return HealthResponse(
        status="healthy",
        version="1.0.0",
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request):
    """
    Readiness check endpoint.

    Ready when the frame pipeline accepts frames and the attribution
    worker is consuming voice segments. Speaking detection is optional:
    without a scorer the service still tracks faces.
    """
    pipeline = getattr(request.app.state, "pipeline", None)
    worker = getattr(request.app.state, "attribution_worker", None)

    tracking_ready = pipeline is not None and not pipeline.is_closed
    attribution_ready = worker is not None and worker.is_running
    scoring_ready = tracking_ready and pipeline.scheduler is not None

    return ReadinessResponse(
        ready=tracking_ready and attribution_ready,
        tracking="ready" if tracking_ready else "not_started",
        speaking_detection="ready" if scoring_ready else "disabled",
        attribution="ready" if attribution_ready else "not_started",
    )
