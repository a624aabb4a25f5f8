"""
FastAPI application entry point for facevoice.

facevoice tracks faces in a video stream and decides who is speaking:
1. Face tracking (Kalman-filtered boxes, greedy association, re-identification)
2. Speaking detection over a bounded pool of scoring model instances
3. Online speaker clustering of diarized voice segments
4. Audio-visual pairing of voice segments with tracked faces (soft IoU)

The scoring model and face embedder are external; pass them to create_app().
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from facevoice.config import Settings, get_settings
from facevoice.routers import health, speakers, tracking
from facevoice.services.attribution import AttributionWorker
from facevoice.services.face_tracker import FaceTracker
from facevoice.services.pipeline import Embedder, FacePipeline, SnapshotChannel
from facevoice.services.scoring_pool import ScoringSlotPool
from facevoice.services.speaker_clustering import OnlineSpeakerClustering
from facevoice.services.speaking_scheduler import SpeakingScheduler

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_pipeline(
    settings: Settings,
    scorer_factory: Optional[Callable[[], Any]] = None,
    embedder: Optional[Embedder] = None,
) -> tuple[FacePipeline, AttributionWorker]:
    """Wire the frame path and the diarization path from settings."""
    tracker = FaceTracker(settings.get_tracking_config(), settings.get_kalman_config())

    scheduler = None
    if scorer_factory is not None:
        scoring_config = settings.get_scoring_config()
        pool = ScoringSlotPool(scorer_factory, scoring_config)
        scheduler = SpeakingScheduler(pool, scoring_config)
    else:
        logger.warning("No speaking scorer configured - speaking detection disabled")

    snapshots = SnapshotChannel()
    pipeline = FacePipeline(
        tracker=tracker,
        scheduler=scheduler,
        snapshots=snapshots,
        pairing_config=settings.get_pairing_config(),
        embedder=embedder,
    )
    worker = AttributionWorker(
        clustering=OnlineSpeakerClustering(settings.get_clustering_config()),
        snapshots=snapshots,
        pairing_config=settings.get_pairing_config(),
        queue_size=settings.segment_queue_size,
    )
    return pipeline, worker


def create_app(
    settings: Optional[Settings] = None,
    scorer_factory: Optional[Callable[[], Any]] = None,
    embedder: Optional[Embedder] = None,
) -> FastAPI:
    """Create the FastAPI application."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Lifespan context manager for startup and shutdown events.
        Builds the pipeline on startup and stops the workers on shutdown.
        """
        logger.info(f"Starting {settings.app_name}...")

        pipeline, worker = build_pipeline(settings, scorer_factory, embedder)
        worker.start()

        # Store in app state for dependency injection
        app.state.pipeline = pipeline
        app.state.attribution_worker = worker

        logger.info(
            f"Pipeline ready (frame rate {settings.frame_rate}, "
            f"scoring every {settings.frames_per_update} frames, max {settings.max_slots} slots)"
        )

        yield

        # Cleanup on shutdown
        logger.info(f"Shutting down {settings.app_name}...")
        pipeline.close()
        await worker.stop()
        app.state.pipeline = None
        app.state.attribution_worker = None
        logger.info("Shutdown complete")

    app = FastAPI(
        title="facevoice",
        description="""
Face tracking, speaking detection and speaker attribution.

## Usage

1. Feed frames: `POST /frames` (detections, optional encoded image)
2. Feed diarized voice segments: `POST /voice-segments`
3. Inspect state: `GET /tracks`, `GET /speakers`
        """,
        version="1.0.0",
        lifespan=lifespan,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(tracking.router, tags=["Tracking"])
    app.include_router(speakers.router, tags=["Speakers"])

    @app.get("/")
    async def root():
        """Root endpoint with basic info."""
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "running",
            "docs": "/docs",
        }

    return app


configure_logging(get_settings())
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "facevoice.main:app",
        host="0.0.0.0",
        port=8000,
        reload=get_settings().debug,
    )
