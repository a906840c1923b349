from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from visibility.api.routes import analyses
from visibility.config import settings
from visibility.services import logger as log_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_service.log_event(
        event_type="service_started",
        message="Visibility API ready",
        llm_provider=settings.llm_provider,
        store_backend=settings.store_backend,
        visibility_policy=settings.visibility_policy,
    )
    yield
    # Stop background runs that are still dispatching rounds.
    if analyses._orchestrator is not None:
        logger.info("Shutting down running analyses")
        await analyses._orchestrator.supervisor.shutdown()


app = FastAPI(
    title="AI Visibility Tracker",
    description="Measures how often and how prominently AI answers mention an institution",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(analyses.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "visibility"}
