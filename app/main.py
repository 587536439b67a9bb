from contextlib import asynccontextmanager

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware

from app.api.routers import export, holidays, schedule, sessions
from app.core.config import settings
from app.core.database import init_db
from app.core.logging_config import RequestIdMiddleware, setup_logging
from app.core.monitoring import MetricsMiddleware, get_dashboard_stats, get_metrics
from app.services.background import ScheduleManager

setup_logging(
    level=settings.log_level,
    to_file=settings.log_to_file,
    file_path=settings.log_file_path,
    max_bytes=settings.log_max_bytes,
    backup_count=settings.log_backup_count,
)

tags_metadata = [
    {"name": "schedules", "description": "Preview, create, regenerate and confirm recurring schedules"},
    {"name": "sessions", "description": "Session status changes and makeup sessions"},
    {"name": "holidays", "description": "Public holiday calendar used for rescheduling"},
    {"name": "export", "description": "Session lists as xlsx"},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    manager = None
    if settings.background_jobs_enabled:
        manager = ScheduleManager()
        manager.start()
    app.state.schedule_manager = manager
    try:
        yield
    finally:
        if manager is not None:
            await manager.stop()


app = FastAPI(
    title="Schedule Session API",
    description="API for generating, previewing and managing recurring class and meeting sessions",
    openapi_tags=tags_metadata,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.include_router(schedule.router)
app.include_router(export.router)
app.include_router(sessions.router)
app.include_router(holidays.router)


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=get_metrics())


@app.get("/stats")
async def stats():
    """Dashboard-friendly statistics endpoint."""
    return get_dashboard_stats()
