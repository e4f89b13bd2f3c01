import logging

from fastapi import FastAPI

from marketsync.api.endpoints import health, mappings, schedules, sync, taxonomy
from marketsync.services.job_scheduler import get_job_scheduler
from marketsync.settings import settings

logger = logging.getLogger(__name__)

app = FastAPI(title="marketsync")

app.include_router(health.router, tags=["Health"])
app.include_router(sync.router, prefix="/api/sync", tags=["Sync"])
app.include_router(mappings.router, prefix="/api/mappings", tags=["Mappings"])
app.include_router(schedules.router, prefix="/api/schedules", tags=["Schedules"])
app.include_router(taxonomy.router, prefix="/api/taxonomy", tags=["Taxonomy"])


@app.on_event("startup")
def on_startup() -> None:
    if not settings.scheduler_enabled:
        logger.info("[SCHED] scheduler disabled by settings")
        return
    scheduler = get_job_scheduler()
    scheduler.load_all()
    scheduler.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    if settings.scheduler_enabled:
        get_job_scheduler().shutdown()
        get_job_scheduler().service.shutdown(wait=False)
