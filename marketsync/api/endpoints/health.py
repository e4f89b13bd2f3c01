import logging

from fastapi import APIRouter, Depends
from sqlalchemy import text

from marketsync.api.deps import job_scheduler_dep
from marketsync.services.job_scheduler import JobScheduler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
def get_health(scheduler: JobScheduler = Depends(job_scheduler_dep)):
    """
    서버, 데이터베이스, 스케줄러 상태를 확인합니다.
    """
    db_ok = False
    try:
        with scheduler.session_factory() as session:
            session.execute(text("SELECT 1"))
        db_ok = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")

    return {
        "status": "healthy" if db_ok else "unhealthy",
        "database": "ok" if db_ok else "error",
        "scheduler": "running" if scheduler.is_running else "stopped",
        "timers": len(scheduler.jobs()),
    }
