"""
Rotas de health check.

- /health: Liveness basico (sempre 200 se app rodando)
- /health/ready: Readiness (Redis e Supabase)
- /health/scheduler: Estado do loop de jobs e falhas de tasks em background
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.api.deps import get_job_scheduler
from app.core.config import settings
from app.core.tasks import get_task_failure_counts
from app.core.timezone import iso_utc
from app.services.redis import verificar_conexao_redis
from app.services.supabase import verificar_conexao_supabase
from app.workers.scheduler import JobScheduler

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/health")
async def health_check():
    """
    Verifica se a API esta funcionando.
    Usado para monitoramento e load balancers.
    """
    return {
        "status": "healthy",
        "timestamp": iso_utc(),
        "service": settings.APP_NAME,
    }


@router.get("/health/ready")
async def readiness_check():
    """Verifica as dependencias (Redis do lock de dispatch e Supabase)."""
    redis_ok = await verificar_conexao_redis()
    database_ok = verificar_conexao_supabase()
    pronto = redis_ok and database_ok

    return JSONResponse(
        status_code=200 if pronto else 503,
        content={
            "status": "ready" if pronto else "degraded",
            "checks": {
                "database": "ok" if database_ok else "error",
                "redis": "ok" if redis_ok else "error",
            },
        },
    )


@router.get("/health/scheduler")
async def scheduler_health(scheduler: JobScheduler = Depends(get_job_scheduler)):
    """Loop de jobs ativo e contagem de falhas em tasks de background."""
    return {
        "enabled": settings.SCHEDULER_ENABLED,
        "running": scheduler.running,
        "jobs": [job.name for job in scheduler.jobs],
        "task_failures": get_task_failure_counts(),
    }
