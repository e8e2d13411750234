"""
Rotas de administracao do scheduler de jobs.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from app.api.deps import get_job_scheduler
from app.workers.scheduler import JobScheduler

router = APIRouter(prefix="/scheduler", tags=["scheduler"])


class ScheduleUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cron_schedule: str = Field(..., alias="cronSchedule")


class ToggleRequest(BaseModel):
    enabled: bool


@router.get("/jobs")
async def list_jobs(scheduler: JobScheduler = Depends(get_job_scheduler)):
    """Status de todos os jobs."""
    return {"jobs": await scheduler.list_jobs()}


@router.post("/jobs/{name}/trigger")
async def trigger_job(name: str, scheduler: JobScheduler = Depends(get_job_scheduler)):
    """Executa o job agora (ignora cron e flag de habilitado)."""
    return await scheduler.trigger(name)


@router.put("/jobs/{name}")
async def update_job_schedule(
    name: str,
    dados: ScheduleUpdateRequest,
    scheduler: JobScheduler = Depends(get_job_scheduler),
):
    """Altera o cron de um job."""
    return await scheduler.update_schedule(name, dados.cron_schedule)


@router.patch("/jobs/{name}/toggle")
async def toggle_job(
    name: str,
    dados: ToggleRequest,
    scheduler: JobScheduler = Depends(get_job_scheduler),
):
    """Habilita ou desabilita um job."""
    return await scheduler.toggle(name, dados.enabled)
