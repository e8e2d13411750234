"""
Scheduler para executar jobs agendados.

Registro fixo de jobs (definido no init), cron e flag de habilitado
persistidos em `scheduled_jobs`. Um unico loop avalia os crons uma vez
por minuto no fuso SCHEDULER_TIMEZONE; cada disparo roda como task em
background. Job ainda em execucao e pulado, nao enfileirado.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from app.core.config import settings
from app.core.decorators import handle_errors
from app.core.exceptions import (
    AlreadyInProgressError,
    DatabaseError,
    InvalidCronError,
    UnknownJobError,
)
from app.core.tasks import safe_create_task
from app.core.timezone import agora_utc, iso_utc, para_local
from app.services.jobs import process_appointment_reminders, process_due_campaigns
from app.services.supabase import get_supabase_client
from app.workers.cron import cron_matches, cron_to_human, next_run_at, validate_cron

logger = logging.getLogger(__name__)

# Intervalo do loop e pausa apos erro inesperado (segundos)
TICK_INTERVAL = 1
ERROR_BACKOFF = 10


@dataclass
class JobDefinition:
    """Job registrado no scheduler."""

    name: str
    description: str
    handler: Callable[[datetime], Awaitable[Any]]
    default_schedule: str
    default_enabled: bool = True


class ScheduledJobRepository:
    """Estado persistido dos jobs (cron, habilitado, ultima execucao)."""

    TABLE = "scheduled_jobs"

    def __init__(self, db_client=None):
        self._db = db_client

    @property
    def db(self):
        return self._db if self._db is not None else get_supabase_client()

    async def list_all(self) -> Optional[Dict[str, dict]]:
        """Linhas por nome do job. None se a leitura falhar."""
        try:
            response = self.db.table(self.TABLE).select("*").execute()
            return {row["name"]: row for row in (response.data or [])}
        except Exception as e:
            logger.error(f"Erro ao listar scheduled_jobs: {e}")
            return None

    @handle_errors(reraise=True)
    async def insert(self, row: dict) -> None:
        self.db.table(self.TABLE).insert({**row, "updated_at": iso_utc()}).execute()

    @handle_errors(reraise=True)
    async def update(self, name: str, data: dict) -> None:
        self.db.table(self.TABLE).update({**data, "updated_at": iso_utc()}).eq(
            "name", name
        ).execute()


def _resumo(result: Any) -> dict:
    """Converte o retorno do handler em JSON para last_result."""
    if result is None:
        return {"success": True}
    if hasattr(result, "to_dict"):
        return result.to_dict()
    if isinstance(result, dict):
        return result
    return {"result": str(result)}


class JobScheduler:
    """
    Scheduler de jobs.

    Ciclo de vida: init(jobs) -> start() -> stop().
    """

    def __init__(self, repository: Optional[ScheduledJobRepository] = None):
        self.repository = repository or ScheduledJobRepository()
        self._jobs: Dict[str, JobDefinition] = {}
        self._executing: Set[str] = set()
        self._run_counts: Dict[str, int] = {}
        self._ticker: Optional[asyncio.Task] = None
        self._running = False
        self._last_minute: Optional[datetime] = None

    @property
    def jobs(self) -> List[JobDefinition]:
        return list(self._jobs.values())

    @property
    def running(self) -> bool:
        return self._ticker is not None and not self._ticker.done()

    async def init(self, jobs: List[JobDefinition]) -> None:
        """
        Registra os jobs e cria as linhas que ainda nao existem.

        Crons persistidos invalidos sao mantidos, mas logados.
        """
        self._jobs = {job.name: job for job in jobs}
        existentes = await self.repository.list_all()
        if existentes is None:
            logger.error("Estado dos jobs indisponivel, linhas de scheduled_jobs nao sincronizadas")
            return

        for job in jobs:
            row = existentes.get(job.name)
            if row is None:
                await self.repository.insert(
                    {
                        "name": job.name,
                        "description": job.description,
                        "cron_schedule": job.default_schedule,
                        "enabled": job.default_enabled,
                        "run_count": 0,
                    }
                )
                continue

            self._run_counts[job.name] = row.get("run_count") or 0
            try:
                validate_cron(row.get("cron_schedule") or job.default_schedule)
            except InvalidCronError as e:
                logger.error(f"Job {job.name} com cron invalido no banco: {e}")

        logger.info(f"Scheduler: {len(self._jobs)} jobs registrados")

    def start(self) -> None:
        """Inicia o loop em background."""
        if self.running:
            return
        self._running = True
        self._ticker = safe_create_task(self._loop(), name="job_scheduler")
        logger.info("Scheduler iniciado")

    async def stop(self) -> None:
        """Para o loop. Jobs em execucao terminam sozinhos."""
        self._running = False
        if self._ticker is None:
            return
        self._ticker.cancel()
        try:
            await self._ticker
        except asyncio.CancelledError:
            pass
        self._ticker = None
        logger.info("Scheduler parado")

    async def _loop(self) -> None:
        """Loop principal do scheduler."""
        while self._running:
            try:
                now = agora_utc()
                minuto = now.replace(second=0, microsecond=0)

                # Executar jobs apenas no inicio de cada minuto
                if minuto != self._last_minute:
                    self._last_minute = minuto
                    await self.tick(now)

                await asyncio.sleep(TICK_INTERVAL)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Erro no scheduler: {e}", exc_info=True)
                await asyncio.sleep(ERROR_BACKOFF)

    async def tick(self, now: Optional[datetime] = None) -> List[asyncio.Task]:
        """
        Dispara os jobs cujo cron casa com o minuto de `now`.

        Returns:
            Tasks criadas (testes aguardam por elas)
        """
        local = para_local(now or agora_utc())
        estados = await self.repository.list_all()
        if estados is None:
            # Job desabilitado nunca roda por tick
            logger.warning("Estado dos jobs indisponivel, tick pulado")
            return []

        tasks = []

        for name, job in self._jobs.items():
            row = estados.get(name, {})
            if not row.get("enabled", job.default_enabled):
                continue

            schedule = row.get("cron_schedule") or job.default_schedule
            try:
                devido = cron_matches(schedule, local)
            except InvalidCronError as e:
                logger.error(f"Job {name} ignorado: {e}")
                continue
            if not devido:
                continue

            if name in self._executing:
                logger.info(f"Job {name} ainda em execucao, disparo pulado")
                continue

            logger.info(f"Trigger: {name} (schedule: {schedule})")
            self._executing.add(name)
            tasks.append(safe_create_task(self._run(job), name=f"job:{name}"))

        return tasks

    async def _registrar(self, name: str, data: dict) -> None:
        try:
            await self.repository.update(name, data)
        except DatabaseError as e:
            logger.error(f"Erro ao registrar execucao do job {name}: {e}")

    async def _run(self, job: JobDefinition) -> dict:
        """Executa o handler e registra o resultado. Espera `_executing` ja marcado."""
        inicio = agora_utc()
        try:
            await self._registrar(
                job.name,
                {"last_run_at": iso_utc(inicio), "last_error": None, "last_result": None},
            )
            try:
                result = _resumo(await job.handler(inicio))
                error = None
                logger.info(f"Job {job.name} executado com sucesso")
            except Exception as e:
                result = None
                error = str(e) or type(e).__name__
                logger.error(f"Job {job.name} falhou: {e}", exc_info=True)

            self._run_counts[job.name] = self._run_counts.get(job.name, 0) + 1
            await self._registrar(
                job.name,
                {
                    "last_finished_at": iso_utc(),
                    "last_result": result,
                    "last_error": error,
                    "run_count": self._run_counts[job.name],
                },
            )
            return {"name": job.name, "success": error is None, "result": result, "error": error}
        finally:
            self._executing.discard(job.name)

    def _get_job(self, name: str) -> JobDefinition:
        job = self._jobs.get(name)
        if job is None:
            raise UnknownJobError(name)
        return job

    async def trigger(self, name: str) -> dict:
        """
        Executa o job agora, ignorando cron e flag de habilitado.

        Raises:
            UnknownJobError: job fora do registro
            AlreadyInProgressError: job ja em execucao
        """
        job = self._get_job(name)
        if name in self._executing:
            raise AlreadyInProgressError(
                f"Job {name} is already running", details={"job": name}
            )

        logger.info(f"Trigger manual: {name}")
        self._executing.add(name)
        return await self._run(job)

    async def update_schedule(self, name: str, cron_schedule: str) -> dict:
        """
        Altera o cron de um job.

        Raises:
            UnknownJobError: job fora do registro
            InvalidCronError: expressao invalida (nada e gravado)
        """
        self._get_job(name)
        normalizado = validate_cron(cron_schedule)
        await self.repository.update(name, {"cron_schedule": normalizado})
        logger.info(f"Job {name} reagendado: {normalizado}")
        return await self.get_job(name)

    async def toggle(self, name: str, enabled: bool) -> dict:
        """Habilita ou desabilita um job."""
        self._get_job(name)
        await self.repository.update(name, {"enabled": bool(enabled)})
        logger.info(f"Job {name} {'habilitado' if enabled else 'desabilitado'}")
        return await self.get_job(name)

    def _status(self, job: JobDefinition, row: dict, agora: datetime) -> dict:
        schedule = row.get("cron_schedule") or job.default_schedule
        enabled = row.get("enabled", job.default_enabled)

        proximo = None
        if enabled:
            try:
                proximo = next_run_at(schedule, agora)
            except InvalidCronError:
                proximo = None

        return {
            "name": job.name,
            "description": job.description,
            "cron_schedule": schedule,
            "human_schedule": cron_to_human(schedule),
            "enabled": enabled,
            "is_executing": job.name in self._executing,
            "last_run_at": row.get("last_run_at"),
            "last_finished_at": row.get("last_finished_at"),
            "last_result": row.get("last_result"),
            "last_error": row.get("last_error"),
            "run_count": row.get("run_count") or 0,
            "next_run_at": proximo.isoformat() if proximo else None,
        }

    async def list_jobs(self) -> List[dict]:
        """Status de todos os jobs registrados."""
        estados = await self.repository.list_all() or {}
        agora = para_local(agora_utc())
        return [self._status(job, estados.get(job.name, {}), agora) for job in self._jobs.values()]

    async def get_job(self, name: str) -> dict:
        job = self._get_job(name)
        estados = await self.repository.list_all() or {}
        return self._status(job, estados.get(name, {}), para_local(agora_utc()))


def build_job_registry() -> List[JobDefinition]:
    """Jobs do sistema (registro fixo)."""
    return [
        JobDefinition(
            name="scheduled_campaigns",
            description="Processes and sends scheduled email campaigns",
            handler=process_due_campaigns,
            default_schedule=settings.SCHEDULED_CAMPAIGNS_CRON,
        ),
        JobDefinition(
            name="appointment_reminders",
            description="Sends appointment reminder emails to patients based on configured rules",
            handler=process_appointment_reminders,
            default_schedule=settings.APPOINTMENT_REMINDERS_CRON,
        ),
    ]


job_scheduler = JobScheduler()
