"""
NutriVault Campaigns - API Principal
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.error_handlers import register_exception_handlers
from app.api.routes import campaigns, health, scheduler, tracking
from app.core.config import settings
from app.core.logging import setup_logging
from app.core.tasks import safe_create_task
from app.services.campaigns import campaign_dispatcher
from app.workers.scheduler import build_job_registry, job_scheduler

# Configurar logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gerencia startup e shutdown da aplicacao."""
    # Startup
    logger.info(f"Iniciando {settings.APP_NAME} ({settings.ENVIRONMENT})")

    await job_scheduler.init(build_job_registry())
    if settings.SCHEDULER_ENABLED:
        job_scheduler.start()
    else:
        logger.info("Scheduler desabilitado (SCHEDULER_ENABLED=false)")

    if settings.RECOVER_INTERRUPTED_DISPATCHES:
        safe_create_task(
            campaign_dispatcher.recover_interrupted(),
            name="recover_interrupted_dispatches",
        )

    yield

    # Shutdown
    await job_scheduler.stop()
    logger.info(f"Encerrando {settings.APP_NAME}")


app = FastAPI(
    title=settings.APP_NAME,
    description="Agendamento e envio de campanhas de email para pacientes",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# Rotas (tracking antes de campaigns: /campaigns/track/... e /campaigns/unsubscribe/...)
app.include_router(health.router, tags=["Health"])
app.include_router(tracking.router)
app.include_router(campaigns.router)
app.include_router(scheduler.router)


@app.get("/")
async def root():
    """Endpoint raiz."""
    return {
        "app": settings.APP_NAME,
        "status": "running",
        "docs": "/docs",
    }
