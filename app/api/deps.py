"""
Dependencias das rotas (FastAPI Depends).

Testes sobrescrevem com app.dependency_overrides.
"""
from app.services.campaigns import (
    CampaignDispatcher,
    CampaignStore,
    TrackingService,
    UnsubscribeService,
    campaign_dispatcher,
    campaign_store,
    tracking_service,
    unsubscribe_service,
)
from app.workers.scheduler import JobScheduler, job_scheduler


def get_campaign_store() -> CampaignStore:
    return campaign_store


def get_campaign_dispatcher() -> CampaignDispatcher:
    return campaign_dispatcher


def get_tracking_service() -> TrackingService:
    return tracking_service


def get_unsubscribe_service() -> UnsubscribeService:
    return unsubscribe_service


def get_job_scheduler() -> JobScheduler:
    return job_scheduler
