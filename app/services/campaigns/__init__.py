"""
Modulo de campanhas de email.

Estrutura:
- criteria: Filtro de audiencia (AST validada)
- repository: Acesso ao banco de dados
- audience: Resolucao de audiencia
- personalization: Montagem do email por destinatario
- store: Maquina de estados / casos de uso
- dispatcher: Passe de envio
- tracking: Abertura e clique
- unsubscribe: Descadastro
"""
from app.services.campaigns.audience import AudienceResolver
from app.services.campaigns.dispatcher import CampaignDispatcher
from app.services.campaigns.store import CampaignStore
from app.services.campaigns.tracking import TrackingService
from app.services.campaigns.types import (
    Campaign,
    CampaignRecipient,
    CampaignStatus,
    CampaignType,
    Contact,
    DispatchResult,
    DispatchTrigger,
    RecipientStatus,
)
from app.services.campaigns.unsubscribe import UnsubscribeService

audience_resolver = AudienceResolver()
campaign_store = CampaignStore(audience=audience_resolver)
unsubscribe_service = UnsubscribeService()
campaign_dispatcher = CampaignDispatcher(
    store=campaign_store,
    audience=audience_resolver,
    unsubscribe=unsubscribe_service,
)
tracking_service = TrackingService()

__all__ = [
    "AudienceResolver",
    "CampaignDispatcher",
    "CampaignStore",
    "TrackingService",
    "UnsubscribeService",
    "Campaign",
    "CampaignRecipient",
    "CampaignStatus",
    "CampaignType",
    "Contact",
    "DispatchResult",
    "DispatchTrigger",
    "RecipientStatus",
    "audience_resolver",
    "campaign_store",
    "campaign_dispatcher",
    "tracking_service",
    "unsubscribe_service",
]
