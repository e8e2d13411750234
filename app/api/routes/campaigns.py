"""
Rotas de campanhas de email.

A rota so conhece HTTP: recebe requests, chama o CampaignStore ou o
dispatcher e serializa o retorno. Erros de dominio viram HTTP em
app.api.error_handlers.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.api.deps import get_campaign_dispatcher, get_campaign_store
from app.services.campaigns.dispatcher import CampaignDispatcher
from app.services.campaigns.store import CampaignStore
from app.services.campaigns.types import CampaignStatus, DispatchTrigger

router = APIRouter(prefix="/campaigns", tags=["campaigns"])

# Status em que ja existem destinatarios para estatisticas
STATUSES_WITH_STATS = {CampaignStatus.SENDING, CampaignStatus.SENT, CampaignStatus.CANCELLED}


# ---------------------------------------------------------------------------
# Schemas de Request
# ---------------------------------------------------------------------------

class CampaignCreateRequest(BaseModel):
    """Schema de entrada para criacao de campanha."""
    name: str = Field(..., description="Nome interno da campanha")
    subject: str = Field(..., description="Assunto do email (aceita variaveis)")
    body_html: Optional[str] = None
    body_text: Optional[str] = None
    campaign_type: str = Field(default="newsletter")
    target_audience: Optional[Dict[str, Any]] = Field(
        default=None, description="Filtro {logic, conditions}; vazio = todos os elegiveis"
    )
    sender_id: Optional[str] = None


class CampaignUpdateRequest(BaseModel):
    """Campos editaveis enquanto DRAFT (so os enviados sao alterados)."""
    name: Optional[str] = None
    subject: Optional[str] = None
    body_html: Optional[str] = None
    body_text: Optional[str] = None
    campaign_type: Optional[str] = None
    target_audience: Optional[Dict[str, Any]] = None
    sender_id: Optional[str] = None


class ScheduleRequest(BaseModel):
    # Validado no store para devolver ValidationError (400) em vez de 422
    scheduled_at: Optional[Any] = None


class AudiencePreviewRequest(BaseModel):
    target_audience: Optional[Dict[str, Any]] = None
    sample_size: Optional[int] = Field(default=None, ge=0, le=100)


# ---------------------------------------------------------------------------
# Rotas estaticas (antes de /{campaign_id})
# ---------------------------------------------------------------------------

@router.get("/segment-fields")
async def segment_fields(store: CampaignStore = Depends(get_campaign_store)):
    """Campos e operadores disponiveis para segmentacao."""
    return await store.segment_fields()


@router.post("/preview-audience")
async def preview_audience(
    dados: AudiencePreviewRequest,
    store: CampaignStore = Depends(get_campaign_store),
):
    """Conta a audiencia de um filtro (sem criar destinatarios)."""
    preview = await store.preview_audience(dados.target_audience, sample_size=dados.sample_size)
    return preview.to_dict()


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

@router.get("")
async def list_campaigns(
    status: Optional[str] = None,
    campaign_type: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    store: CampaignStore = Depends(get_campaign_store),
):
    """Lista campanhas com filtros e paginacao."""
    campaigns, pagination = await store.list(
        status=status, campaign_type=campaign_type, search=search, page=page, limit=limit
    )
    return {"campaigns": [c.to_dict() for c in campaigns], "pagination": pagination}


@router.post("", status_code=201)
async def create_campaign(
    dados: CampaignCreateRequest,
    store: CampaignStore = Depends(get_campaign_store),
):
    """Cria campanha em DRAFT."""
    campaign = await store.create(dados.model_dump())
    return campaign.to_dict()


@router.get("/{campaign_id}")
async def get_campaign(campaign_id: str, store: CampaignStore = Depends(get_campaign_store)):
    """Detalhe da campanha (com estatisticas quando ja houve envio)."""
    campaign = await store.get(campaign_id)
    data = campaign.to_dict()
    if campaign.status in STATUSES_WITH_STATS:
        data["stats"] = await store.recipient_stats(campaign_id)
    return data


@router.put("/{campaign_id}")
async def update_campaign(
    campaign_id: str,
    dados: CampaignUpdateRequest,
    store: CampaignStore = Depends(get_campaign_store),
):
    """Edita campanha em DRAFT."""
    campaign = await store.update(campaign_id, dados.model_dump(exclude_unset=True))
    return campaign.to_dict()


@router.delete("/{campaign_id}")
async def delete_campaign(campaign_id: str, store: CampaignStore = Depends(get_campaign_store)):
    """Remove campanha (soft delete)."""
    await store.delete(campaign_id)
    return {"id": campaign_id, "deleted": True}


@router.post("/{campaign_id}/duplicate", status_code=201)
async def duplicate_campaign(campaign_id: str, store: CampaignStore = Depends(get_campaign_store)):
    """Copia a campanha como novo DRAFT."""
    campaign = await store.duplicate(campaign_id)
    return campaign.to_dict()


# ---------------------------------------------------------------------------
# Transicoes
# ---------------------------------------------------------------------------

@router.post("/{campaign_id}/send")
async def send_campaign(
    campaign_id: str,
    store: CampaignStore = Depends(get_campaign_store),
    dispatcher: CampaignDispatcher = Depends(get_campaign_dispatcher),
):
    """Envia agora (DRAFT ou SCHEDULED). Responde apos o passe terminar."""
    result = await dispatcher.dispatch(campaign_id, DispatchTrigger.MANUAL)
    campaign = await store.get(campaign_id)
    return {"campaign": campaign.to_dict(), "dispatch": result.to_dict()}


@router.post("/{campaign_id}/schedule")
async def schedule_campaign(
    campaign_id: str,
    dados: ScheduleRequest,
    store: CampaignStore = Depends(get_campaign_store),
):
    """Agenda (ou reagenda) o envio."""
    campaign = await store.schedule(campaign_id, dados.scheduled_at)
    return campaign.to_dict()


@router.post("/{campaign_id}/cancel")
async def cancel_campaign(campaign_id: str, store: CampaignStore = Depends(get_campaign_store)):
    """Cancela campanha agendada ou em envio."""
    campaign = await store.cancel(campaign_id)
    return campaign.to_dict()


# ---------------------------------------------------------------------------
# Audiencia e estatisticas
# ---------------------------------------------------------------------------

@router.post("/{campaign_id}/preview-audience")
async def preview_campaign_audience(
    campaign_id: str,
    sample_size: Optional[int] = Query(None, ge=0, le=100),
    store: CampaignStore = Depends(get_campaign_store),
):
    """Audiencia atual de uma campanha salva."""
    preview = await store.preview_campaign_audience(campaign_id, sample_size=sample_size)
    return preview.to_dict()


@router.get("/{campaign_id}/stats")
async def campaign_stats(campaign_id: str, store: CampaignStore = Depends(get_campaign_store)):
    """Estatisticas de entrega e engajamento, com serie diaria."""
    return await store.campaign_stats(campaign_id)


@router.get("/{campaign_id}/recipients")
async def list_recipients(
    campaign_id: str,
    status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    store: CampaignStore = Depends(get_campaign_store),
):
    """Destinatarios da campanha, paginados."""
    recipients, pagination = await store.list_recipients(
        campaign_id, status=status, search=search, page=page, limit=limit
    )
    return {"recipients": [r.to_dict() for r in recipients], "pagination": pagination}
