"""
Campaign Store - maquina de estados das campanhas.

Ponto de entrada dos casos de uso de campanha. As rotas chamam apenas
este modulo e o dispatcher. Lanca excecoes de dominio
(app.core.exceptions), NUNCA excecoes HTTP.

Transicoes permitidas:
    DRAFT -> SCHEDULED | SENDING
    SCHEDULED -> SCHEDULED (reagendar) | SENDING | CANCELLED
    SENDING -> SENT | CANCELLED
    SENDING -> DRAFT | SCHEDULED (reversao quando o envio nao comeca)

Toda mudanca de status e um compare-and-set no banco: o UPDATE so
acontece se o status ainda for o lido. Assim um cancelamento disputando
com o tick do scheduler ganha ou perde de forma atomica.
"""
import logging
import math
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from app.core.config import CampaignConfig
from app.core.exceptions import (
    InvalidStateError,
    NoRecipientsError,
    NotFoundError,
    ValidationError,
)
from app.core.timezone import agora_utc, iso_utc, parse_datetime
from app.services.campaigns.audience import AudienceResolver
from app.services.campaigns.criteria import AudienceCriteria, list_segment_fields
from app.services.campaigns.repository import CampaignRepository, RecipientRepository
from app.services.campaigns.types import (
    AudiencePreview,
    Campaign,
    CampaignRecipient,
    CampaignStatus,
    CampaignType,
    RecipientStatus,
)

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = {CampaignStatus.DRAFT}
SCHEDULABLE_STATUSES = {CampaignStatus.DRAFT, CampaignStatus.SCHEDULED}
CANCELLABLE_STATUSES = {CampaignStatus.SCHEDULED, CampaignStatus.SENDING}


def _pagination(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": math.ceil(total / limit) if limit else 0,
    }


def _normalizar_pagina(page: Optional[int], limit: Optional[int], default: int) -> Tuple[int, int]:
    page = max(int(page or 1), 1)
    limit = int(limit or default)
    limit = min(max(limit, 1), CampaignConfig.MAX_PAGE_SIZE)
    return page, limit


def _taxa(parte: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(parte / total * 100, 1)


class CampaignStore:
    """
    Casos de uso de campanhas.

    Excecoes lancadas:
        - NotFoundError: campanha inexistente ou removida
        - ValidationError: dados de entrada invalidos
        - InvalidStateError: transicao nao permitida
        - NoRecipientsError: audiencia vazia ao agendar
        - DatabaseError: falha na persistencia
    """

    def __init__(self, repository=None, recipients=None, audience=None):
        """
        Permite injecao de dependencias para testes.

        Args:
            repository: Repositorio de campanhas
            recipients: Repositorio de destinatarios
            audience: AudienceResolver
        """
        self._repository = repository or CampaignRepository()
        self._recipients = recipients or RecipientRepository()
        self._audience = audience or AudienceResolver()

    # ------------------------------------------------------------------
    # Validacao de entrada
    # ------------------------------------------------------------------

    @staticmethod
    def _validar_campos(data: Dict[str, Any], parcial: bool) -> Dict[str, Any]:
        """Filtra campos editaveis e normaliza para o formato do banco."""
        payload = {k: data[k] for k in Campaign.EDITABLE_FIELDS if k in data}

        for obrigatorio in ("name", "subject"):
            if obrigatorio in payload or not parcial:
                valor = (payload.get(obrigatorio) or "").strip()
                if not valor:
                    raise ValidationError(f"Campaign {obrigatorio} is required")
                payload[obrigatorio] = valor

        if "campaign_type" in payload or not parcial:
            tipo = payload.get("campaign_type") or CampaignType.NEWSLETTER.value
            try:
                payload["campaign_type"] = CampaignType(tipo).value
            except ValueError:
                raise ValidationError(
                    f"Invalid campaign type: '{tipo}'",
                    details={"allowed": [t.value for t in CampaignType]},
                )

        if "target_audience" in payload or not parcial:
            criteria = AudienceCriteria.from_dict(payload.get("target_audience"))
            payload["target_audience"] = criteria.to_dict()

        return payload

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create(self, data: Dict[str, Any], created_by: Optional[str] = None) -> Campaign:
        """
        Caso de Uso: criar campanha em DRAFT.

        Raises:
            ValidationError: nome/assunto ausentes, tipo ou audiencia invalidos
        """
        payload = self._validar_campos(data, parcial=False)
        payload.update(
            {
                "status": CampaignStatus.DRAFT.value,
                "recipient_count": 0,
                "is_active": True,
                "created_by": created_by,
            }
        )
        return await self._repository.create(payload)

    async def get(self, campaign_id: str) -> Campaign:
        """
        Caso de Uso: buscar campanha.

        Raises:
            NotFoundError: campanha inexistente ou removida
        """
        campaign = await self._repository.get(campaign_id)
        if not campaign:
            raise NotFoundError("Campaign", campaign_id)
        return campaign

    async def list(
        self,
        status: Optional[str] = None,
        campaign_type: Optional[str] = None,
        search: Optional[str] = None,
        page: Optional[int] = 1,
        limit: Optional[int] = CampaignConfig.PAGE_SIZE_CAMPAIGNS,
    ) -> Tuple[List[Campaign], dict]:
        """
        Caso de Uso: listar campanhas.

        Returns:
            (campanhas, paginacao {page, limit, total, total_pages})
        """
        if status:
            try:
                CampaignStatus(status)
            except ValueError:
                raise ValidationError(f"Invalid campaign status: '{status}'")

        page, limit = _normalizar_pagina(page, limit, CampaignConfig.PAGE_SIZE_CAMPAIGNS)
        campaigns, total = await self._repository.list(
            status=status,
            campaign_type=campaign_type,
            search=search,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return campaigns, _pagination(page, limit, total)

    async def update(self, campaign_id: str, patch: Dict[str, Any]) -> Campaign:
        """
        Caso de Uso: editar campanha (apenas DRAFT).

        Raises:
            InvalidStateError: campanha fora de DRAFT
        """
        campaign = await self.get(campaign_id)
        if campaign.status not in EDITABLE_STATUSES:
            raise InvalidStateError(
                "Campaign cannot be edited in its current status", campaign.status.value
            )

        payload = self._validar_campos(patch, parcial=True)
        if not payload:
            return campaign

        atualizada = await self._repository.update(
            campaign_id, payload, expected_status=CampaignStatus.DRAFT
        )
        if not atualizada:
            raise InvalidStateError("Campaign cannot be edited in its current status")
        return atualizada

    async def delete(self, campaign_id: str) -> None:
        """
        Caso de Uso: remover campanha (soft delete).

        Destinatarios sao mantidos para historico.

        Raises:
            InvalidStateError: campanha em envio
        """
        campaign = await self.get(campaign_id)
        if campaign.status == CampaignStatus.SENDING:
            raise InvalidStateError(
                "Campaign cannot be deleted while sending", campaign.status.value
            )

        removida = await self._repository.update(
            campaign_id, {"is_active": False}, expected_status=campaign.status
        )
        if not removida:
            raise InvalidStateError("Campaign cannot be deleted in its current status")
        logger.info(f"Campanha removida: {campaign_id}")

    async def duplicate(self, campaign_id: str, created_by: Optional[str] = None) -> Campaign:
        """Caso de Uso: copiar campanha como novo DRAFT."""
        original = await self.get(campaign_id)
        return await self.create(
            {
                "name": f"{original.name} (copy)",
                "subject": original.subject,
                "body_html": original.body_html,
                "body_text": original.body_text,
                "campaign_type": original.campaign_type.value,
                "target_audience": original.target_audience.to_dict(),
                "sender_id": original.sender_id,
            },
            created_by=created_by or original.created_by,
        )

    # ------------------------------------------------------------------
    # Transicoes publicas
    # ------------------------------------------------------------------

    async def schedule(
        self,
        campaign_id: str,
        at: Optional[Any],
        now: Optional[datetime] = None,
    ) -> Campaign:
        """
        Caso de Uso: agendar (ou reagendar) campanha.

        Args:
            campaign_id: ID da campanha
            at: Data/hora de envio (datetime ou ISO 8601)
            now: Relogio (default agora UTC)

        Raises:
            NotFoundError: campanha inexistente
            InvalidStateError: campanha fora de DRAFT/SCHEDULED
            ValidationError: horario ausente, invalido ou no passado
            NoRecipientsError: audiencia vazia
        """
        campaign = await self.get(campaign_id)
        if campaign.status not in SCHEDULABLE_STATUSES:
            raise InvalidStateError(
                "Campaign cannot be scheduled in its current status", campaign.status.value
            )

        if at is None or at == "":
            raise ValidationError("Scheduled time is required")
        scheduled_at = parse_datetime(at)
        if scheduled_at is None:
            raise ValidationError("Invalid scheduled time", details={"scheduled_at": str(at)})
        if scheduled_at <= (now or agora_utc()):
            raise ValidationError("Scheduled time must be in the future")

        preview = await self._audience.resolve(campaign.target_audience, sample_size=0)
        if preview.count == 0:
            raise NoRecipientsError()

        agendada = await self._repository.update(
            campaign_id,
            {"status": CampaignStatus.SCHEDULED.value, "scheduled_at": iso_utc(scheduled_at)},
            expected_status=campaign.status,
        )
        if not agendada:
            raise InvalidStateError("Campaign cannot be scheduled in its current status")

        logger.info(
            f"Campanha {campaign_id} agendada para {scheduled_at.isoformat()}",
            extra={"campaign_id": campaign_id, "recipients": preview.count},
        )
        return agendada

    async def cancel(self, campaign_id: str) -> Campaign:
        """
        Caso de Uso: cancelar campanha agendada ou em envio.

        Cancelar durante o envio nao interrompe envios em andamento; a
        campanha apenas nao passa para SENT no fim do passe.

        Raises:
            InvalidStateError: campanha fora de SCHEDULED/SENDING
        """
        # Duas tentativas: o tick pode mover SCHEDULED -> SENDING entre a
        # leitura e o UPDATE, e SENDING tambem e cancelavel.
        for _ in range(2):
            campaign = await self.get(campaign_id)
            if campaign.status not in CANCELLABLE_STATUSES:
                raise InvalidStateError(
                    "Campaign cannot be cancelled in its current status",
                    campaign.status.value,
                )

            cancelada = await self._repository.update(
                campaign_id,
                {"status": CampaignStatus.CANCELLED.value},
                expected_status=campaign.status,
            )
            if cancelada:
                logger.info(f"Campanha cancelada: {campaign_id} (estava {campaign.status.value})")
                return cancelada

        raise InvalidStateError("Campaign cannot be cancelled in its current status")

    # ------------------------------------------------------------------
    # Transicoes internas (usadas pelo dispatcher)
    # ------------------------------------------------------------------

    async def mark_sending(
        self, campaign_id: str, expected_status: CampaignStatus
    ) -> Optional[Campaign]:
        """CAS expected_status -> SENDING. None se perdeu a disputa."""
        return await self._repository.update(
            campaign_id,
            {"status": CampaignStatus.SENDING.value},
            expected_status=expected_status,
        )

    async def mark_sent(self, campaign_id: str, sent_at: Optional[datetime] = None) -> Optional[Campaign]:
        """CAS SENDING -> SENT. None se a campanha foi cancelada no meio."""
        return await self._repository.update(
            campaign_id,
            {"status": CampaignStatus.SENT.value, "sent_at": iso_utc(sent_at)},
            expected_status=CampaignStatus.SENDING,
        )

    async def revert(self, campaign_id: str, status: CampaignStatus) -> Optional[Campaign]:
        """CAS SENDING -> status anterior (envio nao chegou a comecar)."""
        return await self._repository.update(
            campaign_id,
            {"status": status.value},
            expected_status=CampaignStatus.SENDING,
        )

    async def set_recipient_count(self, campaign_id: str, count: int) -> None:
        await self._repository.update(campaign_id, {"recipient_count": count})

    async def sender_name(self, campaign: Campaign) -> Optional[str]:
        return await self._repository.get_sender_name(campaign.sender_id)

    async def list_sending(self) -> List[Campaign]:
        return await self._repository.list_by_status(CampaignStatus.SENDING)

    async def list_due(self, now: Optional[datetime] = None) -> List[Campaign]:
        """Campanhas SCHEDULED com scheduled_at <= now."""
        return await self._repository.list_due(now or agora_utc())

    # ------------------------------------------------------------------
    # Audiencia e estatisticas
    # ------------------------------------------------------------------

    async def preview_audience(
        self, criteria: Optional[dict], sample_size: Optional[int] = None
    ) -> AudiencePreview:
        """
        Caso de Uso: pre-visualizar audiencia de um filtro.

        Raises:
            ValidationError: filtro invalido
        """
        return await self._audience.resolve(
            AudienceCriteria.from_dict(criteria),
            sample_size=sample_size or CampaignConfig.SAMPLE_SIZE_DEFAULT,
        )

    async def preview_campaign_audience(
        self, campaign_id: str, sample_size: Optional[int] = None
    ) -> AudiencePreview:
        """Caso de Uso: pre-visualizar audiencia de uma campanha salva."""
        campaign = await self.get(campaign_id)
        return await self._audience.resolve(
            campaign.target_audience,
            sample_size=sample_size or CampaignConfig.SAMPLE_SIZE_DEFAULT,
        )

    async def recipient_stats(self, campaign_id: str) -> dict:
        """
        Contadores de entrega e engajamento.

        Taxas sao percentuais sobre os enviados, com uma casa decimal.
        """
        await self.get(campaign_id)
        recipients = await self._recipients.list_activity(campaign_id)
        return self._calcular_stats(recipients)

    @staticmethod
    def _calcular_stats(recipients: List[CampaignRecipient]) -> dict:
        por_status = defaultdict(int)
        opened = clicked = 0
        for r in recipients:
            por_status[r.status] += 1
            if r.opened_at:
                opened += 1
            if r.clicked_at:
                clicked += 1

        sent = por_status[RecipientStatus.SENT]
        return {
            "total": len(recipients),
            "pending": por_status[RecipientStatus.PENDING],
            "sent": sent,
            "failed": por_status[RecipientStatus.FAILED],
            "bounced": por_status[RecipientStatus.BOUNCED],
            "opened": opened,
            "clicked": clicked,
            "open_rate": _taxa(opened, sent),
            "click_rate": _taxa(clicked, sent),
        }

    async def campaign_stats(self, campaign_id: str) -> dict:
        """
        Caso de Uso: estatisticas detalhadas (inclui serie diaria).

        A serie agrupa por dia de envio: {date, sent, opened, clicked}.
        """
        campaign = await self.get(campaign_id)
        recipients = await self._recipients.list_activity(campaign_id)

        por_dia: Dict[str, Dict[str, int]] = {}
        for r in recipients:
            if not r.sent_at:
                continue
            dia = r.sent_at.date().isoformat()
            linha = por_dia.setdefault(dia, {"sent": 0, "opened": 0, "clicked": 0})
            linha["sent"] += 1
            if r.opened_at:
                linha["opened"] += 1
            if r.clicked_at:
                linha["clicked"] += 1

        return {
            "campaign": {
                "id": campaign.id,
                "name": campaign.name,
                "subject": campaign.subject,
                "status": campaign.status.value,
                "campaign_type": campaign.campaign_type.value,
                "sent_at": campaign.sent_at.isoformat() if campaign.sent_at else None,
                "recipient_count": campaign.recipient_count,
            },
            "stats": self._calcular_stats(recipients),
            "daily_stats": [{"date": dia, **por_dia[dia]} for dia in sorted(por_dia)],
        }

    async def list_recipients(
        self,
        campaign_id: str,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: Optional[int] = 1,
        limit: Optional[int] = CampaignConfig.PAGE_SIZE_RECIPIENTS,
    ) -> Tuple[List[CampaignRecipient], dict]:
        """Caso de Uso: listar destinatarios de uma campanha."""
        await self.get(campaign_id)
        if status:
            try:
                RecipientStatus(status)
            except ValueError:
                raise ValidationError(f"Invalid recipient status: '{status}'")

        page, limit = _normalizar_pagina(page, limit, CampaignConfig.PAGE_SIZE_RECIPIENTS)
        recipients, total = await self._recipients.list_for_campaign(
            campaign_id,
            status=status,
            search=search,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return recipients, _pagination(page, limit, total)

    async def segment_fields(self) -> dict:
        """Catalogo de campos segmentaveis e valores disponiveis (tags, nutricionistas, custom)."""
        opcoes = await self._audience.contacts.segment_options()
        return {"fields": list_segment_fields(), **opcoes}
