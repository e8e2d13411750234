"""
Dispatcher de campanhas.

Executa um passe de envio de uma campanha:
1. Lock por campanha (Redis) e revalidacao do status
2. CAS para SENDING
3. Resolucao da audiencia (sempre nova) e snapshot em destinatarios PENDING
4. Envio com pool limitado por semaforo
5. Barreira e CAS SENDING -> SENT

Usado pelo "enviar agora" da API, pelo job de campanhas agendadas e pela
recuperacao de passes interrompidos na inicializacao.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from app.core.config import settings
from app.core.distributed_lock import DistributedLock, campaign_dispatch_lock
from app.core.exceptions import (
    AlreadyInProgressError,
    DatabaseError,
    ExternalAPIError,
    InvalidStateError,
    NoRecipientsError,
    NutriVaultException,
)
from app.core.timezone import agora_utc
from app.services.campaigns.audience import AudienceResolver
from app.services.campaigns.personalization import TrackingLinks, build_personalized_email
from app.services.campaigns.repository import RecipientRepository
from app.services.campaigns.store import CampaignStore
from app.services.campaigns.types import (
    Campaign,
    CampaignRecipient,
    CampaignStatus,
    Contact,
    DispatchResult,
    DispatchTrigger,
    RecipientStatus,
)
from app.services.campaigns.unsubscribe import UnsubscribeService
from app.services.email import EmailTransport, OutboundEmail, email_transport

logger = logging.getLogger(__name__)

SEND_ERROR_MESSAGE = "Campaign cannot be sent in its current status"
CONTACT_MISSING_MESSAGE = "Contact no longer available"


class CampaignDispatcher:
    """Envia campanhas para a audiencia resolvida."""

    def __init__(
        self,
        store: Optional[CampaignStore] = None,
        recipients: Optional[RecipientRepository] = None,
        audience: Optional[AudienceResolver] = None,
        unsubscribe: Optional[UnsubscribeService] = None,
        transport: Optional[EmailTransport] = None,
        lock_factory: Optional[Callable[[str], DistributedLock]] = None,
        concurrency: Optional[int] = None,
        delay_ms: Optional[int] = None,
    ):
        self._store = store or CampaignStore()
        self._recipients = recipients or RecipientRepository()
        self._audience = audience or AudienceResolver()
        self._unsubscribe = unsubscribe or UnsubscribeService()
        self._transport = transport or email_transport
        self._lock_factory = lock_factory or campaign_dispatch_lock
        self.concurrency = max(concurrency or settings.CAMPAIGN_SEND_CONCURRENCY, 1)
        self.delay_ms = settings.CAMPAIGN_SEND_DELAY_MS if delay_ms is None else delay_ms

    async def _adquirir(self, campaign_id: str) -> DistributedLock:
        lock = self._lock_factory(campaign_id)
        if not await lock.acquire():
            raise AlreadyInProgressError(
                "Campaign dispatch already in progress",
                details={"campaign_id": campaign_id},
            )
        return lock

    async def dispatch(
        self,
        campaign_id: str,
        trigger: DispatchTrigger = DispatchTrigger.MANUAL,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """
        Executa um passe de envio.

        Args:
            campaign_id: ID da campanha
            trigger: MANUAL (enviar agora) ou SCHEDULED (tick do scheduler)
            now: Relogio usado na checagem de vencimento

        Raises:
            AlreadyInProgressError: outro dispatch segura o lock
            NotFoundError: campanha inexistente
            InvalidStateError: status nao permite envio
            NoRecipientsError: audiencia vazia (status revertido)
        """
        lock = await self._adquirir(campaign_id)
        try:
            return await self._dispatch(campaign_id, trigger, now or agora_utc())
        finally:
            await lock.release()

    @staticmethod
    def _pode_enviar(campaign: Campaign, trigger: DispatchTrigger, now: datetime) -> bool:
        if trigger == DispatchTrigger.MANUAL:
            return campaign.status in (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)
        if trigger == DispatchTrigger.SCHEDULED:
            return (
                campaign.status == CampaignStatus.SCHEDULED
                and campaign.scheduled_at is not None
                and campaign.scheduled_at <= now
            )
        return False

    async def _dispatch(
        self, campaign_id: str, trigger: DispatchTrigger, now: datetime
    ) -> DispatchResult:
        campaign = await self._store.get(campaign_id)
        anterior = campaign.status

        if not self._pode_enviar(campaign, trigger, now):
            raise InvalidStateError(SEND_ERROR_MESSAGE, campaign.status.value)

        if not await self._store.mark_sending(campaign_id, anterior):
            # Cancelada ou disparada por outro caminho entre a leitura e o CAS
            raise InvalidStateError(SEND_ERROR_MESSAGE)

        logger.info(
            f"Iniciando dispatch da campanha {campaign_id}",
            extra={"campaign_id": campaign_id, "trigger": trigger.value},
        )

        try:
            contacts = await self._audience.resolve_full(campaign.target_audience)
            if not contacts:
                raise NoRecipientsError()

            contacts = await self._garantir_tokens(contacts)
            recipients = await self._recipients.create_batch(campaign_id, contacts)
        except Exception:
            # Snapshot ainda nao gravado: volta ao status anterior
            await self._store.revert(campaign_id, anterior)
            logger.warning(f"Dispatch da campanha {campaign_id} revertido para {anterior.value}")
            raise

        # Com o snapshot gravado o passe nao reverte mais
        await self._gravar_contagem(campaign_id, len(recipients))

        por_id = {c.id: c for c in contacts}
        pares = [(r, por_id.get(r.patient_id)) for r in recipients]

        sent, failed = await self._enviar_todos(campaign, pares)
        return await self._finalizar(campaign_id, trigger, len(pares), sent, failed)

    async def _gravar_contagem(self, campaign_id: str, count: int) -> None:
        try:
            await self._store.set_recipient_count(campaign_id, count)
        except DatabaseError as e:
            logger.error(
                f"Falha ao gravar recipient_count da campanha {campaign_id}: {e}",
                extra={"campaign_id": campaign_id, "recipient_count": count},
            )

    async def _garantir_tokens(self, contacts: List[Contact]) -> List[Contact]:
        """Emite token de descadastro para quem ainda nao tem."""
        for contact in contacts:
            if not contact.unsubscribe_token:
                contact.unsubscribe_token = await self._unsubscribe.issue_token(contact.id)
        return contacts

    async def _enviar_todos(
        self,
        campaign: Campaign,
        pares: List[Tuple[CampaignRecipient, Optional[Contact]]],
    ) -> Tuple[int, int]:
        """Envia com no maximo `concurrency` envios simultaneos."""
        semaforo = asyncio.Semaphore(self.concurrency)
        sender_name = await self._store.sender_name(campaign)

        async def _worker(recipient: CampaignRecipient, contact: Optional[Contact]) -> bool:
            async with semaforo:
                ok = await self._enviar_um(campaign, recipient, contact, sender_name)
                if self.delay_ms > 0:
                    await asyncio.sleep(self.delay_ms / 1000)
                return ok

        resultados = await asyncio.gather(*(_worker(r, c) for r, c in pares))
        sent = sum(1 for ok in resultados if ok)
        return sent, len(resultados) - sent

    async def _enviar_um(
        self,
        campaign: Campaign,
        recipient: CampaignRecipient,
        contact: Optional[Contact],
        sender_name: Optional[str],
    ) -> bool:
        """Envia para um destinatario e grava o resultado. Nunca levanta."""
        if contact is None:
            # Paciente removido entre o snapshot e a retomada: sem token de descadastro
            logger.warning(
                f"Contato {recipient.patient_id} nao encontrado, destinatario {recipient.id} marcado FAILED",
                extra={"campaign_id": campaign.id, "recipient_id": recipient.id},
            )
            await self._gravar_resultado(campaign.id, recipient, False, CONTACT_MISSING_MESSAGE)
            return False

        links = TrackingLinks.build(campaign.id, contact.id, contact.unsubscribe_token)
        email = build_personalized_email(campaign, contact, links, sender_name=sender_name)

        try:
            await self._transport.send(
                OutboundEmail(
                    to=recipient.email or contact.email,
                    subject=email.subject,
                    html=email.html,
                    text=email.text,
                    from_name=sender_name,
                    headers={
                        "List-Unsubscribe": f"<{links.unsubscribe}>",
                        "List-Unsubscribe-Post": "List-Unsubscribe=One-Click",
                    },
                )
            )
            ok, erro = True, None
        except ExternalAPIError as e:
            ok, erro = False, e.message
        except Exception as e:
            logger.error(f"Erro inesperado enviando para {recipient.email}: {e}", exc_info=True)
            ok, erro = False, str(e) or type(e).__name__

        await self._gravar_resultado(campaign.id, recipient, ok, erro)
        return ok

    async def _gravar_resultado(
        self,
        campaign_id: str,
        recipient: CampaignRecipient,
        ok: bool,
        erro: Optional[str] = None,
    ) -> None:
        try:
            if ok:
                await self._recipients.save_outcome(recipient.id, RecipientStatus.SENT)
            else:
                await self._recipients.save_outcome(recipient.id, RecipientStatus.FAILED, erro)
        except DatabaseError as e:
            # Fica PENDING; a recuperacao reenviaria este destinatario
            logger.error(
                f"Falha ao gravar resultado do destinatario {recipient.id}: {e}",
                extra={"campaign_id": campaign_id, "recipient_id": recipient.id},
            )

    async def _finalizar(
        self,
        campaign_id: str,
        trigger: DispatchTrigger,
        total: int,
        sent: int,
        failed: int,
    ) -> DispatchResult:
        concluida = await self._store.mark_sent(campaign_id)
        if concluida:
            status, cancelled = CampaignStatus.SENT, False
        else:
            atual = await self._store.get(campaign_id)
            status = atual.status
            cancelled = atual.status == CampaignStatus.CANCELLED

        logger.info(
            f"Dispatch da campanha {campaign_id} concluido: {sent} enviados, {failed} falhas",
            extra={
                "campaign_id": campaign_id,
                "trigger": trigger.value,
                "total": total,
                "sent": sent,
                "failed": failed,
                "status": status.value,
            },
        )

        return DispatchResult(
            campaign_id=campaign_id,
            trigger=trigger,
            status=status,
            total=total,
            sent=sent,
            failed=failed,
            cancelled=cancelled,
        )

    async def resume(self, campaign_id: str) -> DispatchResult:
        """
        Retoma um passe interrompido: reenvia apenas destinatarios PENDING.

        O snapshot de destinatarios ja existe, a audiencia nao e resolvida
        de novo. Campanha em SENDING sem snapshot (passe caiu antes de
        gravar os destinatarios) volta para SCHEDULED, ou DRAFT se nao
        tinha agendamento.

        Raises:
            AlreadyInProgressError: outro dispatch segura o lock
            InvalidStateError: campanha nao esta em SENDING
        """
        lock = await self._adquirir(campaign_id)
        try:
            campaign = await self._store.get(campaign_id)
            if campaign.status != CampaignStatus.SENDING:
                raise InvalidStateError(SEND_ERROR_MESSAGE, campaign.status.value)

            pendentes = await self._recipients.list_pending(campaign_id)
            if not pendentes and await self._recipients.count_for_campaign(campaign_id) == 0:
                return await self._reverter_sem_snapshot(campaign)

            contacts = await self._audience.fetch_contacts([r.patient_id for r in pendentes])
            contacts = await self._garantir_tokens(contacts)
            por_id = {c.id: c for c in contacts}

            logger.info(
                f"Retomando campanha {campaign_id}: {len(pendentes)} pendentes",
                extra={"campaign_id": campaign_id},
            )

            sent, failed = await self._enviar_todos(
                campaign, [(r, por_id.get(r.patient_id)) for r in pendentes]
            )
            return await self._finalizar(
                campaign_id, DispatchTrigger.RECOVERY, len(pendentes), sent, failed
            )
        finally:
            await lock.release()

    async def _reverter_sem_snapshot(self, campaign: Campaign) -> DispatchResult:
        destino = CampaignStatus.SCHEDULED if campaign.scheduled_at else CampaignStatus.DRAFT
        revertida = await self._store.revert(campaign.id, destino)
        if revertida is None:
            status = (await self._store.get(campaign.id)).status
        else:
            status = destino

        logger.warning(
            f"Campanha {campaign.id} em SENDING sem destinatarios, revertida para {status.value}",
            extra={"campaign_id": campaign.id},
        )
        return DispatchResult(
            campaign_id=campaign.id,
            trigger=DispatchTrigger.RECOVERY,
            status=status,
            total=0,
            sent=0,
            failed=0,
            cancelled=status == CampaignStatus.CANCELLED,
        )

    async def recover_interrupted(self) -> List[DispatchResult]:
        """Retoma toda campanha deixada em SENDING (executado na inicializacao)."""
        resultados = []
        for campaign in await self._store.list_sending():
            try:
                resultados.append(await self.resume(campaign.id))
            except NutriVaultException as e:
                logger.warning(f"Recuperacao da campanha {campaign.id} ignorada: {e}")

        if resultados:
            logger.info(f"Recuperacao concluida: {len(resultados)} campanhas retomadas")
        return resultados

