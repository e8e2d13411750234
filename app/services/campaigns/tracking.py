"""
Tracking de abertura e clique.

Chamado em background pelos endpoints publicos; erros aqui nunca chegam
ao leitor do email.
"""
import logging
from typing import Optional

from app.services.campaigns.repository import RecipientRepository

logger = logging.getLogger(__name__)


class TrackingService:
    """Registra engajamento de destinatarios."""

    def __init__(self, recipients: Optional[RecipientRepository] = None):
        self.recipients = recipients or RecipientRepository()

    async def record_open(self, campaign_id: str, patient_id: str) -> bool:
        """
        Registra abertura.

        Returns:
            False se o par campanha/paciente nao existe
        """
        registrado = await self.recipients.record_open(campaign_id, patient_id)
        if not registrado:
            logger.debug(f"Abertura ignorada: {campaign_id}/{patient_id} desconhecido")
        return registrado

    async def record_click(
        self, campaign_id: str, patient_id: str, url: Optional[str] = None
    ) -> bool:
        """Registra clique (e abertura, se ainda nao havia)."""
        registrado = await self.recipients.record_click(campaign_id, patient_id)
        if registrado:
            logger.info(
                "Clique registrado",
                extra={"campaign_id": campaign_id, "patient_id": patient_id, "url": url},
            )
        else:
            logger.debug(f"Clique ignorado: {campaign_id}/{patient_id} desconhecido")
        return registrado
