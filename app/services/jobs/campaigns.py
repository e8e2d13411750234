"""
Job de campanhas agendadas.

Dispara cada campanha SCHEDULED com horario vencido. Disputas (lock
ocupado, campanha cancelada no meio, audiencia vazia) sao contadas e
nao derrubam o job.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from app.core.exceptions import (
    AlreadyInProgressError,
    InvalidStateError,
    NoRecipientsError,
    NotFoundError,
    NutriVaultException,
)
from app.core.timezone import agora_utc
from app.services.campaigns import campaign_dispatcher, campaign_store
from app.services.campaigns.types import DispatchTrigger

logger = logging.getLogger(__name__)


@dataclass
class DueCampaignsResult:
    """Resultado do processamento de campanhas agendadas."""

    processed: int = 0
    dispatched: int = 0
    skipped: int = 0
    failed: int = 0
    results: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "dispatched": self.dispatched,
            "skipped": self.skipped,
            "failed": self.failed,
            "results": self.results,
        }


async def process_due_campaigns(
    now: Optional[datetime] = None,
    store=None,
    dispatcher=None,
) -> DueCampaignsResult:
    """
    Processa campanhas prontas para envio.

    Args:
        now: Relogio (default agora UTC)
        store: CampaignStore (default: singleton)
        dispatcher: CampaignDispatcher (default: singleton)

    Returns:
        DueCampaignsResult com estatisticas
    """
    now = now or agora_utc()
    store = store or campaign_store
    dispatcher = dispatcher or campaign_dispatcher

    campanhas = await store.list_due(now)
    resultado = DueCampaignsResult()

    for campaign in campanhas:
        resultado.processed += 1
        try:
            dispatch = await dispatcher.dispatch(campaign.id, DispatchTrigger.SCHEDULED, now=now)
            resultado.dispatched += 1
            resultado.results.append(dispatch.to_dict())

        except (AlreadyInProgressError, InvalidStateError, NotFoundError) as e:
            # Outro dispatch ou um cancelamento chegou antes
            resultado.skipped += 1
            resultado.results.append({"campaign_id": campaign.id, "skipped": e.message})
            logger.info(f"Campanha {campaign.id} ignorada: {e.message}")

        except NoRecipientsError as e:
            resultado.failed += 1
            resultado.results.append({"campaign_id": campaign.id, "error": e.message})
            logger.warning(f"Campanha {campaign.id} sem destinatarios no envio")

        except NutriVaultException as e:
            resultado.failed += 1
            resultado.results.append({"campaign_id": campaign.id, "error": e.message})
            logger.error(f"Erro ao disparar campanha {campaign.id}: {e}")

    if resultado.processed:
        logger.info(
            f"Campanhas agendadas: {resultado.dispatched} disparadas, "
            f"{resultado.skipped} ignoradas, {resultado.failed} com erro"
        )
    return resultado
