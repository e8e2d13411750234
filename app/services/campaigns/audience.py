"""
Resolucao de audiencia das campanhas.

Traduz AudienceCriteria em lista de contatos. Os filtros base (ativo,
com email, sem opt-out) sempre valem, independente da logica AND/OR das
condicoes. Cada chamada consulta o banco de novo: um contato que se
descadastrou entre o agendamento e o envio nao entra no envio.
"""
import logging
from typing import List, Optional

from app.core.config import settings
from app.services.campaigns.criteria import AudienceCriteria
from app.services.campaigns.repository import ContactRepository
from app.services.campaigns.types import AudiencePreview, Contact

logger = logging.getLogger(__name__)


def _tem_email(row: dict) -> bool:
    return bool((row.get("email") or "").strip())


class AudienceResolver:
    """Resolve criterios de audiencia contra a base de contatos."""

    def __init__(self, contacts: Optional[ContactRepository] = None):
        self.contacts = contacts or ContactRepository()

    async def _matching_rows(self, criteria: AudienceCriteria) -> List[dict]:
        rows = await self.contacts.list_eligible()

        vistos = set()
        resultado = []
        for row in rows:
            contact_id = str(row["id"])
            if contact_id in vistos:
                continue
            if row.get("marketing_opt_out") or row.get("is_active") is False:
                continue
            if not _tem_email(row):
                continue
            if not criteria.matches(row):
                continue
            vistos.add(contact_id)
            resultado.append(row)

        return resultado

    async def resolve(
        self,
        criteria: AudienceCriteria,
        sample_size: Optional[int] = None,
    ) -> AudiencePreview:
        """
        Conta a audiencia e devolve uma amostra. Nao cria destinatarios.

        Args:
            criteria: Filtro de audiencia
            sample_size: Tamanho da amostra (default CAMPAIGN_PREVIEW_SAMPLE_SIZE)
        """
        if sample_size is None:
            sample_size = settings.CAMPAIGN_PREVIEW_SAMPLE_SIZE

        rows = await self._matching_rows(criteria)
        sample = [Contact.from_db_row(row).to_sample() for row in rows[: max(sample_size, 0)]]

        logger.debug(f"Audiencia resolvida: {len(rows)} contatos")
        return AudiencePreview(count=len(rows), sample=sample)

    async def resolve_full(self, criteria: AudienceCriteria) -> List[Contact]:
        """
        Todos os contatos da audiencia, ordenados por sobrenome, nome e id.

        Raises:
            DatabaseError: falha na consulta (o dispatcher reverte o status)
        """
        rows = await self._matching_rows(criteria)
        return [Contact.from_db_row(row) for row in rows]

    async def fetch_contacts(self, contact_ids: List[str]) -> List[Contact]:
        """Contatos por ID, sem filtro de elegibilidade (passe de recuperacao)."""
        rows = await self.contacts.get_many(contact_ids)
        return [Contact.from_db_row(row) for row in rows]
