"""
Repositories das campanhas de email.

Acesso ao Supabase para campanhas, destinatarios e contatos. Leituras
logam e devolvem None/[]; escritas levantam DatabaseError, porque o
estado da campanha nao pode divergir em silencio.
"""

import logging
from typing import Iterable, List, Optional, Tuple

from tenacity import retry, stop_after_attempt, wait_exponential

from app.core.config import CampaignConfig
from app.core.decorators import handle_errors
from app.core.timezone import iso_utc
from app.services.campaigns.types import (
    Campaign,
    CampaignRecipient,
    CampaignStatus,
    Contact,
    RecipientStatus,
)
from app.services.supabase import get_supabase_client

logger = logging.getLogger(__name__)


class _SupabaseRepository:
    """Base com cliente injetavel (testes passam um db falso)."""

    def __init__(self, db_client=None):
        self._db = db_client

    @property
    def db(self):
        return self._db if self._db is not None else get_supabase_client()


class CampaignRepository(_SupabaseRepository):
    """Repository para operacoes de campanhas no banco."""

    TABLE = "email_campaigns"
    USERS_TABLE = "users"

    async def get(self, campaign_id: str) -> Optional[Campaign]:
        """
        Busca campanha ativa (nao removida) por ID.

        Args:
            campaign_id: ID da campanha

        Returns:
            Campaign ou None se nao encontrada
        """
        try:
            response = (
                self.db.table(self.TABLE)
                .select("*")
                .eq("id", campaign_id)
                .eq("is_active", True)
                .limit(1)
                .execute()
            )

            if not response.data:
                return None

            return Campaign.from_db_row(response.data[0])

        except Exception as e:
            logger.error(f"Erro ao buscar campanha {campaign_id}: {e}")
            return None

    async def list(
        self,
        status: Optional[str] = None,
        campaign_type: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = CampaignConfig.PAGE_SIZE_CAMPAIGNS,
    ) -> Tuple[List[Campaign], int]:
        """
        Lista campanhas com filtros opcionais.

        Returns:
            (campanhas da pagina, total sem paginacao)
        """
        try:
            query = (
                self.db.table(self.TABLE)
                .select("*", count="exact")
                .eq("is_active", True)
            )

            if status:
                query = query.eq("status", status)
            if campaign_type:
                query = query.eq("campaign_type", campaign_type)
            if search:
                query = query.ilike("name", f"%{search}%")

            response = (
                query.order("created_at", desc=True)
                .range(offset, offset + limit - 1)
                .execute()
            )

            rows = response.data or []
            total = response.count if response.count is not None else len(rows)
            return [Campaign.from_db_row(row) for row in rows], total

        except Exception as e:
            logger.error(f"Erro ao listar campanhas: {e}")
            return [], 0

    async def list_due(self, now) -> List[Campaign]:
        """
        Lista campanhas agendadas com horario vencido.

        Args:
            now: Datetime atual (UTC)
        """
        try:
            response = (
                self.db.table(self.TABLE)
                .select("*")
                .eq("status", CampaignStatus.SCHEDULED.value)
                .eq("is_active", True)
                .lte("scheduled_at", iso_utc(now))
                .order("scheduled_at")
                .execute()
            )

            return [Campaign.from_db_row(row) for row in (response.data or [])]

        except Exception as e:
            logger.error(f"Erro ao listar campanhas agendadas: {e}")
            return []

    async def list_by_status(self, status: CampaignStatus) -> List[Campaign]:
        """Lista campanhas ativas em um status."""
        try:
            response = (
                self.db.table(self.TABLE)
                .select("*")
                .eq("status", status.value)
                .eq("is_active", True)
                .execute()
            )

            return [Campaign.from_db_row(row) for row in (response.data or [])]

        except Exception as e:
            logger.error(f"Erro ao listar campanhas com status {status.value}: {e}")
            return []

    @handle_errors(reraise=True)
    async def create(self, data: dict) -> Campaign:
        """
        Cria nova campanha.

        Args:
            data: Colunas ja serializadas

        Returns:
            Campanha criada
        """
        now = iso_utc()
        payload = {**data, "created_at": now, "updated_at": now}
        response = self.db.table(self.TABLE).insert(payload).execute()

        campaign = Campaign.from_db_row(response.data[0])
        logger.info(f"Campanha criada: {campaign.id} - {campaign.name}")
        return campaign

    @handle_errors(reraise=True)
    async def update(
        self,
        campaign_id: str,
        data: dict,
        expected_status: Optional[CampaignStatus] = None,
    ) -> Optional[Campaign]:
        """
        Atualiza campanha.

        Com expected_status o UPDATE vira um compare-and-set: so aplica se o
        status no banco ainda for o esperado.

        Returns:
            Campanha atualizada, ou None se nao existe/status mudou
        """
        payload = {**data, "updated_at": iso_utc()}
        query = (
            self.db.table(self.TABLE)
            .update(payload)
            .eq("id", campaign_id)
            .eq("is_active", True)
        )
        if expected_status is not None:
            query = query.eq("status", expected_status.value)

        response = query.execute()
        if not response.data:
            return None
        return Campaign.from_db_row(response.data[0])

    async def get_sender_name(self, user_id: Optional[str]) -> Optional[str]:
        """Nome do usuario remetente ({{dietitian_name}})."""
        if not user_id:
            return None
        try:
            response = (
                self.db.table(self.USERS_TABLE)
                .select("first_name, last_name")
                .eq("id", user_id)
                .limit(1)
                .execute()
            )
            if not response.data:
                return None
            row = response.data[0]
            return f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip() or None
        except Exception as e:
            logger.warning(f"Erro ao buscar remetente {user_id}: {e}")
            return None


class RecipientRepository(_SupabaseRepository):
    """Repository dos destinatarios de campanha."""

    TABLE = "email_campaign_recipients"

    @handle_errors(reraise=True)
    async def create_batch(
        self, campaign_id: str, contacts: Iterable[Contact]
    ) -> List[CampaignRecipient]:
        """
        Cria um registro PENDING por contato, em um unico insert.

        Args:
            campaign_id: ID da campanha
            contacts: Snapshot da audiencia (ja deduplicado)

        Returns:
            Destinatarios criados
        """
        now = iso_utc()
        rows = [
            {
                "campaign_id": campaign_id,
                "patient_id": contact.id,
                "email": contact.email,
                "status": RecipientStatus.PENDING.value,
                "open_count": 0,
                "click_count": 0,
                "created_at": now,
                "updated_at": now,
            }
            for contact in contacts
        ]
        if not rows:
            return []

        response = self.db.table(self.TABLE).insert(rows).execute()
        return [CampaignRecipient.from_db_row(row) for row in (response.data or [])]

    @handle_errors(reraise=True)
    async def list_pending(self, campaign_id: str) -> List[CampaignRecipient]:
        """Destinatarios ainda PENDING (usado na recuperacao)."""
        response = (
            self.db.table(self.TABLE)
            .select("*")
            .eq("campaign_id", campaign_id)
            .eq("status", RecipientStatus.PENDING.value)
            .execute()
        )
        return [CampaignRecipient.from_db_row(row) for row in (response.data or [])]

    @handle_errors(reraise=True)
    async def count_for_campaign(self, campaign_id: str) -> int:
        """Total de destinatarios da campanha, em qualquer status."""
        response = (
            self.db.table(self.TABLE)
            .select("id", count="exact")
            .eq("campaign_id", campaign_id)
            .limit(1)
            .execute()
        )
        if response.count is not None:
            return response.count
        return len(response.data or [])

    async def list_for_campaign(
        self,
        campaign_id: str,
        status: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = CampaignConfig.PAGE_SIZE_RECIPIENTS,
    ) -> Tuple[List[CampaignRecipient], int]:
        """
        Lista destinatarios de uma campanha, paginado.

        Returns:
            (destinatarios da pagina, total)
        """
        try:
            query = (
                self.db.table(self.TABLE)
                .select("*", count="exact")
                .eq("campaign_id", campaign_id)
            )
            if status:
                query = query.eq("status", status)
            if search:
                query = query.ilike("email", f"%{search}%")

            response = (
                query.order("created_at")
                .range(offset, offset + limit - 1)
                .execute()
            )
            rows = response.data or []
            total = response.count if response.count is not None else len(rows)
            return [CampaignRecipient.from_db_row(row) for row in rows], total

        except Exception as e:
            logger.error(f"Erro ao listar destinatarios da campanha {campaign_id}: {e}")
            return [], 0

    async def list_activity(self, campaign_id: str) -> List[CampaignRecipient]:
        """Todos os destinatarios da campanha (para estatisticas)."""
        try:
            response = (
                self.db.table(self.TABLE)
                .select("*")
                .eq("campaign_id", campaign_id)
                .execute()
            )
            return [CampaignRecipient.from_db_row(row) for row in (response.data or [])]
        except Exception as e:
            logger.error(f"Erro ao buscar atividade da campanha {campaign_id}: {e}")
            return []

    @handle_errors(reraise=True)
    @retry(
        stop=stop_after_attempt(CampaignConfig.OUTCOME_WRITE_ATTEMPTS),
        wait=wait_exponential(multiplier=0.2, max=CampaignConfig.OUTCOME_WRITE_WAIT_MAX_SECONDS),
        reraise=True,
    )
    async def save_outcome(
        self,
        recipient_id: str,
        status: RecipientStatus,
        error_message: Optional[str] = None,
    ) -> None:
        """
        Grava o resultado do envio de um destinatario.

        Retenta a escrita (nao o envio) em falhas transitorias do banco.
        """
        payload = {"status": status.value, "updated_at": iso_utc()}
        if status == RecipientStatus.SENT:
            payload["sent_at"] = iso_utc()
            payload["error_message"] = None
        else:
            payload["error_message"] = (error_message or "Unknown error")[:1000]

        self.db.table(self.TABLE).update(payload).eq("id", recipient_id).execute()

    @handle_errors(reraise=True)
    async def record_open(self, campaign_id: str, patient_id: str) -> bool:
        """
        Registra abertura de forma atomica (funcao SQL).

        Incrementa open_count e preenche opened_at so na primeira vez.

        Returns:
            False se o par (campanha, paciente) nao existe
        """
        response = self.db.rpc(
            "record_campaign_open",
            {"p_campaign_id": campaign_id, "p_patient_id": patient_id},
        ).execute()
        return bool(response.data)

    @handle_errors(reraise=True)
    async def record_click(self, campaign_id: str, patient_id: str) -> bool:
        """
        Registra clique de forma atomica (funcao SQL).

        Incrementa click_count, preenche clicked_at na primeira vez e marca
        opened_at se ainda estiver vazio.
        """
        response = self.db.rpc(
            "record_campaign_click",
            {"p_campaign_id": campaign_id, "p_patient_id": patient_id},
        ).execute()
        return bool(response.data)


class ContactRepository(_SupabaseRepository):
    """Leitura de contatos elegiveis e escrita de supressao."""

    VIEW = "campaign_contacts"
    PATIENTS_TABLE = "patients"

    @handle_errors(reraise=True)
    async def list_eligible(self) -> List[dict]:
        """
        Contatos ativos e nao descadastrados, ordenados por nome.

        O filtro de email vazio e os criterios da campanha sao aplicados
        pelo AudienceResolver sobre estas linhas.
        """
        response = (
            self.db.table(self.VIEW)
            .select("*")
            .eq("is_active", True)
            .eq("marketing_opt_out", False)
            .order("last_name")
            .order("first_name")
            .order("id")
            .execute()
        )
        return response.data or []

    @handle_errors(reraise=True)
    async def get_many(self, contact_ids: List[str]) -> List[dict]:
        """Busca contatos por ID, sem filtros de elegibilidade."""
        if not contact_ids:
            return []
        response = (
            self.db.table(self.VIEW)
            .select("*")
            .in_("id", list(contact_ids))
            .execute()
        )
        return response.data or []

    async def find_by_unsubscribe_token(self, token: str) -> Optional[dict]:
        """Busca paciente pelo token de descadastro (match exato)."""
        try:
            response = (
                self.db.table(self.PATIENTS_TABLE)
                .select("id, first_name, last_name, email, marketing_opt_out, unsubscribed_at")
                .eq("unsubscribe_token", token)
                .limit(1)
                .execute()
            )
            return response.data[0] if response.data else None
        except Exception as e:
            logger.error(f"Erro ao buscar token de descadastro: {e}")
            return None

    @handle_errors(reraise=True)
    async def set_opt_out(self, patient_id: str) -> None:
        """Marca o paciente como descadastrado das campanhas."""
        now = iso_utc()
        self.db.table(self.PATIENTS_TABLE).update(
            {"marketing_opt_out": True, "unsubscribed_at": now, "updated_at": now}
        ).eq("id", patient_id).execute()

    @handle_errors(reraise=True)
    async def set_unsubscribe_token(self, patient_id: str, token: str) -> None:
        """Grava token de descadastro de um paciente."""
        self.db.table(self.PATIENTS_TABLE).update(
            {"unsubscribe_token": token, "updated_at": iso_utc()}
        ).eq("id", patient_id).execute()

    async def segment_options(self) -> dict:
        """Valores disponiveis para os campos dinamicos (tags, nutricionistas, custom)."""
        opcoes = {"tags": [], "dietitians": [], "custom_fields": []}
        try:
            tags = self.db.table("patient_tags").select("tag_name").execute()
            opcoes["tags"] = sorted({row["tag_name"] for row in (tags.data or []) if row.get("tag_name")})

            users = (
                self.db.table("users")
                .select("id, first_name, last_name")
                .eq("is_active", True)
                .order("last_name")
                .execute()
            )
            opcoes["dietitians"] = [
                {
                    "id": str(row["id"]),
                    "name": f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip(),
                }
                for row in (users.data or [])
            ]

            campos = (
                self.db.table("custom_field_definitions")
                .select("id, field_name, field_label, field_type, select_options")
                .eq("is_active", True)
                .order("display_order")
                .execute()
            )
            opcoes["custom_fields"] = [
                {
                    "id": str(row["id"]),
                    "name": row.get("field_label") or row.get("field_name"),
                    "type": row.get("field_type"),
                    "options": row.get("select_options"),
                }
                for row in (campos.data or [])
            ]
        except Exception as e:
            logger.error(f"Erro ao carregar opcoes de segmentacao: {e}")
        return opcoes
