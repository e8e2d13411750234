"""
Job de lembretes de consulta.

Para cada janela configurada (APPOINTMENT_REMINDER_HOURS) envia email
aos pacientes com consulta agendada em torno de agora + N horas.
"""
import html
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from app.core.config import CampaignConfig, settings
from app.core.decorators import handle_errors
from app.core.exceptions import DatabaseError, ExternalAPIError
from app.core.timezone import agora_utc, iso_utc, para_local, parse_datetime
from app.services.email import OutboundEmail, email_transport
from app.services.supabase import get_supabase_client

logger = logging.getLogger(__name__)

VISIT_STATUS_SCHEDULED = "SCHEDULED"


@dataclass
class ReminderBatchResult:
    """Resultado de um lote de lembretes."""

    total_sent: int = 0
    total_failed: int = 0

    def to_dict(self) -> dict:
        return {"total_sent": self.total_sent, "total_failed": self.total_failed}


class VisitRepository:
    """Consultas, pacientes e nutricionistas usados nos lembretes."""

    VISITS_TABLE = "visits"
    PATIENTS_TABLE = "patients"
    USERS_TABLE = "users"

    def __init__(self, db_client=None):
        self._db = db_client

    @property
    def db(self):
        return self._db if self._db is not None else get_supabase_client()

    @handle_errors(reraise=True)
    async def list_in_window(self, inicio: datetime, fim: datetime, max_reminders: int) -> List[dict]:
        """Consultas SCHEDULED entre inicio e fim com lembretes abaixo do limite."""
        response = (
            self.db.table(self.VISITS_TABLE)
            .select("*")
            .eq("status", VISIT_STATUS_SCHEDULED)
            .gte("visit_date", iso_utc(inicio))
            .lte("visit_date", iso_utc(fim))
            .lt("reminders_sent", max_reminders)
            .execute()
        )
        return response.data or []

    @handle_errors(reraise=True)
    async def get_patients(self, ids: List[str]) -> Dict[str, dict]:
        if not ids:
            return {}
        response = (
            self.db.table(self.PATIENTS_TABLE)
            .select("id, first_name, last_name, email, appointment_reminders_enabled")
            .in_("id", ids)
            .execute()
        )
        return {str(row["id"]): row for row in (response.data or [])}

    @handle_errors(reraise=True)
    async def get_users(self, ids: List[str]) -> Dict[str, dict]:
        if not ids:
            return {}
        response = (
            self.db.table(self.USERS_TABLE)
            .select("id, first_name, last_name")
            .in_("id", ids)
            .execute()
        )
        return {str(row["id"]): row for row in (response.data or [])}

    @handle_errors(reraise=True)
    async def mark_reminded(self, visit_id: str, reminders_sent: int, when: datetime) -> None:
        self.db.table(self.VISITS_TABLE).update(
            {"reminders_sent": reminders_sent, "last_reminder_date": iso_utc(when)}
        ).eq("id", visit_id).execute()


def _nome(row: Optional[dict]) -> str:
    if not row:
        return ""
    return f"{row.get('first_name') or ''} {row.get('last_name') or ''}".strip()


def build_reminder_email(visit: dict, patient: dict, dietitian: Optional[dict]) -> OutboundEmail:
    """Email de lembrete (horario exibido no fuso do consultorio)."""
    quando = para_local(parse_datetime(visit["visit_date"]))
    data_txt = quando.strftime("%A %d %B %Y at %H:%M")
    nutricionista = _nome(dietitian) or "your dietitian"
    primeiro_nome = patient.get("first_name") or ""

    texto = (
        f"Hello {primeiro_nome},\n\n"
        f"This is a reminder of your appointment with {nutricionista} on {data_txt}.\n\n"
        "If you cannot attend, please let us know."
    )
    corpo = (
        f"<p>Hello {html.escape(primeiro_nome)},</p>"
        f"<p>This is a reminder of your appointment with {html.escape(nutricionista)} "
        f"on <strong>{html.escape(data_txt)}</strong>.</p>"
        "<p>If you cannot attend, please let us know.</p>"
    )
    return OutboundEmail(
        to=patient["email"],
        subject=f"Appointment reminder - {quando.strftime('%d/%m/%Y %H:%M')}",
        html=f"<!DOCTYPE html><html><body>{corpo}</body></html>",
        text=texto,
        from_name=_nome(dietitian) or None,
    )


def _elegivel(visit: dict, patient: Optional[dict], limite_ultimo: datetime) -> bool:
    if not patient or not (patient.get("email") or "").strip():
        return False
    if not patient.get("appointment_reminders_enabled", True):
        return False
    ultimo = parse_datetime(visit.get("last_reminder_date"))
    return ultimo is None or ultimo < limite_ultimo


async def process_appointment_reminders(
    now: Optional[datetime] = None,
    repository: Optional[VisitRepository] = None,
    transport=None,
) -> ReminderBatchResult:
    """
    Envia os lembretes devidos.

    Regras por consulta:
    - status SCHEDULED e visit_date em [now+h-1h, now+h+1h]
    - reminders_sent < MAX_REMINDERS_PER_VISIT
    - ultimo lembrete ha mais de 12h (ou nunca)
    - paciente com email e lembretes habilitados

    Returns:
        ReminderBatchResult
    """
    now = now or agora_utc()
    repository = repository or VisitRepository()
    transport = transport or email_transport
    janela = timedelta(hours=CampaignConfig.REMINDER_WINDOW_HOURS)
    limite_ultimo = now - timedelta(hours=CampaignConfig.REMINDER_MIN_INTERVAL_HOURS)

    resultado = ReminderBatchResult()
    ja_enviadas = set()

    for horas in settings.reminder_hours:
        alvo = now + timedelta(hours=horas)
        visits = await repository.list_in_window(
            alvo - janela, alvo + janela, settings.MAX_REMINDERS_PER_VISIT
        )
        visits = [v for v in visits if str(v["id"]) not in ja_enviadas]
        if not visits:
            continue

        patients = await repository.get_patients(sorted({str(v["patient_id"]) for v in visits}))
        users = await repository.get_users(
            sorted({str(v["dietitian_id"]) for v in visits if v.get("dietitian_id")})
        )
        logger.info(f"Lembretes {horas}h: {len(visits)} consultas na janela")

        for visit in visits:
            patient = patients.get(str(visit["patient_id"]))
            if not _elegivel(visit, patient, limite_ultimo):
                continue

            visit_id = str(visit["id"])
            try:
                email = build_reminder_email(visit, patient, users.get(str(visit.get("dietitian_id"))))
                await transport.send(email)
                await repository.mark_reminded(
                    visit_id, (visit.get("reminders_sent") or 0) + 1, now
                )
                ja_enviadas.add(visit_id)
                resultado.total_sent += 1
            except (ExternalAPIError, DatabaseError) as e:
                resultado.total_failed += 1
                logger.error(f"Erro no lembrete da consulta {visit_id}: {e}")

    logger.info(
        f"Lembretes concluidos: {resultado.total_sent} enviados, {resultado.total_failed} falhas"
    )
    return resultado
