"""
Tipos e enums para campanhas de email.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from app.core.exceptions import ValidationError
from app.core.timezone import parse_datetime
from app.services.campaigns.criteria import AudienceCriteria


class CampaignType(str, Enum):
    """Tipos de campanha disponiveis."""

    NEWSLETTER = "newsletter"
    PROMOTIONAL = "promotional"
    EDUCATIONAL = "educational"
    REMINDER = "reminder"


class CampaignStatus(str, Enum):
    """Status possiveis de uma campanha."""

    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    CANCELLED = "cancelled"


class RecipientStatus(str, Enum):
    """Status de entrega por destinatario."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    BOUNCED = "bounced"


class DispatchTrigger(str, Enum):
    """Origem de um dispatch."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    RECOVERY = "recovery"


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


@dataclass
class Campaign:
    """Dados de uma campanha."""

    id: str
    name: str
    subject: str
    body_html: Optional[str] = None
    body_text: Optional[str] = None
    campaign_type: CampaignType = CampaignType.NEWSLETTER
    status: CampaignStatus = CampaignStatus.DRAFT
    target_audience: AudienceCriteria = field(default_factory=AudienceCriteria)
    scheduled_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    recipient_count: int = 0
    sender_id: Optional[str] = None
    created_by: Optional[str] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Campos alteraveis enquanto DRAFT
    EDITABLE_FIELDS = (
        "name",
        "subject",
        "body_html",
        "body_text",
        "campaign_type",
        "target_audience",
        "sender_id",
    )

    @classmethod
    def from_db_row(cls, row: dict) -> "Campaign":
        """Cria a partir de linha do banco."""
        try:
            campaign_type = CampaignType(row.get("campaign_type") or "newsletter")
        except ValueError:
            campaign_type = CampaignType.NEWSLETTER

        # Criterio invalido salvo no banco nao pode derrubar a leitura
        try:
            audience = AudienceCriteria.from_dict(row.get("target_audience"))
        except ValidationError:
            audience = AudienceCriteria()

        return cls(
            id=str(row["id"]),
            name=row.get("name", ""),
            subject=row.get("subject", ""),
            body_html=row.get("body_html"),
            body_text=row.get("body_text"),
            campaign_type=campaign_type,
            status=CampaignStatus(row.get("status") or "draft"),
            target_audience=audience,
            scheduled_at=parse_datetime(row.get("scheduled_at")),
            sent_at=parse_datetime(row.get("sent_at")),
            recipient_count=row.get("recipient_count") or 0,
            sender_id=row.get("sender_id"),
            created_by=row.get("created_by"),
            is_active=row.get("is_active", True),
            created_at=parse_datetime(row.get("created_at")),
            updated_at=parse_datetime(row.get("updated_at")),
        )

    def to_dict(self) -> dict:
        """Converte para dicionario."""
        return {
            "id": self.id,
            "name": self.name,
            "subject": self.subject,
            "body_html": self.body_html,
            "body_text": self.body_text,
            "campaign_type": self.campaign_type.value,
            "status": self.status.value,
            "target_audience": self.target_audience.to_dict(),
            "scheduled_at": _iso(self.scheduled_at),
            "sent_at": _iso(self.sent_at),
            "recipient_count": self.recipient_count,
            "sender_id": self.sender_id,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class CampaignRecipient:
    """Registro de entrega de uma campanha para um contato."""

    id: str
    campaign_id: str
    patient_id: str
    email: str
    status: RecipientStatus = RecipientStatus.PENDING
    sent_at: Optional[datetime] = None
    opened_at: Optional[datetime] = None
    open_count: int = 0
    clicked_at: Optional[datetime] = None
    click_count: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_db_row(cls, row: dict) -> "CampaignRecipient":
        """Cria a partir de linha do banco."""
        return cls(
            id=str(row["id"]),
            campaign_id=str(row["campaign_id"]),
            patient_id=str(row["patient_id"]),
            email=row.get("email", ""),
            status=RecipientStatus(row.get("status") or "pending"),
            sent_at=parse_datetime(row.get("sent_at")),
            opened_at=parse_datetime(row.get("opened_at")),
            open_count=row.get("open_count") or 0,
            clicked_at=parse_datetime(row.get("clicked_at")),
            click_count=row.get("click_count") or 0,
            error_message=row.get("error_message"),
            created_at=parse_datetime(row.get("created_at")),
        )

    def to_dict(self) -> dict:
        """Converte para dicionario."""
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "patient_id": self.patient_id,
            "email": self.email,
            "status": self.status.value,
            "sent_at": _iso(self.sent_at),
            "opened_at": _iso(self.opened_at),
            "open_count": self.open_count,
            "clicked_at": _iso(self.clicked_at),
            "click_count": self.click_count,
            "error_message": self.error_message,
        }


@dataclass
class Contact:
    """Contato (paciente) elegivel para campanhas."""

    id: str
    email: Optional[str]
    first_name: str = ""
    last_name: str = ""
    language_preference: Optional[str] = None
    unsubscribe_token: Optional[str] = None
    dietitian_name: Optional[str] = None

    @classmethod
    def from_db_row(cls, row: dict) -> "Contact":
        """Cria a partir de linha da view campaign_contacts."""
        return cls(
            id=str(row["id"]),
            email=row.get("email"),
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            language_preference=row.get("language_preference"),
            unsubscribe_token=row.get("unsubscribe_token"),
            dietitian_name=row.get("dietitian_name"),
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_sample(self) -> dict:
        """Formato resumido usado no preview de audiencia."""
        return {
            "id": self.id,
            "name": self.full_name,
            "email": self.email,
            "language": self.language_preference,
        }


@dataclass
class AudiencePreview:
    """Resultado do preview de audiencia."""

    count: int
    sample: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"count": self.count, "sample": self.sample}


@dataclass
class DispatchResult:
    """Resultado de um dispatch de campanha."""

    campaign_id: str
    trigger: DispatchTrigger
    status: CampaignStatus
    total: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "campaign_id": self.campaign_id,
            "trigger": self.trigger.value,
            "status": self.status.value,
            "total": self.total,
            "sent": self.sent,
            "failed": self.failed,
            "cancelled": self.cancelled,
        }
