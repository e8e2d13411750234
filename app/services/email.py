"""
Transporte de email (SMTP via aiosmtplib).

O dispatcher e o job de lembretes so conhecem `EmailTransport.send`;
testes trocam o transporte por um AsyncMock.
"""
import logging
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Optional, Protocol

import aiosmtplib

from app.core.config import settings
from app.core.exceptions import ExternalAPIError

logger = logging.getLogger(__name__)


@dataclass
class OutboundEmail:
    """Email pronto para o transporte."""

    to: str
    subject: str
    html: str
    text: str
    from_name: Optional[str] = None
    headers: Optional[dict] = None


class EmailTransport(Protocol):
    async def send(self, email: OutboundEmail) -> str: ...


class SmtpEmailTransport:
    """Envio via SMTP, uma conexao por mensagem."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        from_address: Optional[str] = None,
        from_name: Optional[str] = None,
    ):
        self.host = host or settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.username = username if username is not None else settings.SMTP_USERNAME
        self.password = password if password is not None else settings.SMTP_PASSWORD
        self.from_address = from_address or settings.EMAIL_FROM
        self.from_name = from_name or settings.EMAIL_FROM_NAME

    def build_message(self, email: OutboundEmail) -> EmailMessage:
        """Monta mensagem multipart (texto + HTML)."""
        msg = EmailMessage()
        msg["From"] = formataddr((email.from_name or self.from_name, self.from_address))
        msg["To"] = email.to
        msg["Subject"] = email.subject
        msg["Message-ID"] = make_msgid(domain=self.from_address.split("@")[-1])
        for header, value in (email.headers or {}).items():
            if value is not None:
                msg[header] = str(value)

        msg.set_content(email.text or "")
        msg.add_alternative(email.html, subtype="html")
        return msg

    async def send(self, email: OutboundEmail) -> str:
        """
        Envia um email.

        Returns:
            Message-ID gerado

        Raises:
            ExternalAPIError: falha de conexao ou recusa do servidor SMTP
        """
        msg = self.build_message(email)
        try:
            await aiosmtplib.send(
                msg,
                hostname=self.host,
                port=self.port,
                username=self.username or None,
                password=self.password or None,
                use_tls=settings.SMTP_USE_TLS,
                start_tls=settings.SMTP_START_TLS if not settings.SMTP_USE_TLS else False,
                timeout=settings.SMTP_TIMEOUT_SECONDS,
            )
        except (aiosmtplib.SMTPException, OSError, TimeoutError) as e:
            logger.warning(f"Falha SMTP para {email.to}: {e}")
            raise ExternalAPIError(
                f"SMTP send failed: {e}",
                service="smtp",
                details={"to": email.to},
                original_error=e,
            ) from e

        logger.debug(f"Email enviado para {email.to}")
        return msg["Message-ID"]


email_transport = SmtpEmailTransport()
