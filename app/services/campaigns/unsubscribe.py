"""
Descadastro de campanhas via token.
"""
import logging
import secrets
from typing import Optional

from app.core.exceptions import InvalidTokenError
from app.services.campaigns.repository import ContactRepository
from app.services.campaigns.types import Contact

logger = logging.getLogger(__name__)


class UnsubscribeService:
    """Emite e consome tokens de descadastro."""

    def __init__(self, contacts: Optional[ContactRepository] = None):
        self.contacts = contacts or ContactRepository()

    async def unsubscribe(self, token: Optional[str]) -> Contact:
        """
        Marca o contato dono do token como descadastrado.

        Repetir o descadastro e permitido e nao altera unsubscribed_at.

        Raises:
            InvalidTokenError: token vazio ou desconhecido
        """
        token = (token or "").strip()
        if not token:
            raise InvalidTokenError()

        row = await self.contacts.find_by_unsubscribe_token(token)
        if not row:
            raise InvalidTokenError()

        contact = Contact.from_db_row(row)
        if row.get("marketing_opt_out") and row.get("unsubscribed_at"):
            logger.info(f"Contato {contact.id} ja descadastrado")
            return contact

        await self.contacts.set_opt_out(contact.id)
        logger.info(f"Contato descadastrado das campanhas: {contact.id}")
        return contact

    async def issue_token(self, contact_id: str) -> str:
        """Gera e grava um token novo para o contato."""
        token = secrets.token_urlsafe(32)
        await self.contacts.set_unsubscribe_token(contact_id, token)
        return token
