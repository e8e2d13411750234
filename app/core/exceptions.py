"""
Exceptions customizadas do motor de campanhas.

Lançadas pelos services; a conversao para HTTP fica em app.api.error_handlers.
"""
from typing import Optional


class NutriVaultException(Exception):
    """Base exception para todos os erros do sistema."""

    def __init__(
        self,
        message: str,
        details: Optional[dict] = None,
        original_error: Optional[Exception] = None
    ):
        self.message = message
        self.details = details or {}
        self.original_error = original_error
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class DatabaseError(NutriVaultException):
    """Erro de banco de dados (Supabase)."""
    pass


class ExternalAPIError(NutriVaultException):
    """Erro de servico externo (SMTP, Redis, etc)."""

    def __init__(
        self,
        message: str,
        service: str,
        details: Optional[dict] = None,
        original_error: Optional[Exception] = None
    ):
        self.service = service
        super().__init__(message, details, original_error)


class ValidationError(NutriVaultException):
    """Erro de validacao de dados de entrada."""
    pass


class InvalidStateError(NutriVaultException):
    """Transicao de status nao permitida."""

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
    ):
        details = {}
        if current_status:
            details["status"] = current_status
        super().__init__(message, details)


class NoRecipientsError(NutriVaultException):
    """Audiencia vazia no momento do agendamento ou envio."""

    def __init__(self, message: str = "No recipients found matching the audience criteria"):
        super().__init__(message)


class AlreadyInProgressError(NutriVaultException):
    """Operacao ja em andamento (dispatch ou job concorrente)."""
    pass


class NotFoundError(NutriVaultException):
    """Recurso nao encontrado."""

    def __init__(
        self,
        resource: str,
        identifier: Optional[str] = None
    ):
        message = f"{resource} not found"
        details = {}
        if identifier:
            details["id"] = identifier
        super().__init__(message, details)


class UnknownJobError(NotFoundError):
    """Job fora do registro fixo do scheduler."""

    def __init__(self, name: str):
        super().__init__("Job", name)
        self.message = f"Unknown job: {name}"


class InvalidCronError(ValidationError):
    """Expressao cron invalida."""

    def __init__(self, expression: str, reason: Optional[str] = None):
        details = {"cron": expression}
        if reason:
            details["reason"] = reason
        super().__init__(f"Invalid cron expression: {expression}", details)


class InvalidTokenError(NutriVaultException):
    """Token de descadastro ausente ou desconhecido."""

    def __init__(self, message: str = "Invalid unsubscribe token"):
        super().__init__(message)


class ConfigurationError(NutriVaultException):
    """Erro de configuracao do sistema."""
    pass
