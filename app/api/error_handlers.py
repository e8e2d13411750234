"""
Exception handlers para FastAPI.

Services lancam excecoes de dominio; aqui elas viram respostas HTTP.
"""

import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.exceptions import (
    NutriVaultException,
    AlreadyInProgressError,
    ConfigurationError,
    DatabaseError,
    ExternalAPIError,
    InvalidStateError,
    InvalidTokenError,
    NoRecipientsError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Ordem importa: subclasses antes das bases (UnknownJobError < NotFoundError,
# InvalidCronError < ValidationError)
STATUS_CODES = (
    (NotFoundError, 404),
    (ValidationError, 400),
    (InvalidStateError, 400),
    (NoRecipientsError, 400),
    (InvalidTokenError, 400),
    (AlreadyInProgressError, 409),
    (ExternalAPIError, 502),
    (DatabaseError, 503),
    (ConfigurationError, 500),
)


def status_code_for(exc: NutriVaultException) -> int:
    """Status HTTP de uma excecao de dominio."""
    for exc_type, status_code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


async def nutrivault_exception_handler(request: Request, exc: NutriVaultException) -> JSONResponse:
    """Handler para todas as exceptions customizadas."""
    status_code = status_code_for(exc)
    error_type = exc.__class__.__name__

    log = logger.error if status_code >= 500 else logger.warning
    log(
        f"{error_type}: {exc.message}",
        extra={"error_type": error_type, "details": exc.details, "path": request.url.path},
    )

    return JSONResponse(
        status_code=status_code,
        content={"error": error_type, "message": exc.message, "details": exc.details},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler para exceptions nao tratadas."""
    logger.exception(f"Erro nao tratado: {exc}", extra={"path": request.url.path})

    return JSONResponse(
        status_code=500,
        content={
            "error": "InternalServerError",
            "message": "Internal server error",
            "details": {},
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """
    Registra todos os exception handlers no app FastAPI.

    Usage:
        from app.api.error_handlers import register_exception_handlers

        app = FastAPI()
        register_exception_handlers(app)
    """
    # O handler base cobre todas as subclasses
    app.add_exception_handler(NutriVaultException, nutrivault_exception_handler)

    # Handler generico para exceptions nao tratadas
    app.add_exception_handler(Exception, generic_exception_handler)
