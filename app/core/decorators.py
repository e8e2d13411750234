"""
Decorators utilitarios.
"""

import functools
import inspect
import logging
from typing import Any, Callable, Optional, TypeVar, ParamSpec

from app.core.exceptions import NutriVaultException, DatabaseError

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def handle_errors(
    default_return: Optional[Any] = None, log_level: str = "error", reraise: bool = False
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator para tratamento padronizado de erros.

    Args:
        default_return: Valor retornado em caso de erro (se reraise=False)
        log_level: Nivel de log para erros ('error', 'warning', 'info')
        reraise: Se True, re-levanta como DatabaseError apos logar

    Usage:
        @handle_errors(default_return=[])
        async def listar_campanhas():
            ...

        @handle_errors(reraise=True)
        async def criar_destinatarios():
            ...
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        def _tratar(e: Exception):
            log_func = getattr(logger, log_level, logger.error)
            log_func(
                f"Erro em {func.__name__}: {e}",
                exc_info=True,
                extra={"function": func.__name__, "error": str(e)},
            )

            if reraise:
                raise DatabaseError(
                    f"Unexpected error in {func.__name__}",
                    details={"error": str(e)},
                    original_error=e,
                ) from e

            return default_return

        @functools.wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return await func(*args, **kwargs)
            except NutriVaultException:
                # Re-raise exceptions conhecidas
                raise
            except Exception as e:
                return _tratar(e)

        @functools.wraps(func)
        def sync_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except NutriVaultException:
                raise
            except Exception as e:
                return _tratar(e)

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
