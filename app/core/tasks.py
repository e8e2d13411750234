"""
Utilidades para tasks assincronas.

Este modulo fornece wrappers seguros para asyncio.create_task
com error handling, logging e contagem de falhas. E o "sink" usado
pelos endpoints de tracking: a task roda destacada da request e
qualquer erro termina aqui, logado, sem chegar ao cliente.
"""
import asyncio
import logging
from typing import Coroutine, Any, Optional, Callable

logger = logging.getLogger(__name__)

# Contador de falhas por tipo (para metricas)
_task_failures: dict[str, int] = {}

# Referencias fortes para tasks em voo (o loop so guarda weakrefs)
_background_tasks: set[asyncio.Task] = set()


async def _safe_wrapper(
    coro: Coroutine,
    task_name: str,
    on_error: Optional[Callable[[Exception], None]] = None
) -> Any:
    """
    Wrapper que executa coroutine com error handling.

    Args:
        coro: Coroutine a executar
        task_name: Nome para logging/metricas
        on_error: Callback opcional para erros
    """
    try:
        return await coro
    except asyncio.CancelledError:
        logger.debug(f"Task cancelada: {task_name}")
        raise
    except Exception as e:
        _task_failures[task_name] = _task_failures.get(task_name, 0) + 1

        logger.error(
            f"Erro em background task '{task_name}': {e}",
            exc_info=True,
            extra={
                "task_name": task_name,
                "error_type": type(e).__name__,
                "total_failures": _task_failures[task_name]
            }
        )

        if on_error:
            try:
                on_error(e)
            except Exception as callback_error:
                logger.error(f"Erro no callback on_error: {callback_error}")

        # Nao re-raise para nao crashar outras tasks
        return None


def safe_create_task(
    coro: Coroutine,
    name: Optional[str] = None,
    on_error: Optional[Callable[[Exception], None]] = None
) -> asyncio.Task:
    """
    Cria task com error handling automatico.

    Uso:
        # Em vez de:
        asyncio.create_task(minha_funcao())

        # Use:
        safe_create_task(minha_funcao(), name="minha_funcao")

    Args:
        coro: Coroutine a executar
        name: Nome da task (para logging)
        on_error: Callback opcional para quando ocorrer erro

    Returns:
        asyncio.Task com wrapper de error handling
    """
    task_name = name or getattr(coro, "__qualname__", "unknown")
    wrapped = _safe_wrapper(coro, task_name, on_error)
    task = asyncio.create_task(wrapped, name=task_name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def get_task_failure_counts() -> dict[str, int]:
    """Retorna contagem de falhas por task (para metricas/alertas)."""
    return _task_failures.copy()


def reset_task_failure_counts():
    """Reseta contadores (para testes)."""
    global _task_failures
    _task_failures = {}


async def wait_background_tasks(timeout: Optional[float] = None) -> None:
    """
    Aguarda as tasks em voo terminarem.

    Usado no shutdown da aplicacao e em testes.
    """
    pendentes = [t for t in _background_tasks if not t.done()]
    if not pendentes:
        return
    await asyncio.wait(pendentes, timeout=timeout)
