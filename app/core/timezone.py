"""
Módulo centralizado para tratamento de timezone.

O projeto usa:
- UTC para armazenamento no banco de dados
- SCHEDULER_TIMEZONE (Europe/Paris por padrão) para os crons do scheduler

Convenções:
- `agora_utc()`: Para armazenar no banco
- `agora_local()`: Para avaliar schedules de jobs
- `para_local(dt)` / `para_utc(dt)`: Conversões
- `parse_datetime(valor)`: Timestamps vindos do banco ou da API
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from dateutil.parser import parse as _parse_datetime

from app.core.config import settings


# Constantes de timezone
TZ_UTC = timezone.utc
TZ_LOCAL = ZoneInfo(settings.SCHEDULER_TIMEZONE)


def agora_utc() -> datetime:
    """
    Retorna datetime atual em UTC (timezone-aware).

    Use para:
    - Armazenar no banco de dados
    - Comparações com dados do banco

    Returns:
        datetime em UTC com tzinfo
    """
    return datetime.now(TZ_UTC)


def agora_local() -> datetime:
    """Retorna datetime atual no fuso do scheduler (timezone-aware)."""
    return datetime.now(TZ_LOCAL)


def para_local(dt: datetime) -> datetime:
    """
    Converte datetime para o fuso do scheduler.

    Args:
        dt: datetime a converter (naive é tratado como UTC)
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=TZ_UTC)
    return dt.astimezone(TZ_LOCAL)


def para_utc(dt: datetime) -> datetime:
    """
    Converte datetime para UTC.

    Args:
        dt: datetime a converter (naive é tratado como UTC)
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=TZ_UTC)
    return dt.astimezone(TZ_UTC)


def parse_datetime(valor) -> Optional[datetime]:
    """
    Converte string ISO (ou datetime) em datetime UTC aware.

    Retorna None para valores vazios ou invalidos.
    """
    if valor is None or valor == "":
        return None
    if isinstance(valor, datetime):
        return para_utc(valor)
    try:
        return para_utc(_parse_datetime(str(valor)))
    except (ValueError, OverflowError):
        return None


def iso_utc(dt: Optional[datetime] = None) -> str:
    """
    Retorna datetime em formato ISO 8601 UTC.

    Conveniente para inserir no banco de dados.

    Args:
        dt: datetime a formatar (padrão: agora)
    """
    if dt is None:
        dt = agora_utc()
    return para_utc(dt).isoformat()
