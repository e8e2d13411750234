"""
Cliente Supabase para operacoes de banco de dados.
"""
import logging
from functools import lru_cache

from supabase import create_client, Client

from app.core.config import settings
from app.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@lru_cache()
def get_supabase_client() -> Client:
    """
    Retorna cliente Supabase cacheado.
    Usa service key para acesso completo.

    O cliente so e criado no primeiro uso, entao importar os repositories
    nao exige credenciais (testes injetam o proprio db_client).
    """
    if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_KEY:
        raise ConfigurationError("SUPABASE_URL e SUPABASE_SERVICE_KEY sao obrigatorios")

    logger.info("Criando cliente Supabase")
    return create_client(
        settings.SUPABASE_URL,
        settings.SUPABASE_SERVICE_KEY
    )


def verificar_conexao_supabase() -> bool:
    """Verifica se o Supabase responde (usado no health check)."""
    try:
        get_supabase_client().table("scheduled_jobs").select("name").limit(1).execute()
        return True
    except Exception as e:
        logger.error(f"Supabase não acessível: {e}")
        return False
