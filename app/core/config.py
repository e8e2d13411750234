"""
Configurações da aplicação.
Carrega variáveis de ambiente.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Configurações carregadas do .env"""

    # App
    APP_NAME: str = "NutriVault Campaigns"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Supabase
    SUPABASE_URL: str = ""
    SUPABASE_SERVICE_KEY: str = ""

    # Redis (lock de dispatch por campanha)
    REDIS_URL: str = "redis://localhost:6379/0"

    # URL publica usada nos links de tracking e descadastro dos emails
    APP_BASE_URL: str = "http://localhost:8000"

    # CORS - origens permitidas (separadas por vírgula)
    CORS_ORIGINS: str = "*"  # "*" apenas para desenvolvimento

    # SMTP
    SMTP_HOST: str = "localhost"
    SMTP_PORT: int = 587
    SMTP_USERNAME: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_USE_TLS: bool = False
    SMTP_START_TLS: bool = True
    SMTP_TIMEOUT_SECONDS: float = 30.0
    EMAIL_FROM: str = "no-reply@nutrivault.local"
    EMAIL_FROM_NAME: str = "NutriVault"

    # Campanhas
    CAMPAIGN_SEND_CONCURRENCY: int = 5  # Tamanho do pool de envio (limite do SMTP)
    CAMPAIGN_SEND_DELAY_MS: int = 200  # Pausa por worker entre envios
    CAMPAIGN_PREVIEW_SAMPLE_SIZE: int = 10
    DISPATCH_LOCK_TIMEOUT_SECONDS: int = 3600
    RECOVER_INTERRUPTED_DISPATCHES: bool = True

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "Europe/Paris"
    SCHEDULED_CAMPAIGNS_CRON: str = "* * * * *"  # A cada minuto
    APPOINTMENT_REMINDERS_CRON: str = "0 * * * *"  # A cada hora

    # Lembretes de consulta
    APPOINTMENT_REMINDER_HOURS: str = "1,24"  # Janelas (horas antes da consulta)
    MAX_REMINDERS_PER_VISIT: int = 2

    @property
    def is_production(self) -> bool:
        """Retorna True se está em produção."""
        return self.ENVIRONMENT.lower() == "production"

    @property
    def cors_origins_list(self) -> list[str]:
        """
        Retorna lista de origens CORS permitidas.

        Em produção, deve ser configurado explicitamente.
        """
        if self.CORS_ORIGINS == "*":
            if self.is_production:
                import logging
                logging.warning(
                    "CORS_ORIGINS='*' em produção. "
                    "Configure origens específicas para maior segurança."
                )
            return ["*"]
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def reminder_hours(self) -> list[int]:
        """Janelas de lembrete em horas, ignorando valores invalidos."""
        horas = []
        for valor in self.APPOINTMENT_REMINDER_HOURS.split(","):
            valor = valor.strip()
            if valor.isdigit():
                horas.append(int(valor))
        return sorted(set(horas))

    @property
    def public_base_url(self) -> str:
        """APP_BASE_URL sem barra final."""
        return self.APP_BASE_URL.rstrip("/")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignora variáveis extras do .env


class CampaignConfig:
    """
    Constantes do motor de campanhas.

    Valores que nao mudam por ambiente ficam aqui, nao no .env.
    """

    # Paginacao
    PAGE_SIZE_CAMPAIGNS: int = 20
    PAGE_SIZE_RECIPIENTS: int = 50
    MAX_PAGE_SIZE: int = 200

    # Preview
    SAMPLE_SIZE_DEFAULT: int = 5

    # Escrita de status de destinatario (tenacity)
    OUTCOME_WRITE_ATTEMPTS: int = 3
    OUTCOME_WRITE_WAIT_MAX_SECONDS: int = 4

    # Lembretes
    REMINDER_WINDOW_HOURS: int = 1  # Tolerancia +-1h em torno do alvo
    REMINDER_MIN_INTERVAL_HOURS: int = 12  # Evita reenvio no mesmo dia


@lru_cache()
def get_settings() -> Settings:
    """Retorna instância cacheada das configurações."""
    return Settings()


settings = get_settings()
