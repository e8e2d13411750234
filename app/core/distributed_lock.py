"""
Distributed Lock - Lock via Redis.

Garante no maximo um dispatch simultaneo por campanha, mesmo quando o
tick do scheduler e um "enviar agora" manual chegam juntos.

Uso:
    async with DistributedLock(f"campaign_dispatch:{campaign_id}"):
        # Código protegido pelo lock
        await operacao_critica()
"""
import asyncio
import uuid
import logging
from typing import Optional

from app.core.config import settings
from app.services.redis import redis_client

logger = logging.getLogger(__name__)

# Lua: só deleta se o valor ainda for nosso token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockNotAcquiredError(Exception):
    """Raised when lock cannot be acquired."""
    pass


class DistributedLock:
    """
    Lock usando Redis.

    - SET NX EX para adquirir
    - Lua script para liberar de forma segura

    Attributes:
        key: Nome do recurso sendo bloqueado
        timeout: TTL do lock em segundos (previne locks órfãos)
        token: Token único para identificar este lock holder
    """

    def __init__(
        self,
        key: str,
        timeout: int = 300,
        blocking: bool = False,
        blocking_timeout: int = 30,
        client=None,
    ):
        """
        Args:
            key: Nome do recurso a bloquear
            timeout: TTL do lock em segundos (default 5 min)
            blocking: Se True, espera até conseguir o lock
            blocking_timeout: Tempo máximo de espera se blocking=True
            client: Cliente Redis (default: redis_client global)
        """
        self.key = f"lock:{key}"
        self.timeout = timeout
        self.blocking = blocking
        self.blocking_timeout = blocking_timeout
        self.token = str(uuid.uuid4())
        self._client = client
        self._acquired = False

    @property
    def client(self):
        return self._client if self._client is not None else redis_client

    @property
    def acquired(self) -> bool:
        return self._acquired

    async def acquire(self) -> bool:
        """
        Tenta adquirir o lock.

        Returns:
            True se adquiriu, False se não conseguiu
        """
        if not self.blocking:
            return await self._try_acquire()

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.blocking_timeout
        while loop.time() < deadline:
            if await self._try_acquire():
                return True
            await asyncio.sleep(0.1)  # 100ms entre tentativas
        return False

    async def _try_acquire(self) -> bool:
        """Tenta adquirir o lock uma vez."""
        try:
            result = await self.client.set(
                self.key,
                self.token,
                nx=True,  # SET if Not eXists
                ex=self.timeout
            )
            self._acquired = bool(result)
            if self._acquired:
                logger.debug(f"[DistributedLock] Lock adquirido: {self.key}")
            return self._acquired
        except Exception as e:
            logger.error(f"[DistributedLock] Erro ao adquirir lock {self.key}: {e}")
            return False

    async def release(self) -> bool:
        """
        Libera o lock de forma segura.

        Returns:
            True se liberou, False se já tinha expirado ou não era dono
        """
        if not self._acquired:
            return True

        try:
            result = await self.client.eval(RELEASE_SCRIPT, 1, self.key, self.token)
            released = result == 1
            if released:
                logger.debug(f"[DistributedLock] Lock liberado: {self.key}")
            else:
                logger.warning(f"[DistributedLock] Lock expirou antes de liberar: {self.key}")
            return released
        except Exception as e:
            logger.error(f"[DistributedLock] Erro ao liberar lock {self.key}: {e}")
            return False
        finally:
            self._acquired = False

    async def __aenter__(self):
        """Context manager: adquire lock."""
        acquired = await self.acquire()
        if not acquired:
            raise LockNotAcquiredError(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Context manager: libera lock."""
        await self.release()
        return False  # Não suprime exceções


def campaign_dispatch_lock(campaign_id: str, timeout: Optional[int] = None) -> DistributedLock:
    """Lock de dispatch de uma campanha (nao bloqueante)."""
    return DistributedLock(
        f"campaign_dispatch:{campaign_id}",
        timeout=timeout or settings.DISPATCH_LOCK_TIMEOUT_SECONDS,
        blocking=False,
    )
