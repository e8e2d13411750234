"""
Testes do lock distribuido (Redis).
"""
import pytest

from app.core.distributed_lock import (
    DistributedLock,
    LockNotAcquiredError,
    campaign_dispatch_lock,
)


class TestDistributedLock:

    @pytest.mark.asyncio
    async def test_adquire_e_libera(self, fake_redis):
        lock = DistributedLock("recurso", client=fake_redis)

        assert await lock.acquire() is True
        assert lock.acquired
        assert fake_redis.store["lock:recurso"] == lock.token

        assert await lock.release() is True
        assert "lock:recurso" not in fake_redis.store

    @pytest.mark.asyncio
    async def test_segundo_holder_nao_adquire(self, fake_redis):
        primeiro = DistributedLock("recurso", client=fake_redis)
        segundo = DistributedLock("recurso", client=fake_redis)

        assert await primeiro.acquire()
        assert await segundo.acquire() is False

        await primeiro.release()
        assert await segundo.acquire() is True

    @pytest.mark.asyncio
    async def test_nao_libera_lock_de_outro(self, fake_redis):
        """Lock expirado e readquirido por outro nao e apagado."""
        lock = DistributedLock("recurso", client=fake_redis)
        await lock.acquire()
        fake_redis.store["lock:recurso"] = "token-de-outro"

        assert await lock.release() is False
        assert fake_redis.store["lock:recurso"] == "token-de-outro"

    @pytest.mark.asyncio
    async def test_context_manager(self, fake_redis):
        async with DistributedLock("recurso", client=fake_redis) as lock:
            assert lock.acquired
        assert "lock:recurso" not in fake_redis.store

    @pytest.mark.asyncio
    async def test_context_manager_ocupado(self, fake_redis):
        fake_redis.store["lock:recurso"] = "outro"

        with pytest.raises(LockNotAcquiredError):
            async with DistributedLock("recurso", client=fake_redis):
                pass

    @pytest.mark.asyncio
    async def test_erro_no_redis_nao_adquire(self):
        class RedisQuebrado:
            async def set(self, *args, **kwargs):
                raise ConnectionError("redis down")

        lock = DistributedLock("recurso", client=RedisQuebrado())
        assert await lock.acquire() is False


class TestCampaignDispatchLock:

    def test_chave_e_timeout(self):
        lock = campaign_dispatch_lock("c-1", timeout=60)

        assert lock.key == "lock:campaign_dispatch:c-1"
        assert lock.timeout == 60
        assert lock.blocking is False
