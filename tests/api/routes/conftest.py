"""
Fixtures das rotas HTTP.

O app real com as dependencias trocadas pelos servicos em memoria.
TestClient sem context manager: o lifespan (scheduler, recuperacao)
nao roda.
"""
import pytest
from fastapi.testclient import TestClient

from app.api.deps import (
    get_campaign_dispatcher,
    get_campaign_store,
    get_tracking_service,
    get_unsubscribe_service,
)
from app.main import app


@pytest.fixture
def client(services):
    app.dependency_overrides[get_campaign_store] = lambda: services.store
    app.dependency_overrides[get_campaign_dispatcher] = lambda: services.dispatcher
    app.dependency_overrides[get_tracking_service] = lambda: services.tracking
    app.dependency_overrides[get_unsubscribe_service] = lambda: services.unsubscribe
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()
