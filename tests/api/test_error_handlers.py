"""
Testes para exception handlers do FastAPI.
"""
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.api.error_handlers import register_exception_handlers, status_code_for
from app.core.exceptions import (
    AlreadyInProgressError,
    ConfigurationError,
    DatabaseError,
    ExternalAPIError,
    InvalidCronError,
    InvalidStateError,
    InvalidTokenError,
    NoRecipientsError,
    NotFoundError,
    UnknownJobError,
    ValidationError,
)


@pytest.fixture
def app_with_handlers():
    """Cria app FastAPI com handlers registrados."""
    app = FastAPI()
    register_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers):
    """Cliente de teste."""
    return TestClient(app_with_handlers, raise_server_exceptions=False)


class TestExceptionHandlers:
    """Testes para cada tipo de exception."""

    def test_not_found_error_returns_404(self, app_with_handlers, client):
        @app_with_handlers.get("/test-not-found")
        async def raise_not_found():
            raise NotFoundError("Campaign", identifier="123")

        response = client.get("/test-not-found")

        assert response.status_code == 404
        data = response.json()
        assert data["error"] == "NotFoundError"
        assert data["message"] == "Campaign not found"
        assert data["details"]["id"] == "123"

    def test_validation_error_returns_400(self, app_with_handlers, client):
        @app_with_handlers.get("/test-validation")
        async def raise_validation():
            raise ValidationError("Campaign name is required", details={"field": "name"})

        response = client.get("/test-validation")

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "ValidationError"
        assert data["details"]["field"] == "name"

    def test_invalid_state_returns_400(self, app_with_handlers, client):
        @app_with_handlers.get("/test-state")
        async def raise_state():
            raise InvalidStateError("Campaign cannot be edited in its current status", "sent")

        response = client.get("/test-state")

        assert response.status_code == 400
        assert response.json()["details"] == {"status": "sent"}

    def test_already_in_progress_returns_409(self, app_with_handlers, client):
        @app_with_handlers.get("/test-conflict")
        async def raise_conflict():
            raise AlreadyInProgressError("Campaign dispatch already in progress")

        response = client.get("/test-conflict")

        assert response.status_code == 409
        assert response.json()["error"] == "AlreadyInProgressError"

    def test_external_api_error_returns_502(self, app_with_handlers, client):
        @app_with_handlers.get("/test-external")
        async def raise_external():
            raise ExternalAPIError("SMTP send failed", service="smtp")

        response = client.get("/test-external")

        assert response.status_code == 502

    def test_database_error_returns_503(self, app_with_handlers, client):
        @app_with_handlers.get("/test-database")
        async def raise_database():
            raise DatabaseError("Connection failed")

        response = client.get("/test-database")

        assert response.status_code == 503
        assert response.json()["error"] == "DatabaseError"

    def test_unhandled_exception_returns_500(self, app_with_handlers, client):
        @app_with_handlers.get("/test-generic")
        async def raise_generic():
            raise RuntimeError("segredo interno")

        response = client.get("/test-generic")

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "InternalServerError"
        assert "segredo" not in data["message"]


class TestStatusCodeFor:
    """Mapeamento de excecao de dominio para status HTTP."""

    @pytest.mark.parametrize(
        "exc,esperado",
        [
            (UnknownJobError("nope"), 404),
            (InvalidCronError("bad"), 400),
            (NoRecipientsError(), 400),
            (InvalidTokenError(), 400),
            (ConfigurationError("sem credenciais"), 500),
        ],
    )
    def test_subclasses(self, exc, esperado):
        assert status_code_for(exc) == esperado
