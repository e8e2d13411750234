"""
Configuração global de testes - Fixtures compartilhadas.

Os repositories recebem `db_client` injetado, entao os testes usam um
Supabase em memoria (FakeSupabase) em vez de mocks encadeados. O mesmo
vale para Redis (lock de dispatch) e para o transporte SMTP.

Usage:
    Fixtures aqui definidas são automaticamente disponíveis em todos os testes.
"""

import operator
import re
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Callable, Optional
from uuid import uuid4

import pytest

from app.core.distributed_lock import DistributedLock
from app.core.exceptions import ExternalAPIError
from app.core.tasks import reset_task_failure_counts
from app.core.timezone import iso_utc
from app.services.campaigns.audience import AudienceResolver
from app.services.campaigns.dispatcher import CampaignDispatcher
from app.services.campaigns.repository import (
    CampaignRepository,
    ContactRepository,
    RecipientRepository,
)
from app.services.campaigns.store import CampaignStore
from app.services.campaigns.tracking import TrackingService
from app.services.campaigns.unsubscribe import UnsubscribeService


# =============================================================================
# SUPABASE EM MEMORIA
# =============================================================================


class FakeResponse:
    """Equivalente ao APIResponse do postgrest (data + count)."""

    def __init__(self, data: Any, count: Optional[int] = None):
        self.data = data
        self.count = count


def _comparavel(valor: Any) -> Any:
    """Timestamps ISO viram datetime para comparar como o Postgres."""
    if isinstance(valor, str):
        try:
            dt = datetime.fromisoformat(valor)
        except ValueError:
            return valor
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    return valor


def _comparar(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def _cmp(atual: Any, alvo: Any) -> bool:
        if atual is None or alvo is None:
            return False
        return op(_comparavel(atual), _comparavel(alvo))

    return _cmp


def _chave_ordem(valor: Any) -> tuple:
    # NULLs por ultimo em ordem ascendente
    return (valor is None, _comparavel(valor) if valor is not None else 0)


class FakeQuery:
    """Builder encadeavel com o subconjunto de postgrest usado pelo app."""

    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.payload: Any = None
        self.filters: list = []
        self.orders: list = []
        self._range: Optional[tuple] = None
        self._limit: Optional[int] = None
        self._count: Optional[str] = None

    def select(self, *columns, count: Optional[str] = None):
        self.op = "select"
        self._count = count
        return self

    def insert(self, rows):
        self.op = "insert"
        self.payload = rows
        return self

    def update(self, data: dict):
        self.op = "update"
        self.payload = dict(data)
        return self

    def delete(self):
        self.op = "delete"
        return self

    def _filtro(self, coluna: str, teste: Callable[[Any], bool]):
        self.filters.append(lambda row: teste(row.get(coluna)))
        return self

    def eq(self, coluna: str, valor: Any):
        return self._filtro(coluna, lambda atual: atual == valor)

    def neq(self, coluna: str, valor: Any):
        return self._filtro(coluna, lambda atual: atual != valor)

    def gte(self, coluna: str, valor: Any):
        return self._filtro(coluna, lambda atual: _comparar(operator.ge)(atual, valor))

    def lte(self, coluna: str, valor: Any):
        return self._filtro(coluna, lambda atual: _comparar(operator.le)(atual, valor))

    def gt(self, coluna: str, valor: Any):
        return self._filtro(coluna, lambda atual: _comparar(operator.gt)(atual, valor))

    def lt(self, coluna: str, valor: Any):
        return self._filtro(coluna, lambda atual: _comparar(operator.lt)(atual, valor))

    def in_(self, coluna: str, valores):
        alvos = {str(v) for v in valores}
        return self._filtro(coluna, lambda atual: str(atual) in alvos)

    def ilike(self, coluna: str, padrao: str):
        regex = re.compile(
            "".join(".*" if c == "%" else "." if c == "_" else re.escape(c) for c in padrao),
            re.IGNORECASE,
        )
        return self._filtro(
            coluna, lambda atual: atual is not None and bool(regex.fullmatch(str(atual)))
        )

    def order(self, coluna: str, desc: bool = False):
        self.orders.append((coluna, desc))
        return self

    def range(self, inicio: int, fim: int):
        self._range = (inicio, fim)
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    def execute(self) -> FakeResponse:
        self.db.calls.append((self.op, self.table))
        self.db._falhar_se_preciso(self.op, self.table)

        if self.op == "insert":
            rows = self.payload if isinstance(self.payload, list) else [self.payload]
            return FakeResponse(self.db._insert(self.table, rows))

        linhas = self.db._rows(self.table)
        alvo = [row for row in linhas if all(f(row) for f in self.filters)]

        if self.op == "update":
            for row in alvo:
                row.update(self.payload)
            return FakeResponse([dict(row) for row in alvo])

        if self.op == "delete":
            for row in alvo:
                linhas.remove(row)
            return FakeResponse([dict(row) for row in alvo])

        resultado = [dict(row) for row in alvo]
        for coluna, desc in reversed(self.orders):
            resultado.sort(key=lambda row: _chave_ordem(row.get(coluna)), reverse=desc)

        count = len(resultado) if self._count == "exact" else None
        if self._range is not None:
            inicio, fim = self._range
            resultado = resultado[inicio : fim + 1]
        if self._limit is not None:
            resultado = resultado[: self._limit]
        return FakeResponse(resultado, count)


class FakeRpc:
    def __init__(self, db: "FakeSupabase", name: str, params: dict):
        self.db = db
        self.name = name
        self.params = params

    def execute(self) -> FakeResponse:
        self.db.calls.append(("rpc", self.name))
        self.db._falhar_se_preciso("rpc", self.name)
        handler = getattr(self.db, f"_rpc_{self.name}")
        return FakeResponse(handler(**self.params))


class FakeSupabase:
    """
    Cliente Supabase em memoria.

    - tables: nome -> lista de linhas (dicts mutaveis)
    - views: nome -> funcao que devolve as linhas da view
    - unique: nome -> colunas com restricao UNIQUE
    - falhar(op, tabela, vezes): injeta falhas (None = sempre)
    """

    def __init__(self):
        self.tables: dict = {}
        self.views: dict = {}
        self.unique: dict = {"email_campaign_recipients": ("campaign_id", "patient_id")}
        self.calls: list = []
        self._falhas: dict = {}

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rpc(self, name: str, params: Optional[dict] = None) -> FakeRpc:
        return FakeRpc(self, name, params or {})

    def falhar(self, op: str, tabela: str, vezes: Optional[int] = None) -> None:
        self._falhas[(op, tabela)] = vezes

    def _falhar_se_preciso(self, op: str, tabela: str) -> None:
        chave = (op, tabela)
        if chave not in self._falhas:
            return
        restantes = self._falhas[chave]
        if restantes is not None:
            if restantes <= 0:
                del self._falhas[chave]
                return
            self._falhas[chave] = restantes - 1
        raise RuntimeError(f"fake db failure: {op} {tabela}")

    def _rows(self, tabela: str) -> list:
        if tabela in self.views:
            return self.views[tabela](self)
        return self.tables.setdefault(tabela, [])

    def _insert(self, tabela: str, rows: list) -> list:
        linhas = self._rows(tabela)
        colunas = self.unique.get(tabela)
        novos = [{"id": str(uuid4()), **row} for row in rows]

        if colunas:
            chaves = {tuple(str(r.get(c)) for c in colunas) for r in linhas}
            for row in novos:
                chave = tuple(str(row.get(c)) for c in colunas)
                if chave in chaves:
                    raise RuntimeError(f"duplicate key value violates unique constraint on {tabela}")
                chaves.add(chave)

        linhas.extend(novos)
        return [dict(row) for row in novos]

    def rows(self, tabela: str, **filtros) -> list:
        """Atalho para asserts: linhas da tabela que batem com os filtros."""
        return [
            row
            for row in self._rows(tabela)
            if all(row.get(k) == v for k, v in filtros.items())
        ]

    def _destinatario(self, campaign_id: str, patient_id: str) -> Optional[dict]:
        for row in self._rows("email_campaign_recipients"):
            if str(row["campaign_id"]) == str(campaign_id) and str(row["patient_id"]) == str(
                patient_id
            ):
                return row
        return None

    def _rpc_record_campaign_open(self, p_campaign_id: str, p_patient_id: str) -> bool:
        row = self._destinatario(p_campaign_id, p_patient_id)
        if row is None:
            return False
        row["open_count"] = (row.get("open_count") or 0) + 1
        if not row.get("opened_at"):
            row["opened_at"] = iso_utc()
        return True

    def _rpc_record_campaign_click(self, p_campaign_id: str, p_patient_id: str) -> bool:
        row = self._destinatario(p_campaign_id, p_patient_id)
        if row is None:
            return False
        agora = iso_utc()
        row["click_count"] = (row.get("click_count") or 0) + 1
        if not row.get("clicked_at"):
            row["clicked_at"] = agora
        if not row.get("opened_at"):
            row["opened_at"] = agora
        return True


# =============================================================================
# REDIS E SMTP
# =============================================================================


class FakeRedis:
    """Subconjunto do redis.asyncio usado pelo DistributedLock."""

    def __init__(self):
        self.store: dict = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def eval(self, script, numkeys, *args):
        key, token = args[0], args[1]
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0

    async def ping(self):
        return True


class FakeTransport:
    """Transporte de email que grava as mensagens em memoria."""

    def __init__(self):
        self.sent: list = []
        self.falhar_para: set = set()

    async def send(self, email) -> str:
        if email.to in self.falhar_para:
            raise ExternalAPIError(
                "SMTP send failed: 550 mailbox unavailable",
                service="smtp",
                details={"to": email.to},
            )
        self.sent.append(email)
        return f"<{len(self.sent)}@test.local>"

    @property
    def recipients(self) -> list:
        return [email.to for email in self.sent]


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def _limpar_contadores_de_tasks():
    reset_task_failure_counts()
    yield


@pytest.fixture
def fake_db():
    """
    Supabase em memoria.

    A view campaign_contacts le direto da tabela patients, entao um
    descadastro aparece na proxima resolucao de audiencia.
    """
    db = FakeSupabase()
    db.views["campaign_contacts"] = lambda d: d.tables.setdefault("patients", [])
    return db


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def add_patient(fake_db):
    """
    Factory de pacientes (linha de patients + colunas da view).

    Uso:
        def test_algo(add_patient):
            ana = add_patient("Ana", "Martin", tags=["diabetes"])
    """

    def _add(first_name: str = "Ana", last_name: str = "Martin", email: Optional[str] = None, **extra):
        row = {
            "id": str(uuid4()),
            "first_name": first_name,
            "last_name": last_name,
            "email": (
                email
                if email is not None
                else f"{first_name.lower()}.{last_name.lower()}@example.com"
            ),
            "is_active": True,
            "marketing_opt_out": False,
            "unsubscribed_at": None,
            "unsubscribe_token": None,
            "language_preference": "fr",
            "tags": [],
            "linked_dietitian_ids": [],
            "dietitian_name": None,
            "visit_count": 0,
            "last_visit_date": None,
            "custom_fields": {},
            "appointment_reminders_enabled": True,
            "created_at": "2025-01-10T09:00:00+00:00",
        }
        row.update(extra)
        fake_db.tables.setdefault("patients", []).append(row)
        return row

    return _add


@pytest.fixture
def services(fake_db, fake_redis, transport):
    """Store, dispatcher e servicos ligados ao mesmo banco em memoria."""
    campaigns = CampaignRepository(db_client=fake_db)
    recipients = RecipientRepository(db_client=fake_db)
    contacts = ContactRepository(db_client=fake_db)
    audience = AudienceResolver(contacts=contacts)
    store = CampaignStore(repository=campaigns, recipients=recipients, audience=audience)
    unsubscribe = UnsubscribeService(contacts=contacts)
    dispatcher = CampaignDispatcher(
        store=store,
        recipients=recipients,
        audience=audience,
        unsubscribe=unsubscribe,
        transport=transport,
        lock_factory=lambda campaign_id: DistributedLock(
            f"campaign_dispatch:{campaign_id}", client=fake_redis
        ),
        concurrency=3,
        delay_ms=0,
    )
    return SimpleNamespace(
        db=fake_db,
        redis=fake_redis,
        transport=transport,
        campaigns=campaigns,
        recipients=recipients,
        contacts=contacts,
        audience=audience,
        store=store,
        unsubscribe=unsubscribe,
        dispatcher=dispatcher,
        tracking=TrackingService(recipients=recipients),
    )


@pytest.fixture
def campaign_data():
    """Payload valido de criacao de campanha."""
    return {
        "name": "Spring newsletter",
        "subject": "Hello {{patient_first_name}}",
        "body_html": (
            "<html><body><p>Hi {{patient_first_name}} {{patient_last_name}},</p>"
            '<p><a href="https://clinic.example.com/recipes?season=spring&amp;lang=fr">Recipes</a></p>'
            "<p>{{dietitian_name}}</p></body></html>"
        ),
        "campaign_type": "newsletter",
        "target_audience": None,
    }
