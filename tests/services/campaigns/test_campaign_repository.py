"""
Testes dos repositories de campanhas (Supabase em memoria).
"""
from datetime import datetime, timedelta, timezone

import pytest

from app.core.exceptions import DatabaseError
from app.services.campaigns.repository import (
    CampaignRepository,
    ContactRepository,
    RecipientRepository,
)
from app.services.campaigns.types import CampaignStatus, Contact, RecipientStatus


def _linha_campanha(**campos):
    dados = {
        "name": "Newsletter",
        "subject": "Hi",
        "status": "draft",
        "campaign_type": "newsletter",
        "target_audience": {"logic": "AND", "conditions": []},
        "recipient_count": 0,
        "is_active": True,
    }
    dados.update(campos)
    return dados


@pytest.fixture
def campaigns(fake_db):
    return CampaignRepository(db_client=fake_db)


@pytest.fixture
def recipients(fake_db):
    return RecipientRepository(db_client=fake_db)


@pytest.fixture
def contacts(fake_db):
    return ContactRepository(db_client=fake_db)


class TestCampaignRepository:

    @pytest.mark.asyncio
    async def test_create_e_get(self, campaigns):
        criada = await campaigns.create(_linha_campanha())

        lida = await campaigns.get(criada.id)

        assert lida.name == "Newsletter"
        assert lida.status == CampaignStatus.DRAFT
        assert lida.created_at is not None

    @pytest.mark.asyncio
    async def test_get_ignora_removidas(self, campaigns):
        criada = await campaigns.create(_linha_campanha(is_active=False))
        assert await campaigns.get(criada.id) is None

    @pytest.mark.asyncio
    async def test_get_erro_retorna_none(self, campaigns, fake_db):
        fake_db.falhar("select", "email_campaigns")
        assert await campaigns.get("qualquer") is None

    @pytest.mark.asyncio
    async def test_create_erro_levanta_database_error(self, campaigns, fake_db):
        fake_db.falhar("insert", "email_campaigns")
        with pytest.raises(DatabaseError):
            await campaigns.create(_linha_campanha())

    @pytest.mark.asyncio
    async def test_update_cas(self, campaigns):
        criada = await campaigns.create(_linha_campanha())

        perdeu = await campaigns.update(
            criada.id, {"status": "sending"}, expected_status=CampaignStatus.SCHEDULED
        )
        ganhou = await campaigns.update(
            criada.id, {"status": "sending"}, expected_status=CampaignStatus.DRAFT
        )

        assert perdeu is None
        assert ganhou.status == CampaignStatus.SENDING

    @pytest.mark.asyncio
    async def test_list_filtros_e_paginacao(self, campaigns, fake_db):
        for i in range(5):
            await campaigns.create(_linha_campanha(name=f"Spring {i}"))
        await campaigns.create(_linha_campanha(name="Winter", status="sent"))
        # created_at deterministico para a ordenacao
        for i, row in enumerate(fake_db.tables["email_campaigns"]):
            row["created_at"] = f"2026-01-0{i + 1}T10:00:00+00:00"

        pagina, total = await campaigns.list(search="spring", offset=0, limit=2)
        enviadas, total_enviadas = await campaigns.list(status="sent")

        assert total == 5
        assert [c.name for c in pagina] == ["Spring 4", "Spring 3"]
        assert total_enviadas == 1
        assert enviadas[0].name == "Winter"

    @pytest.mark.asyncio
    async def test_list_due(self, campaigns):
        agora = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
        vencida = await campaigns.create(
            _linha_campanha(status="scheduled", scheduled_at=(agora - timedelta(minutes=1)).isoformat())
        )
        await campaigns.create(
            _linha_campanha(status="scheduled", scheduled_at=(agora + timedelta(minutes=1)).isoformat())
        )
        await campaigns.create(
            _linha_campanha(status="cancelled", scheduled_at=(agora - timedelta(hours=1)).isoformat())
        )

        devidas = await campaigns.list_due(agora)

        assert [c.id for c in devidas] == [vencida.id]

    @pytest.mark.asyncio
    async def test_sender_name(self, campaigns, fake_db):
        fake_db.tables["users"] = [{"id": "u1", "first_name": "Claire", "last_name": "Dupont"}]

        assert await campaigns.get_sender_name("u1") == "Claire Dupont"
        assert await campaigns.get_sender_name("u2") is None
        assert await campaigns.get_sender_name(None) is None


class TestRecipientRepository:

    @pytest.mark.asyncio
    async def test_create_batch_um_insert(self, recipients, fake_db):
        contatos = [Contact(id=f"p{i}", email=f"p{i}@example.com") for i in range(3)]

        criados = await recipients.create_batch("c1", contatos)

        assert len(criados) == 3
        assert all(r.status == RecipientStatus.PENDING for r in criados)
        assert fake_db.calls.count(("insert", "email_campaign_recipients")) == 1

    @pytest.mark.asyncio
    async def test_create_batch_duplicado_falha(self, recipients):
        contato = Contact(id="p1", email="p1@example.com")
        await recipients.create_batch("c1", [contato])

        with pytest.raises(DatabaseError):
            await recipients.create_batch("c1", [contato])

    @pytest.mark.asyncio
    async def test_save_outcome(self, recipients, fake_db):
        [enviado, falho] = await recipients.create_batch(
            "c1", [Contact(id="p1", email="a@x.com"), Contact(id="p2", email="b@x.com")]
        )

        await recipients.save_outcome(enviado.id, RecipientStatus.SENT)
        await recipients.save_outcome(falho.id, RecipientStatus.FAILED, "x" * 2000)

        [linha_ok] = fake_db.rows("email_campaign_recipients", id=enviado.id)
        [linha_erro] = fake_db.rows("email_campaign_recipients", id=falho.id)
        assert linha_ok["status"] == "sent"
        assert linha_ok["sent_at"]
        assert linha_erro["status"] == "failed"
        assert len(linha_erro["error_message"]) == 1000

    @pytest.mark.asyncio
    async def test_save_outcome_retenta_falha_transitoria(self, recipients, fake_db):
        [r] = await recipients.create_batch("c1", [Contact(id="p1", email="a@x.com")])
        fake_db.falhar("update", "email_campaign_recipients", vezes=1)

        await recipients.save_outcome(r.id, RecipientStatus.SENT)

        assert fake_db.rows("email_campaign_recipients", id=r.id)[0]["status"] == "sent"

    @pytest.mark.asyncio
    async def test_save_outcome_desiste_apos_tentativas(self, recipients, fake_db):
        [r] = await recipients.create_batch("c1", [Contact(id="p1", email="a@x.com")])
        fake_db.falhar("update", "email_campaign_recipients")

        with pytest.raises(DatabaseError):
            await recipients.save_outcome(r.id, RecipientStatus.SENT)

        assert fake_db.calls.count(("update", "email_campaign_recipients")) == 3

    @pytest.mark.asyncio
    async def test_list_for_campaign(self, recipients):
        await recipients.create_batch(
            "c1",
            [Contact(id="p1", email="ana@x.com"), Contact(id="p2", email="bob@x.com")],
        )
        await recipients.create_batch("c2", [Contact(id="p3", email="ana@y.com")])

        encontrados, total = await recipients.list_for_campaign("c1", search="ANA")

        assert total == 1
        assert encontrados[0].patient_id == "p1"

    @pytest.mark.asyncio
    async def test_record_open_e_click(self, recipients, fake_db):
        await recipients.create_batch("c1", [Contact(id="p1", email="a@x.com")])

        assert await recipients.record_open("c1", "p1") is True
        assert await recipients.record_open("c1", "p1") is True
        assert await recipients.record_click("c1", "p1") is True
        assert await recipients.record_open("c1", "desconhecido") is False

        [linha] = fake_db.rows("email_campaign_recipients", campaign_id="c1")
        assert linha["open_count"] == 2
        assert linha["click_count"] == 1


class TestContactRepository:

    @pytest.mark.asyncio
    async def test_token(self, contacts, add_patient, fake_db):
        paciente = add_patient()

        await contacts.set_unsubscribe_token(paciente["id"], "tok-1")
        encontrado = await contacts.find_by_unsubscribe_token("tok-1")

        assert encontrado["id"] == paciente["id"]
        assert await contacts.find_by_unsubscribe_token("tok-2") is None

    @pytest.mark.asyncio
    async def test_set_opt_out(self, contacts, add_patient):
        paciente = add_patient()

        await contacts.set_opt_out(paciente["id"])

        assert paciente["marketing_opt_out"] is True
        assert paciente["unsubscribed_at"]

    @pytest.mark.asyncio
    async def test_segment_options(self, contacts, fake_db):
        fake_db.tables["patient_tags"] = [
            {"tag_name": "sport"},
            {"tag_name": "diabetes"},
            {"tag_name": "sport"},
        ]
        fake_db.tables["users"] = [
            {"id": 2, "first_name": "Claire", "last_name": "Dupont", "is_active": True},
            {"id": 3, "first_name": "Old", "last_name": "User", "is_active": False},
        ]
        fake_db.tables["custom_field_definitions"] = [
            {
                "id": 9,
                "field_name": "diet",
                "field_label": "Diet",
                "field_type": "select",
                "select_options": ["vegan", "omnivore"],
                "is_active": True,
                "display_order": 1,
            }
        ]

        opcoes = await contacts.segment_options()

        assert opcoes["tags"] == ["diabetes", "sport"]
        assert opcoes["dietitians"] == [{"id": "2", "name": "Claire Dupont"}]
        assert opcoes["custom_fields"][0]["name"] == "Diet"

    @pytest.mark.asyncio
    async def test_segment_options_erro_devolve_vazio(self, contacts, fake_db):
        fake_db.falhar("select", "patient_tags")

        opcoes = await contacts.segment_options()

        assert opcoes == {"tags": [], "dietitians": [], "custom_fields": []}
