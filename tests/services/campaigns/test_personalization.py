"""
Testes da montagem do email por destinatario.
"""
from urllib.parse import quote

import pytest

from app.services.campaigns.personalization import (
    TrackingLinks,
    build_personalized_email,
    html_to_text,
    replace_variables,
    text_to_html,
)
from app.services.campaigns.types import Campaign, Contact


BASE = "https://app.example.com"


@pytest.fixture
def contato():
    return Contact(
        id="p-1",
        email="ana.martin@example.com",
        first_name="Ana",
        last_name="Martin",
        unsubscribe_token="tok-123",
        dietitian_name="Dr. Claire Dupont",
    )


@pytest.fixture
def links():
    return TrackingLinks.build("c-1", "p-1", "tok-123", base_url=BASE)


def _campanha(**campos):
    dados = {"id": "c-1", "name": "Newsletter", "subject": "Hi {{patient_first_name}}"}
    dados.update(campos)
    return Campaign(**dados)


class TestTrackingLinks:

    def test_urls(self, links):
        assert links.open_pixel == f"{BASE}/campaigns/track/open/c-1/p-1"
        assert links.click_base == f"{BASE}/campaigns/track/click/c-1/p-1"
        assert links.unsubscribe == f"{BASE}/campaigns/unsubscribe/tok-123"

    def test_barra_final_da_base(self):
        links = TrackingLinks.build("c", "p", "t", base_url=BASE + "/")
        assert links.unsubscribe == f"{BASE}/campaigns/unsubscribe/t"


class TestReplaceVariables:

    def test_substitui_com_espacos_e_maiusculas(self):
        texto = replace_variables("Hi {{ Patient_First_Name }}!", {"patient_first_name": "Ana"})
        assert texto == "Hi Ana!"

    def test_desconhecida_fica(self):
        assert replace_variables("{{ foo }}", {}) == "{{ foo }}"

    def test_valor_vazio(self):
        assert replace_variables("[{{dietitian_name}}]", {"dietitian_name": None}) == "[]"


class TestBuildPersonalizedEmail:

    def test_assunto_e_corpo_personalizados(self, contato, links):
        campanha = _campanha(
            body_html="<html><body><p>Dear {{patient_first_name}} {{patient_last_name}}</p>"
            "<p>{{dietitian_name}}</p></body></html>"
        )

        email = build_personalized_email(campanha, contato, links)

        assert email.subject == "Hi Ana"
        assert "Dear Ana Martin" in email.html
        assert "Dr. Claire Dupont" in email.html

    def test_sender_name_tem_prioridade(self, contato, links):
        campanha = _campanha(body_html="<p>{{dietitian_name}}</p>")
        email = build_personalized_email(campanha, contato, links, sender_name="Dr. Remetente")
        assert "Dr. Remetente" in email.html

    def test_pixel_antes_do_fechamento_do_body(self, contato, links):
        campanha = _campanha(body_html="<html><body><p>Oi</p></body></html>")

        email = build_personalized_email(campanha, contato, links)

        pixel = email.html.index(links.open_pixel)
        assert pixel < email.html.lower().rindex("</body>")
        assert 'width="1" height="1"' in email.html

    def test_links_reescritos_para_click(self, contato, links):
        destino = "https://clinic.example.com/recipes?a=1&b=2"
        campanha = _campanha(body_html='<p><a href="https://clinic.example.com/recipes?a=1&amp;b=2">x</a></p>')

        email = build_personalized_email(campanha, contato, links)

        assert f'href="{links.click_base}?url={quote(destino, safe="")}"' in email.html

    def test_link_de_descadastro_nao_e_rastreado(self, contato, links):
        campanha = _campanha(body_html='<p><a href="{{unsubscribe_link}}">Leave</a></p>')

        email = build_personalized_email(campanha, contato, links)

        assert f'href="{links.unsubscribe}"' in email.html
        # Nenhum rodape extra quando o template ja tem o link
        assert email.html.count(links.unsubscribe) == 1

    def test_rodape_de_descadastro_adicionado(self, contato, links):
        campanha = _campanha(body_html="<html><body><p>Oi</p></body></html>")

        email = build_personalized_email(campanha, contato, links)

        assert f'<a href="{links.unsubscribe}">Unsubscribe</a>' in email.html
        assert email.html.index(links.unsubscribe) < email.html.lower().rindex("</body>")

    def test_corpo_texto_vira_html(self, contato, links):
        campanha = _campanha(body_html=None, body_text="Hello {{patient_first_name}}\nFruit & veg")

        email = build_personalized_email(campanha, contato, links)

        assert "<br>" in email.html
        assert "Fruit &amp; veg" in email.html
        assert email.text.startswith("Hello Ana\nFruit & veg")

    def test_versao_texto_derivada_do_html(self, contato, links):
        campanha = _campanha(body_html="<html><body><p>Hello {{patient_first_name}}</p></body></html>")

        email = build_personalized_email(campanha, contato, links)

        assert "Hello Ana" in email.text
        assert email.text.endswith(f"Unsubscribe: {links.unsubscribe}")

    def test_valores_do_contato_escapados_no_html(self, links):
        contato = Contact(
            id="p-2",
            email="bob@example.com",
            first_name="<b>Bob</b>",
            last_name="O'Neil & Sons",
            unsubscribe_token="tok-123",
        )
        campanha = _campanha(
            subject="Hi {{patient_first_name}}",
            body_html="<html><body><p>Dear {{patient_first_name}} {{patient_last_name}}</p></body></html>",
            body_text="Dear {{patient_first_name}} {{patient_last_name}}",
        )

        email = build_personalized_email(campanha, contato, links)

        assert "&lt;b&gt;Bob&lt;/b&gt; O&#x27;Neil &amp; Sons" in email.html
        assert "<b>Bob</b>" not in email.html
        assert email.subject == "Hi <b>Bob</b>"
        assert email.text.startswith("Dear <b>Bob</b> O'Neil & Sons")

    def test_versao_texto_do_html_mantem_valores_crus(self, links):
        contato = Contact(id="p-2", email="bob@example.com", first_name="Tom & Jerry")
        campanha = _campanha(body_html="<html><body><p>Hello {{patient_first_name}}</p></body></html>")

        email = build_personalized_email(campanha, contato, links)

        assert "Hello Tom & Jerry" in email.text

    def test_links_padrao_usam_token_do_contato(self, contato):
        email = build_personalized_email(_campanha(body_html="<p>x</p>"), contato)
        assert "/campaigns/unsubscribe/tok-123" in email.html


class TestConversoes:

    def test_text_to_html_escapa(self):
        assert "&amp;" in text_to_html("a & b")

    def test_html_to_text_remove_tags_e_style(self):
        texto = html_to_text(
            "<html><head><style>p{color:red}</style></head><body><p>Um</p><p>Dois<br>Tres</p></body></html>"
        )
        assert texto == "Um\nDois\nTres"
