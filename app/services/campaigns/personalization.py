"""
Personalizacao do email de campanha por contato.

Funcao pura: nao acessa banco nem rede. Recebe campanha e contato e
devolve assunto, HTML (com pixel, links rastreados e rodape de
descadastro) e versao texto.
"""
import html
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from bs4 import BeautifulSoup

from app.core.config import settings
from app.services.campaigns.types import Campaign, Contact

# {{ variavel }} com espacos opcionais, sem diferenciar maiusculas
VARIAVEL_RE = re.compile(r"\{\{\s*([a-zA-Z_]+)\s*\}\}")
HTML_TAG_RE = re.compile(r"<[a-zA-Z][^>]*>")
LINK_RE = re.compile(r'href="(https?://[^"]+)"', re.IGNORECASE)
BODY_CLOSE_RE = re.compile(r"</body>", re.IGNORECASE)
BLOCK_TAGS = ["p", "div", "li", "tr", "table", "h1", "h2", "h3", "h4", "h5", "h6"]


@dataclass
class PersonalizedEmail:
    """Email pronto para envio."""

    subject: str
    html: str
    text: str


@dataclass
class TrackingLinks:
    """URLs publicas usadas no email de um destinatario."""

    open_pixel: str
    click_base: str
    unsubscribe: str

    @classmethod
    def build(
        cls,
        campaign_id: str,
        contact_id: str,
        token: Optional[str],
        base_url: Optional[str] = None,
    ) -> "TrackingLinks":
        base = (base_url or settings.public_base_url).rstrip("/")
        return cls(
            open_pixel=f"{base}/campaigns/track/open/{campaign_id}/{contact_id}",
            click_base=f"{base}/campaigns/track/click/{campaign_id}/{contact_id}",
            unsubscribe=f"{base}/campaigns/unsubscribe/{token or ''}",
        )


def replace_variables(template: str, variables: dict) -> str:
    """
    Substitui {{ variavel }} pelos valores do contato.

    Placeholders desconhecidos ficam como estao.
    """
    if not template:
        return ""

    def _sub(match):
        nome = match.group(1).lower()
        if nome in variables:
            return variables[nome] or ""
        return match.group(0)

    return VARIAVEL_RE.sub(_sub, template)


def text_to_html(text: str) -> str:
    """Converte corpo texto puro em documento HTML minimo."""
    corpo = html.escape(text).replace("\r\n", "\n").replace("\n", "<br>\n")
    return (
        "<!DOCTYPE html>\n<html>\n<head><meta charset=\"utf-8\"></head>\n"
        f"<body>\n{corpo}\n</body>\n</html>"
    )


def html_to_text(content: str) -> str:
    """Versao texto do HTML (fallback quando body_text esta vazio)."""
    soup = BeautifulSoup(content, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for bloco in soup.find_all(BLOCK_TAGS):
        bloco.append("\n")
    linhas = (linha.strip() for linha in soup.get_text().splitlines())
    return "\n".join(linha for linha in linhas if linha)


def _eh_descadastro(url: str) -> bool:
    return "/unsubscribe" in url.lower()


def _rastrear_links(content: str, click_base: str) -> str:
    def _sub(match):
        url = match.group(1)
        if _eh_descadastro(url):
            return match.group(0)
        destino = html.unescape(url)
        return f'href="{click_base}?url={quote(destino, safe="")}"'

    return LINK_RE.sub(_sub, content)


def _inserir_antes_do_body(content: str, fragmento: str) -> str:
    match = None
    for match in BODY_CLOSE_RE.finditer(content):
        pass
    if match is None:
        return content + fragmento
    return content[: match.start()] + fragmento + content[match.start():]


def build_personalized_email(
    campaign: Campaign,
    contact: Contact,
    links: Optional[TrackingLinks] = None,
    sender_name: Optional[str] = None,
) -> PersonalizedEmail:
    """
    Monta o email de um destinatario.

    Args:
        campaign: Campanha (assunto e corpo com variaveis)
        contact: Destinatario
        links: URLs de tracking (default: montadas a partir de APP_BASE_URL)
        sender_name: Nome do remetente para {{dietitian_name}}; sem ele usa
            o nutricionista vinculado ao contato

    Returns:
        PersonalizedEmail
    """
    if links is None:
        links = TrackingLinks.build(campaign.id, contact.id, contact.unsubscribe_token)

    variables = {
        "patient_first_name": contact.first_name,
        "patient_last_name": contact.last_name,
        "patient_email": contact.email or "",
        "dietitian_name": sender_name or contact.dietitian_name or "",
        "unsubscribe_link": links.unsubscribe,
    }
    # Valores do contato entram escapados no HTML; assunto e texto ficam crus
    variables_html = {
        chave: valor if chave == "unsubscribe_link" else html.escape(valor)
        for chave, valor in variables.items()
    }

    subject = replace_variables(campaign.subject, variables)

    corpo = campaign.body_html or campaign.body_text or ""
    if corpo and not HTML_TAG_RE.search(corpo):
        corpo = text_to_html(corpo)
    corpo = replace_variables(corpo, variables_html)

    corpo = _rastrear_links(corpo, links.click_base)

    if links.unsubscribe not in corpo:
        rodape = (
            '\n<p style="font-size:12px;color:#888888;text-align:center;">'
            f'<a href="{links.unsubscribe}">Unsubscribe</a></p>\n'
        )
        corpo = _inserir_antes_do_body(corpo, rodape)

    pixel = (
        f'<img src="{links.open_pixel}" width="1" height="1" alt="" '
        'style="display:none;" />'
    )
    corpo = _inserir_antes_do_body(corpo, pixel)

    if campaign.body_text:
        texto = replace_variables(campaign.body_text, variables)
    else:
        texto = html_to_text(replace_variables(campaign.body_html or "", variables_html))
    if links.unsubscribe not in texto:
        texto = f"{texto}\n\nUnsubscribe: {links.unsubscribe}".strip()

    return PersonalizedEmail(subject=subject, html=corpo, text=texto)
