"""
Endpoints publicos dos emails de campanha.

- Pixel de abertura e redirect de clique: o registro roda em background
  e nunca atrasa nem quebra a resposta ao leitor.
- Pagina de descadastro.
"""
import base64
import html
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse, RedirectResponse, Response

from app.api.deps import get_tracking_service, get_unsubscribe_service
from app.core.exceptions import InvalidTokenError
from app.core.tasks import safe_create_task
from app.services.campaigns.tracking import TrackingService
from app.services.campaigns.unsubscribe import UnsubscribeService

router = APIRouter(prefix="/campaigns", tags=["campaign-tracking"])
logger = logging.getLogger(__name__)

# GIF transparente 1x1
TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
}


@router.get("/track/open/{campaign_id}/{patient_id}")
async def track_open(
    campaign_id: str,
    patient_id: str,
    tracking: TrackingService = Depends(get_tracking_service),
):
    """Pixel de abertura. Sempre 200, mesmo para ids desconhecidos."""
    safe_create_task(
        tracking.record_open(campaign_id, patient_id),
        name="campaign_track_open",
    )
    return Response(content=TRACKING_PIXEL, media_type="image/gif", headers=NO_CACHE_HEADERS)


@router.get("/track/click/{campaign_id}/{patient_id}")
async def track_click(
    campaign_id: str,
    patient_id: str,
    url: Optional[str] = Query(None),
    tracking: TrackingService = Depends(get_tracking_service),
):
    """Registra o clique e redireciona para o link original."""
    if not url:
        return Response(content="Missing url parameter", status_code=400, media_type="text/plain")

    safe_create_task(
        tracking.record_click(campaign_id, patient_id, url),
        name="campaign_track_click",
    )
    return RedirectResponse(url=url, status_code=302)


def _pagina(titulo: str, mensagem: str) -> str:
    return (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(titulo)}</title>"
        "<style>body{font-family:Arial,sans-serif;max-width:560px;margin:60px auto;"
        "padding:0 20px;color:#333;text-align:center;}</style></head>"
        f"<body><h1>{html.escape(titulo)}</h1><p>{html.escape(mensagem)}</p></body></html>"
    )


async def _unsubscribe(token: str, unsubscribe: UnsubscribeService) -> HTMLResponse:
    try:
        contact = await unsubscribe.unsubscribe(token)
    except InvalidTokenError:
        return HTMLResponse(
            _pagina(
                "Invalid link",
                "This unsubscribe link is invalid or has expired. "
                "Please contact your practice if you keep receiving emails.",
            ),
            status_code=400,
        )

    logger.info(f"Descadastro confirmado: {contact.id}")
    return HTMLResponse(
        _pagina(
            "You have been unsubscribed",
            "You will no longer receive marketing emails from us. "
            "Appointment reminders are not affected.",
        )
    )


@router.get("/unsubscribe/{token}", response_class=HTMLResponse)
async def unsubscribe_page(
    token: str,
    unsubscribe: UnsubscribeService = Depends(get_unsubscribe_service),
):
    """Link de descadastro do rodape."""
    return await _unsubscribe(token, unsubscribe)


@router.post("/unsubscribe/{token}", response_class=HTMLResponse)
async def unsubscribe_one_click(
    token: str,
    unsubscribe: UnsubscribeService = Depends(get_unsubscribe_service),
):
    """Descadastro em um clique (List-Unsubscribe-Post)."""
    return await _unsubscribe(token, unsubscribe)
