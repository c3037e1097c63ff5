"""
web/routes.py -- Jinja2 template routes for the device-transfer landing page.

The transfer link minted by POST /api/v1/auth/transfer/create points here.
The page itself holds no credential: its script reads ?t= from the address
bar, strips it from history, and POSTs it to /api/v1/auth/transfer/consume.
On success the browser follows redirect_url with the new session cookie.

The raw token is never rendered into the HTML and never logged (the request
logging middleware records the path only).

Routes:
  GET /transfer -- landing page for a one-time transfer link
"""

import logging
from pathlib import Path

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

logger = logging.getLogger("tutorauth.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
router = APIRouter()

_CONSUME_URL = "/api/v1/auth/transfer/consume"


# ---------------------------------------------------------------------------
# GET /transfer -- one-time link landing page
# ---------------------------------------------------------------------------


@router.get("/transfer", response_class=HTMLResponse)
def transfer_page(request: Request) -> HTMLResponse:
    """Render the page that spends the transfer token client-side.

    A GET must not consume the token: link previews and prefetchers would
    burn it before the user ever opens the page.
    """
    has_token = bool(request.query_params.get("t"))
    if not has_token:
        logger.info("Transfer page opened without a token")
    response = templates.TemplateResponse(
        request,
        "transfer.html",
        {"consume_url": _CONSUME_URL, "has_token": has_token},
    )
    # The URL carries a bearer credential: keep it out of caches and Referer.
    response.headers["Cache-Control"] = "no-store"
    response.headers["Referrer-Policy"] = "no-referrer"
    return response
