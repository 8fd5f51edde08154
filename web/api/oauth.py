"""OAuth API.

Serves the authorize URL and receives the OAuth redirect, which wakes any
publish waiting for re-authorization.
"""

import html
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import HTMLResponse

from core.bootstrap import Services
from core.exceptions import AppError
from web.dependencies import get_services

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/authorize-url")
async def get_authorize_url(services: Services = Depends(get_services)):
    """Return a fresh authorize URL."""
    return {"authorize_url": services.token_manager.build_authorize_url()}


@router.get("/callback", response_class = HTMLResponse)
async def oauth_callback(
    code: str = "",
    state: str = "",
    error: str = "",
    services: Services = Depends(get_services)
):
    """Exchange the authorization code and fire the completion signal."""
    try:
        ok = await services.token_manager.handle_authorization_code(code = code, state = state, error = error)
    except AppError as exc:
        logger.error("OAuth callback failed: %s", str(exc))
        ok = False
        error = error or str(exc)

    if ok:
        return HTMLResponse("<html><body><h3>Feishu authorization succeeded. You can close this page.</h3></body></html>")
    message = html.escape(error or "authorization was not completed")
    return HTMLResponse(
        f"<html><body><h3>Feishu authorization failed: {message}</h3></body></html>",
        status_code = 400
    )
