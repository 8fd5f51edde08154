"""
Feishu document sync web entrypoint.

Provides FastAPI endpoints for publishing, updating and OAuth callbacks.
"""
import sys
import logging
from contextlib import asynccontextmanager
from importlib import import_module
from pathlib import Path

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

project_root = Path(__file__).resolve().parents[1]
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from web.config import settings
from web.dependencies import close_services
from utils.logging_setup import configure_web_logging

system_api = import_module("web.api.system")
oauth_api = import_module("web.api.oauth")
documents_api = import_module("web.api.documents")


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Release shared HTTP resources on shutdown."""

    yield
    await close_services()


app = FastAPI(
    title = "Feishu Document Sync API",
    description = "Publish local markdown as Feishu documents and keep them updated",
    version = "1.0.0",
    docs_url = "/docs",
    redoc_url = "/redoc",
    lifespan = lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins = ["*"],
    allow_credentials = True,
    allow_methods = ["*"],
    allow_headers = ["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unhandled exceptions for API requests.

    Args:
        request: FastAPI request.
        exc: Exception instance.
    """

    logger.error("Request %s failed: %s", request.url, str(exc), exc_info = True)
    return JSONResponse(
        status_code = 500,
        content = {"error": "Internal server error", "message": str(exc)}
    )


app.include_router(system_api.router, prefix = "/api/system", tags = ["system"])
app.include_router(oauth_api.router, prefix = "/api/oauth", tags = ["oauth"])
app.include_router(documents_api.router, prefix = "/api/documents", tags = ["documents"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""

    return {"status": "ok", "version": "1.0.0"}


if __name__ == "__main__":
    configure_web_logging(level = logging.INFO)

    host = settings.WEB_HOST
    port = settings.WEB_PORT
    public_base_url = settings.WEB_PUBLIC_BASE_URL.strip()
    if not public_base_url:
        if host in {"0.0.0.0", "::"}:
            public_base_url = f"http://localhost:{port}"
        else:
            public_base_url = f"http://{host}:{port}"

    logger.info("WEB_HOST = %s", host)
    logger.info("WEB_PORT = %d", port)
    logger.info("WEB_PUBLIC_BASE_URL = %s", public_base_url)

    uvicorn.run(
        "web.main:app",
        host = host,
        port = port,
        reload = settings.WEB_RELOAD,
        log_level = settings.LOG_LEVEL.lower(),
        access_log = True,
        log_config = None
    )
