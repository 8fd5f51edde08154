"""
Dependency injection utilities for FastAPI.
"""
import os
import sys
import logging
from typing import Optional

sys.path.append(os.getcwd())

from config.config import AppConfig
from core.bootstrap import Services
from core.bootstrap import build_services
from web.config import settings


logger = logging.getLogger(__name__)

_services: Optional[Services] = None


def get_services() -> Services:
    """Return process-wide engine services, built on first use.

    The token manager, its authorization signal and the rate limiter must be
    shared by every request, so one instance is kept per process.

    Args:
        None
    """

    global _services
    if _services is None:
        _services = build_services(
            config = AppConfig.from_env(),
            interactive = settings.WEB_INTERACTIVE_AUTH
        )
        logger.info("Engine services initialized")
    return _services


async def close_services() -> None:
    """Close shared services on shutdown.

    Args:
        None
    """

    global _services
    if _services is not None:
        await _services.aclose()
        _services = None
