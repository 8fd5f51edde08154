"""
Configuration module for web service.

Loads environment variables and exposes a settings object.
"""
import os
import sys
from pathlib import Path


project_root = Path(__file__).resolve().parents[1]
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from config.config import load_dotenv_if_exists

load_dotenv_if_exists()


class Settings:
    """Application settings."""

    # App settings
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    WEB_HOST: str = os.getenv("WEB_HOST", os.getenv("HOST", "127.0.0.1"))
    WEB_PORT: int = int(os.getenv("WEB_PORT", os.getenv("PORT", "8000")))
    WEB_RELOAD: bool = os.getenv("WEB_RELOAD", "false").lower() == "true"
    WEB_PUBLIC_BASE_URL: str = os.getenv("WEB_PUBLIC_BASE_URL", "")
    # Whether publish requests may wait for browser re-authorization.
    WEB_INTERACTIVE_AUTH: bool = os.getenv("WEB_INTERACTIVE_AUTH", "true").lower() == "true"


settings = Settings()
