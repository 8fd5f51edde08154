"""System management API.

Provides system info and configuration management.
"""

import os
import sys
import logging
from typing import Optional

from dotenv import set_key
from pydantic import BaseModel
from fastapi import APIRouter, HTTPException

sys.path.append(os.getcwd())

from web.config import settings
from config.config import get_project_root

router = APIRouter()
logger = logging.getLogger(__name__)

SECRET_FIELDS = {"feishu_app_secret", "feishu_user_access_token", "feishu_user_refresh_token"}


class SystemInfo(BaseModel):
    """System info payload."""
    version: str
    status: str
    features: list


class Config(BaseModel):
    """System config payload."""
    feishu_app_id: Optional[str] = None
    feishu_app_secret: Optional[str] = None
    feishu_user_access_token: Optional[str] = None
    feishu_user_refresh_token: Optional[str] = None
    feishu_folder_token: Optional[str] = None
    feishu_target_type: Optional[str] = None


@router.get("/info", response_model = SystemInfo)
async def get_system_info():
    """Return system info."""
    return {
        "version": "1.0.0",
        "status": "running",
        "features": [
            "Markdown publish",
            "Existing document update with rollback",
            "Image and attachment upload",
            "Sub-document linking",
            "Callout blocks",
            "Link sharing",
            "Browser re-authorization"
        ]
    }


@router.get("/config", response_model = Config)
async def get_system_config():
    """Return system config with secrets masked."""
    values = {}
    for field in Config.model_fields:
        value = getattr(settings, field.upper(), None)
        if field in SECRET_FIELDS:
            value = "****" if value else None
        values[field] = value
    return values


@router.post("/config")
async def update_system_config(config: Config):
    """Persist Feishu settings into .env and the running process."""
    env_file = str(get_project_root() / ".env")
    try:
        for field, value in config.model_dump(exclude_none = True).items():
            key = field.upper()
            set_key(env_file, key, value)
            os.environ[key] = value
            setattr(settings, key, value)
    except OSError as exc:
        logger.error("Failed to update system config: %s", str(exc), exc_info = True)
        raise HTTPException(status_code = 500, detail = f"Failed to update config: {str(exc)}") from exc

    logger.info("System config updated")
    return {"message": "Config updated, restart the service to apply it to the engine"}
