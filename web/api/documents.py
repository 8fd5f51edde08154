"""Document publishing API.

Publishes placeholder markdown produced by a host application and
overwrites existing documents.
"""

import dataclasses
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from core.bootstrap import Services
from data.models import CalloutInfo
from data.models import PENDING_CONTENT_KINDS
from data.models import PendingContent
from data.models import UNKNOWN_POSITION
from web.dependencies import get_services

router = APIRouter()
logger = logging.getLogger(__name__)


class CalloutPayload(BaseModel):
    """Callout content of one pending item."""
    callout_type: str = "note"
    title: str = ""
    content: str = ""
    foldable: bool = False
    background_color: int = 5
    border_color: int = 5
    text_color: int = 5
    emoji_id: str = "bulb"


class PendingContentPayload(BaseModel):
    """One deferred content item."""
    placeholder: str
    original_path: str = ""
    display_name: str = ""
    kind: str = Field(pattern = "^(" + "|".join(PENDING_CONTENT_KINDS) + ")$")
    position: int = UNKNOWN_POSITION
    callout: Optional[CalloutPayload] = None

    def to_pending_content(self) -> PendingContent:
        return PendingContent(
            placeholder = self.placeholder,
            original_path = self.original_path,
            display_name = self.display_name,
            kind = self.kind,
            position = self.position,
            callout = CalloutInfo(**self.callout.model_dump()) if self.callout else None
        )


class PublishRequest(BaseModel):
    """Publish request payload."""
    title: str = Field(min_length = 1)
    content: str
    pending_contents: List[PendingContentPayload] = []


class UpdateRequest(PublishRequest):
    """Update request payload."""
    existing_url: str = Field(min_length = 1)


class PublishResponse(BaseModel):
    """Publish result payload."""
    success: bool
    url: str = ""
    title: str = ""
    error: str = ""
    document_id: str = ""
    source_file_token: str = ""


class UpdateResponse(BaseModel):
    """Update result payload."""
    success: bool
    url: str = ""
    error: str = ""


@router.post("/publish", response_model = PublishResponse)
async def publish_document(request: PublishRequest, services: Services = Depends(get_services)):
    """Create a new document from placeholder markdown."""
    stages: List[str] = []
    result = await services.publisher.publish(
        title = request.title,
        content = request.content,
        pending_contents = [item.to_pending_content() for item in request.pending_contents],
        progress = stages.append
    )
    logger.info("Publish %s finished: success = %s, stages = %d", request.title, result.success, len(stages))
    return dataclasses.asdict(result)


@router.post("/update", response_model = UpdateResponse)
async def update_document(request: UpdateRequest, services: Services = Depends(get_services)):
    """Overwrite an existing document with placeholder markdown."""
    result = await services.publisher.update_existing(
        existing_url = request.existing_url,
        title = request.title,
        content = request.content,
        pending_contents = [item.to_pending_content() for item in request.pending_contents]
    )
    logger.info("Update %s finished: success = %s", request.existing_url, result.success)
    return dataclasses.asdict(result)
