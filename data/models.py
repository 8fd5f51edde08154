import dataclasses

from dataclasses import dataclass
from typing import Callable
from typing import List
from typing import Optional


KIND_IMAGE = "image"
KIND_FILE = "file"
KIND_SUB_DOCUMENT = "sub_document"
KIND_CALLOUT = "callout"

PENDING_CONTENT_KINDS = (KIND_IMAGE, KIND_FILE, KIND_SUB_DOCUMENT, KIND_CALLOUT)

# Positions used when a match has no authoring ordinal.
UNKNOWN_POSITION = 999

ProgressSink = Callable[[str], None]


@dataclass
class CalloutInfo:
    """Callout block content captured by the markdown transformer.

    Args:
        callout_type: Callout kind such as note, tip or warning.
        title: Callout title line.
        content: Callout body as inline markdown.
        foldable: Whether the source callout was foldable.
        background_color: Feishu callout background color enum.
        border_color: Feishu callout border color enum.
        text_color: Feishu callout text color enum.
        emoji_id: Feishu emoji id shown in the callout header.
    """

    callout_type: str
    title: str
    content: str
    foldable: bool = False
    background_color: int = 5
    border_color: int = 5
    text_color: int = 5
    emoji_id: str = "bulb"


@dataclass(frozen = True)
class PendingContent:
    """One deferred content item referenced by a placeholder token.

    Args:
        placeholder: Unique placeholder token written into markdown.
        original_path: Local path of the referenced file or sub-document.
        display_name: Name shown to users, also used as upload file name.
        kind: One of image/file/sub_document/callout.
        position: Authoring order of the placeholder in source markdown.
        callout: Callout payload when kind is callout.
    """

    placeholder: str
    original_path: str
    display_name: str
    kind: str
    position: int = UNKNOWN_POSITION
    callout: Optional[CalloutInfo] = None

    @property
    def is_image(self) -> bool:
        return self.kind == KIND_IMAGE


@dataclass
class PlaceholderMatch:
    """One located placeholder inside the remote block tree.

    Args:
        block_id: Block containing the placeholder text.
        parent_block_id: Parent block id of the placeholder block.
        block_index: Index of the block inside parent children.
        placeholder: Placeholder token.
        content: Matched pending content.
    """

    block_id: str
    parent_block_id: str
    block_index: int
    placeholder: str
    content: PendingContent


@dataclass
class ImportJobStatus:
    """Decoded import task status.

    Args:
        job_status: Integer job status code, None when absent.
        token: Document token when attached.
        error_message: Job error message when present.
    """

    job_status: Optional[int]
    token: str = ""
    error_message: str = ""


@dataclass
class ImportJobResult:
    """Terminal result of an import poll.

    Args:
        success: Whether a document id was obtained.
        document_id: Converted document id.
        error: Failure reason.
        attempts: Number of status checks performed.
    """

    success: bool
    document_id: str = ""
    error: str = ""
    attempts: int = 0


@dataclass
class UploadedImport:
    """Document created from one markdown upload and import.

    Args:
        document_id: Converted docx document id.
        file_token: Uploaded source markdown file token.
        url: Document URL.
    """

    document_id: str
    file_token: str
    url: str


@dataclass
class ShareCheck:
    """Link sharing state read back from permission API.

    Args:
        link_shared: Whether link share is enabled for anyone or tenant.
        link_share_entity: Raw link_share_entity value.
        external_access: Whether external access is enabled.
        raw: Raw permission_public payload.
    """

    link_shared: bool
    link_share_entity: str = ""
    external_access: bool = False
    raw: dict = dataclasses.field(default_factory = dict)


@dataclass
class ResolveReport:
    """Summary of one placeholder resolution pass.

    Args:
        located: Number of placeholders found in the document.
        bound: Number of placeholders whose content was bound.
        failed: Placeholders that could not be bound.
        remaining: Placeholders whose text survived cleanup.
    """

    located: int = 0
    bound: int = 0
    failed: List[str] = dataclasses.field(default_factory = list)
    remaining: List[str] = dataclasses.field(default_factory = list)


@dataclass
class SyncOperation:
    """State of one update-existing operation.

    Args:
        target_document_id: Document being overwritten.
        scratch_document_id: Temporary document holding the new content.
        scratch_file_token: Uploaded source file of the scratch document.
        original_blocks_backup: Target block snapshot taken before clearing.
    """

    target_document_id: str
    scratch_document_id: str = ""
    scratch_file_token: str = ""
    original_blocks_backup: Optional[List[dict]] = None


@dataclass
class PublishResult:
    """Result returned by publish.

    Args:
        success: Whether content is reachable by the returned URL.
        url: Document URL, or raw file URL when conversion failed.
        title: Final document title.
        error: Failure reason or warning.
        document_id: Converted document id.
        source_file_token: Uploaded markdown file token.
    """

    success: bool
    url: str = ""
    title: str = ""
    error: str = ""
    document_id: str = ""
    source_file_token: str = ""


@dataclass
class UpdateResult:
    """Result returned by update_existing.

    Args:
        success: Whether the target now holds the new content.
        url: Target document URL.
        error: Failure reason.
    """

    success: bool
    url: str = ""
    error: str = ""


@dataclass
class TransformedMarkdown:
    """Markdown after placeholder substitution.

    Args:
        content: Markdown with placeholder tokens.
        pending_contents: Deferred contents in authoring order.
        title: Extracted title.
        feishu_url: Existing document URL from front matter.
    """

    content: str
    pending_contents: List[PendingContent]
    title: str
    feishu_url: str = ""
