import asyncio
import copy
import itertools
import logging

from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import List
from typing import Optional

from core.exceptions import AppError
from integrations.feishu_api import BLOCK_TYPE_BULLET
from integrations.feishu_api import BLOCK_TYPE_CODE
from integrations.feishu_api import BLOCK_TYPE_DIVIDER
from integrations.feishu_api import BLOCK_TYPE_IMAGE
from integrations.feishu_api import BLOCK_TYPE_ORDERED
from integrations.feishu_api import BLOCK_TYPE_PAGE
from integrations.feishu_api import BLOCK_TYPE_QUOTE
from integrations.feishu_api import BLOCK_TYPE_TEXT
from integrations.feishu_api import BLOCK_TYPE_TODO
from integrations.feishu_api import BLOCK_TYPE_VIEW
from integrations.feishu_api import DocumentService
from integrations.feishu_api import HEADING_FIELDS
from utils.retry_policy import RetryPolicy
from utils.retry_policy import is_any_error
from utils.retry_policy import run_with_retry
from utils.text_elements import TEXT_BEARING_FIELDS


logger = logging.getLogger(__name__)

SINGLE_CALL_LIMIT = 1000
BATCH_SIZE = 800
BATCH_DELAY_SECONDS = 0.5
BLOCK_DELAY_SECONDS = 0.3

SIMPLE_FIELDS = {
    BLOCK_TYPE_TEXT: "text",
    BLOCK_TYPE_BULLET: "bullet",
    BLOCK_TYPE_ORDERED: "ordered",
    BLOCK_TYPE_CODE: "code",
    BLOCK_TYPE_QUOTE: "quote",
    BLOCK_TYPE_TODO: "todo"
}
SIMPLE_FIELDS.update(HEADING_FIELDS)

READ_ONLY_KEYS = {"block_id", "parent_id", "children", "comment_ids", "block_type"}


def build_block_data_for_copy(block: dict) -> Optional[dict]:
    """Build a create payload from one existing block, or None to skip it.

    Image tokens belong to the source document, so copied images become
    empty image blocks keeping only their geometry.

    Args:
        block: Raw block dict read from a document.
    """

    block_type = block.get("block_type")

    if block_type == BLOCK_TYPE_IMAGE:
        image = block.get("image") or {}
        if not image.get("token"):
            return None
        return {
            "block_type": BLOCK_TYPE_IMAGE,
            "image": {
                "width": image.get("width", 100),
                "height": image.get("height", 100),
                "align": image.get("align", 1)
            }
        }

    if block_type == BLOCK_TYPE_VIEW:
        return {
            "block_type": BLOCK_TYPE_VIEW,
            "view": copy.deepcopy(block.get("view") or {"view_type": 1})
        }

    field = SIMPLE_FIELDS.get(block_type)
    if field and isinstance(block.get(field), dict):
        return {
            "block_type": block_type,
            field: copy.deepcopy(block[field])
        }

    # Unsupported blocks degrade to plain text when they carry any.
    for text_field in TEXT_BEARING_FIELDS:
        payload = block.get(text_field)
        if isinstance(payload, dict) and payload.get("elements"):
            return {
                "block_type": BLOCK_TYPE_TEXT,
                "text": {
                    "elements": copy.deepcopy(payload["elements"])
                }
            }

    if block_type == BLOCK_TYPE_DIVIDER:
        return {"block_type": BLOCK_TYPE_DIVIDER, "divider": {}}

    if not isinstance(block_type, int) or block_type == BLOCK_TYPE_PAGE:
        logger.debug("Skip block without copyable type: %s", block.get("block_id"))
        return None

    logger.debug("Copying block type %s as is: %s", str(block_type), block.get("block_id"))
    payload = {"block_type": block_type}
    for key, value in block.items():
        if key not in READ_ONLY_KEYS:
            payload[key] = copy.deepcopy(value)
    return payload


class CopyTree:
    """Nested create payload built from one document snapshot.

    Args:
        root_ids: Temporary ids of first level blocks, in order.
        nodes: Descendant payloads keyed by temporary id.
    """

    def __init__(self, root_ids: List[str], nodes: Dict[str, dict]) -> None:
        self.root_ids = root_ids
        self.nodes = nodes

    @property
    def size(self) -> int:
        return len(self.nodes)

    def subtree_ids(self, root_id: str) -> List[str]:
        ordered = []
        stack = [root_id]
        while stack:
            current = stack.pop()
            ordered.append(current)
            stack.extend(reversed(self.nodes[current].get("children", [])))
        return ordered

    def descendants(self, root_ids: List[str]) -> List[dict]:
        return [
            self.nodes[node_id]
            for root_id in root_ids
            for node_id in self.subtree_ids(root_id)
        ]


def build_copy_tree(blocks: List[dict], root_child_ids: Optional[List[str]] = None) -> CopyTree:
    """Build a nested copy payload from a flat block snapshot.

    Args:
        blocks: Flat block list of one document.
        root_child_ids: First level block ids, page block children when None.
    """

    by_id = {block.get("block_id"): block for block in blocks}
    if root_child_ids is None:
        page = next((block for block in blocks if block.get("block_type") == BLOCK_TYPE_PAGE), None)
        root_child_ids = list((page or {}).get("children") or [])

    counter = itertools.count(1)
    nodes: Dict[str, dict] = {}

    def _visit(block_id: str) -> Optional[str]:
        block = by_id.get(block_id)
        if block is None:
            return None
        payload = build_block_data_for_copy(block)
        if payload is None:
            return None
        temp_id = f"copy_{next(counter)}"
        payload["block_id"] = temp_id
        nodes[temp_id] = payload
        children = [child for child in (_visit(item) for item in block.get("children") or []) if child]
        payload["children"] = children
        return temp_id

    root_ids = [item for item in (_visit(block_id) for block_id in root_child_ids) if item]
    return CopyTree(root_ids = root_ids, nodes = nodes)


def plan_batches(tree: CopyTree, batch_size: int = BATCH_SIZE) -> List[List[str]]:
    """Group root subtrees into ordered batches of bounded block count.

    A subtree larger than the batch size forms its own batch.

    Args:
        tree: Copy tree.
        batch_size: Maximum blocks per batch.
    """

    batches: List[List[str]] = []
    current: List[str] = []
    current_size = 0
    for root_id in tree.root_ids:
        size = len(tree.subtree_ids(root_id))
        if current and current_size + size > batch_size:
            batches.append(current)
            current = []
            current_size = 0
        current.append(root_id)
        current_size += size
    if current:
        batches.append(current)
    return batches


class BlockCopier:
    """Copy one block tree into the root of a target document.

    Args:
        document_service: Block API service.
        sleep: Awaitable sleep function.
    """

    def __init__(
        self,
        document_service: DocumentService,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ) -> None:
        self.document_service = document_service
        self.sleep = sleep

    async def copy_blocks(
        self,
        target_document_id: str,
        blocks: List[dict],
        root_child_ids: Optional[List[str]] = None
    ) -> int:
        """Copy a block snapshot under the target page block and return copied count.

        Args:
            target_document_id: Target document id.
            blocks: Flat block snapshot of the source document.
            root_child_ids: First level blocks to copy, page children when None.
        """

        tree = build_copy_tree(blocks = blocks, root_child_ids = root_child_ids)
        if not tree.root_ids:
            logger.info("Nothing to copy into %s", target_document_id)
            return 0

        if tree.size <= SINGLE_CALL_LIMIT:
            batches = [tree.root_ids]
        else:
            batches = plan_batches(tree = tree)
        logger.info("Copying blocks: total = %d, batches = %d", tree.size, len(batches))

        copied = 0
        for batch_index, batch in enumerate(batches):
            if batch_index > 0:
                await self.sleep(BATCH_DELAY_SECONDS)
            descendants = tree.descendants(batch)
            try:
                await self.document_service.create_descendants(
                    document_id = target_document_id,
                    parent_id = target_document_id,
                    children_id = batch,
                    descendants = descendants
                )
                copied += len(descendants)
            except AppError as exc:
                logger.warning(
                    "Batch copy %d/%d failed, copying blocks one by one: %s",
                    batch_index + 1,
                    len(batches),
                    str(exc)
                )
                copied += await self._copy_individually(target_document_id, tree, batch)
        return copied

    async def _copy_individually(self, document_id: str, tree: CopyTree, root_ids: List[str]) -> int:
        copied = 0
        policy = RetryPolicy(max_attempts = 3, base_delay = 1.0, max_delay = 5.0, retryable = is_any_error)
        for position, root_id in enumerate(root_ids):
            if position > 0:
                await self.sleep(BLOCK_DELAY_SECONDS)
            copied += await self._copy_node(document_id, document_id, tree, root_id, policy)
        return copied

    async def _copy_node(
        self,
        document_id: str,
        parent_id: str,
        tree: CopyTree,
        node_id: str,
        policy: RetryPolicy
    ) -> int:
        node = tree.nodes[node_id]
        payload = {key: value for key, value in node.items() if key not in {"block_id", "children"}}

        async def _create() -> List[dict]:
            return await self.document_service.create_children(
                document_id = document_id,
                parent_id = parent_id,
                children = [payload]
            )

        try:
            created = await run_with_retry(
                operation = _create,
                policy = policy,
                label = f"copy block type {payload.get('block_type')}",
                sleep = self.sleep
            )
        except AppError as exc:
            block_type = payload.get("block_type")
            if block_type not in SIMPLE_FIELDS:
                logger.warning("Dropping block type %s after retries: %s", str(block_type), str(exc))
                return 0
            raise

        copied = 1
        new_id = created[0].get("block_id", "")
        for child_id in node.get("children", []):
            await self.sleep(BLOCK_DELAY_SECONDS)
            copied += await self._copy_node(document_id, new_id, tree, child_id, policy)
        return copied
