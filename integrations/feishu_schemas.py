"""Typed decoders for Feishu open API payloads.

Each decoder checks only the fields the engine relies on and raises
StructuralError when they are missing or have the wrong type.
"""
import json

from dataclasses import dataclass
from typing import Any
from typing import List

from core.exceptions import StructuralError
from data.models import ImportJobStatus
from utils.http_client import HttpResponse


@dataclass
class BlocksPage:
    """One page of document blocks.

    Args:
        items: Raw block dicts.
        has_more: Whether another page exists.
        page_token: Token of the next page.
    """

    items: List[dict]
    has_more: bool
    page_token: str


def decode_envelope(response: HttpResponse, path: str) -> dict:
    """Parse one Feishu JSON envelope carrying code/msg/data.

    Args:
        response: HTTP response.
        path: Open API path used in error messages.
    """

    try:
        payload = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise StructuralError(
            f"Invalid JSON from {path}: status = {response.status_code}, body = {response.text[:200]}"
        ) from exc

    if not isinstance(payload, dict) or "code" not in payload:
        raise StructuralError(f"Unexpected envelope from {path}: {str(payload)[:200]}")
    return payload


def _require_data(payload: dict, path: str) -> dict:
    data = payload.get("data")
    if not isinstance(data, dict):
        raise StructuralError(f"Missing data object in response of {path}")
    return data


def _require_str(data: dict, key: str, path: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise StructuralError(f"Missing {key} in response of {path}")
    return value


def decode_blocks_page(payload: dict, path: str) -> BlocksPage:
    """Decode list-blocks response.

    Args:
        payload: Envelope payload.
        path: Open API path.
    """

    data = _require_data(payload, path)
    items = data.get("items", [])
    if not isinstance(items, list):
        raise StructuralError(f"Field items is not a list in response of {path}")
    return BlocksPage(
        items = [item for item in items if isinstance(item, dict)],
        has_more = bool(data.get("has_more", False)),
        page_token = str(data.get("page_token") or "")
    )


def decode_block(payload: dict, path: str) -> dict:
    """Decode get-block response.

    Args:
        payload: Envelope payload.
        path: Open API path.
    """

    data = _require_data(payload, path)
    block = data.get("block")
    if not isinstance(block, dict):
        raise StructuralError(f"Missing block in response of {path}")
    return block


def decode_created_children(payload: dict, path: str) -> List[dict]:
    """Decode create-children response.

    Args:
        payload: Envelope payload.
        path: Open API path.
    """

    data = _require_data(payload, path)
    children = data.get("children")
    if not isinstance(children, list) or not children:
        raise StructuralError(f"Missing created children in response of {path}")
    return children


def decode_upload_token(payload: dict, path: str) -> str:
    """Decode upload_all response.

    Args:
        payload: Envelope payload.
        path: Open API path.
    """

    return _require_str(_require_data(payload, path), "file_token", path)


def decode_import_ticket(payload: dict, path: str) -> str:
    """Decode create-import-task response.

    Args:
        payload: Envelope payload.
        path: Open API path.
    """

    return _require_str(_require_data(payload, path), "ticket", path)


def decode_import_status(payload: dict, path: str) -> ImportJobStatus:
    """Decode import task status response.

    Args:
        payload: Envelope payload.
        path: Open API path.
    """

    data = _require_data(payload, path)
    result = data.get("result")
    if not isinstance(result, dict):
        raise StructuralError(f"Missing result in response of {path}")

    raw_status: Any = result.get("job_status")
    job_status = None
    if raw_status is not None:
        try:
            job_status = int(raw_status)
        except (TypeError, ValueError) as exc:
            raise StructuralError(f"Invalid job_status {raw_status!r} in response of {path}") from exc

    return ImportJobStatus(
        job_status = job_status,
        token = str(result.get("token") or ""),
        error_message = str(result.get("job_error_msg") or "")
    )


def decode_permission_public(payload: dict, path: str) -> dict:
    """Decode public permission response.

    Args:
        payload: Envelope payload.
        path: Open API path.
    """

    data = _require_data(payload, path)
    permission = data.get("permission_public")
    if not isinstance(permission, dict):
        raise StructuralError(f"Missing permission_public in response of {path}")
    return permission


def decode_wiki_move(payload: dict, path: str) -> str:
    """Decode move_docs_to_wiki response and return wiki token or empty string.

    Args:
        payload: Envelope payload.
        path: Open API path.
    """

    data = _require_data(payload, path)
    candidates = [
        data.get("wiki_token"),
        data.get("node_token"),
        (data.get("node") or {}).get("node_token")
    ]
    return next((item for item in candidates if isinstance(item, str) and item), "")
