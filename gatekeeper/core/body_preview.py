"""Bounded JSON body inspection for classification."""
from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import Request

logger = logging.getLogger(__name__)


def _is_json(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type == "application/json" or media_type.endswith("+json")


async def read_json_preview(request: Request, max_bytes: int) -> dict[str, Any]:
    """Parse the request body as a JSON object for classification.

    The body is read at most once and never modified; the downstream handler
    still receives it. Anything that is not a small JSON object yields an
    empty mapping, and rejecting malformed bodies is left to the handler.

    Args:
        request: Incoming request.
        max_bytes: Largest body inspected; 0 disables inspection.

    Returns:
        The parsed object, or ``{}``.
    """
    if max_bytes <= 0 or request.method in ("GET", "HEAD", "OPTIONS"):
        return {}
    if not _is_json(request.headers.get("content-type", "")):
        return {}

    declared = request.headers.get("content-length")
    if declared is not None:
        try:
            declared_size = int(declared)
        except ValueError:
            return {}
        if declared_size > max_bytes:
            logger.debug(
                "body_preview.skipped_by_header",
                extra={"content_length": declared_size, "max_bytes": max_bytes},
            )
            return {}

    raw = await request.body()
    if not raw or len(raw) > max_bytes:
        return {}

    try:
        payload = json.loads(raw)
    except (ValueError, UnicodeDecodeError):
        logger.debug("body_preview.not_json", extra={"size": len(raw)})
        return {}

    return payload if isinstance(payload, dict) else {}
