"""AWS Lambda entrypoints for the sibling tasks and scheduled history sync."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from farmrun.services.pipeline import get_pipeline

LOGGER = logging.getLogger("farmrun.handlers")


def _payload(event: Any) -> Dict[str, Any]:
    if not isinstance(event, dict):
        return {}
    body = event.get("body")
    if isinstance(body, str):
        try:
            decoded = json.loads(body or "{}")
        except json.JSONDecodeError:
            LOGGER.warning("Ignoring non-JSON event body")
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return event


def persist_report_handler(event: Any, context: Optional[Any] = None) -> Dict[str, Any]:
    result = get_pipeline().extractor.handle_persist(_payload(event))
    return result.model_dump(exclude_none=True)


def extract_report_handler(event: Any, context: Optional[Any] = None) -> Dict[str, Any]:
    result = get_pipeline().extractor.handle_extract(_payload(event))
    return result.model_dump(exclude_none=True)


def sync_history_handler(event: Any, context: Optional[Any] = None) -> Dict[str, Any]:
    project = _payload(event).get("projectHandle")
    response = get_pipeline().sync(project)
    LOGGER.info("%s", response.message)
    return response.model_dump(by_alias=True)
