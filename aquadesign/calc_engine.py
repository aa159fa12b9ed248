"""
Calculation engine client: live previews for the dependent stages.

    preview(stage_id, payload) -> {"status": "success", "sections": {section: {field: value}}}

The engine is opaque. `inputs` previews against the production calculations on
CALC_ENGINE_URL; the biofilter and pump previews live on ADVANCED_API_URL. Each
stage's path below `/projects/{project_id}/` is a setting (PREVIEW_PATH_*).
Two response shapes have been seen:

    {"status": "success", "sections": {"oxygen": {"effluentMgL": 6.2, ...}, ...}}
    {"oxygen": {"status": "success", "data": {"effluentMgL": 6.2, ...}}, ...}

Both are normalised to the first. The payload carries `project_id` next to the
form values; it is lifted into the URL and never sent in the body.
"""

import asyncio
import logging
from typing import Optional

from .config import settings
from .errors import PreviewTransportError
from .transport import HttpError, request_json

logger = logging.getLogger(__name__)

# stage -> (base URL setting, path setting)
PREVIEW_ENDPOINTS = {
    "inputs": ("CALC_ENGINE_URL", "PREVIEW_PATH_INPUTS"),
    "biofilter": ("ADVANCED_API_URL", "PREVIEW_PATH_BIOFILTER"),
    "pumps": ("ADVANCED_API_URL", "PREVIEW_PATH_PUMPS"),
}

# Top-level response keys that are never output sections
_ENVELOPE_KEYS = {"status", "message", "error", "details", "project_id", "timestamp"}


def normalize_preview_response(body: dict) -> dict:
    """Coerce either engine response shape into {"status", "sections"}."""
    if body.get("status") == "error":
        raise PreviewTransportError(body.get("error") or body.get("message") or "Engine reported an error")

    if isinstance(body.get("sections"), dict):
        raw_sections = body["sections"]
    else:
        raw_sections = {k: v for k, v in body.items() if k not in _ENVELOPE_KEYS}

    sections = {}
    for name, content in raw_sections.items():
        if not isinstance(content, dict):
            continue
        if "data" in content and isinstance(content["data"], dict):
            if content.get("status") == "error":
                logger.debug("Engine section %s reported an error, skipping", name)
                continue
            sections[name] = dict(content["data"])
        else:
            sections[name] = dict(content)

    return {"status": body.get("status", "success"), "sections": sections}


class CalculationEngineClient:
    """Async facade over the blocking engine endpoints."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[float] = None, advanced_url: Optional[str] = None):
        self.base_url = (base_url or settings.CALC_ENGINE_URL).rstrip("/")
        self.advanced_url = (advanced_url or settings.ADVANCED_API_URL).rstrip("/")
        self.token = settings.API_TOKEN if token is None else token
        self.timeout = timeout or settings.PREVIEW_TIMEOUT_SECONDS

    def preview_url(self, stage_id: str, project_id) -> str:
        if stage_id not in PREVIEW_ENDPOINTS:
            raise PreviewTransportError(f"Stage '{stage_id}' has no live preview endpoint")
        base_setting, path_setting = PREVIEW_ENDPOINTS[stage_id]
        base = self.base_url if base_setting == "CALC_ENGINE_URL" else self.advanced_url
        path = getattr(settings, path_setting).strip("/")
        return f"{base}/projects/{project_id}/{path}"

    def preview_sync(self, stage_id: str, payload: dict) -> dict:
        body = dict(payload)
        project_id = body.pop("project_id", None)
        if project_id is None:
            raise PreviewTransportError("Project ID not found.")

        try:
            response = request_json(
                "POST", self.preview_url(stage_id, project_id), body,
                token=self.token, timeout=self.timeout,
            )
        except HttpError as e:
            raise PreviewTransportError(e.message, status_code=e.status_code) from e

        return normalize_preview_response(response)

    async def preview(self, stage_id: str, payload: dict) -> dict:
        return await asyncio.to_thread(self.preview_sync, stage_id, payload)
