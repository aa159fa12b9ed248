"""
Design backend client: the non-idempotent commit side, plus report retrieval.

    commit(stage_id, mode, identity, payload)
        -> {"design_handle", "project_handle", "status", "action", "recommended_values", "results"}
    fetch_report(identity, stage_ids) -> ({section: results}, {section: error message})

initial    POST {DESIGN_API_URL}/designs                                      (create or update)
inputs     POST {ADVANCED_API_URL}/projects/{project_id}/advanced/parameters  (update only)
biofilter  POST {ADVANCED_API_URL}/projects/{project_id}/step7                (update only)
pumps      POST {ADVANCED_API_URL}/projects/{project_id}/step8                (update only)

Report sections are read back with GET on the same project base. A section that
cannot be fetched is recorded in the error map and never fails the report.

Error bodies carry the reason in `error` (sometimes `details`); that text becomes
the CommitRejectedError message verbatim.
"""

import asyncio
import logging
from typing import Optional

from .config import settings
from .errors import CommitRejectedError
from .transport import HttpError, request_json

logger = logging.getLogger(__name__)

COMMIT_PATHS = {
    "inputs": "advanced/parameters",
    "biofilter": "step7",
    "pumps": "step8",
}

# stage -> ((report section, path), ...)
REPORT_PATHS = {
    "inputs": (("production", "step_6_results"), ("limiting_factor", "limiting_factor")),
    "biofilter": (("biofilter", "step7"),),
    "pumps": (("pumps", "step8"),),
}

# Response keys that describe the request rather than the stored results
_ENVELOPE_KEYS = {"status", "action", "message", "error", "details",
                  "design_id", "project_id", "recommended_values"}


def build_design_body(mode: str, identity, payload: dict) -> dict:
    """Map initial-stage form values onto the /designs request body."""
    body = {
        "design_system_name": str(payload.get("design_name", "")).strip(),
        "project_name": str(payload.get("project_name", "")).strip(),
        "system_purpose": payload.get("system_purpose", "Commercial aquaculture production (monoculture)"),
        "system_type": payload.get("system_type", "RAS"),
        "target_species": payload.get("species", ""),
        "use_recommended_values": bool(payload.get("use_recommended_values", False)),
        "calculation_type": payload.get("calculation_type", "advanced"),
    }
    if mode == "update":
        body["design_id"] = identity.design_handle
        body["project_id"] = identity.project_handle
    return body


def build_stage_body(stage_id: str, payload: dict) -> dict:
    body = dict(payload)
    body.pop("project_id", None)
    if stage_id == "inputs":
        body.setdefault("type", "advanced")
    return body


class DesignApiClient:
    """Async facade over the blocking design backend endpoints."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[float] = None, advanced_url: Optional[str] = None):
        self.base_url = (base_url or settings.DESIGN_API_URL).rstrip("/")
        self.advanced_url = (advanced_url or settings.ADVANCED_API_URL).rstrip("/")
        self.token = settings.API_TOKEN if token is None else token
        self.timeout = timeout or settings.COMMIT_TIMEOUT_SECONDS

    def project_url(self, identity, path: str) -> str:
        return f"{self.advanced_url}/projects/{identity.project_handle}/{path}"

    def commit_url(self, stage_id: str, identity) -> str:
        if stage_id == "initial":
            return f"{self.base_url}/designs"
        if stage_id not in COMMIT_PATHS:
            raise CommitRejectedError(f"Stage '{stage_id}' cannot be committed")
        return self.project_url(identity, COMMIT_PATHS[stage_id])

    def commit_sync(self, stage_id: str, mode: str, identity, payload: dict) -> dict:
        url = self.commit_url(stage_id, identity)
        if stage_id == "initial":
            body = build_design_body(mode, identity, payload)
        else:
            body = build_stage_body(stage_id, payload)

        try:
            response = request_json("POST", url, body, token=self.token, timeout=self.timeout)
        except HttpError as e:
            logger.warning("Commit of %s (%s) rejected: %s", stage_id, mode, e.message)
            raise CommitRejectedError(e.message, status_code=e.status_code) from e

        if response.get("status") == "error":
            raise CommitRejectedError(response.get("error") or response.get("details") or "Commit failed")

        return {
            "status": response.get("status", "success"),
            "action": response.get("action"),
            "design_handle": response.get("design_id"),
            "project_handle": response.get("project_id"),
            "recommended_values": response.get("recommended_values"),
            "results": {k: v for k, v in response.items() if k not in _ENVELOPE_KEYS},
        }

    async def commit(self, stage_id: str, mode: str, identity, payload: dict) -> dict:
        return await asyncio.to_thread(self.commit_sync, stage_id, mode, identity, payload)

    def fetch_report_sync(self, identity, stage_ids) -> tuple[dict, dict]:
        results, errors = {}, {}
        if identity.project_handle is None:
            return results, errors

        timeout = settings.REPORT_TIMEOUT_SECONDS
        for stage_id in stage_ids:
            for section, path in REPORT_PATHS.get(stage_id, ()):
                url = self.project_url(identity, path)
                try:
                    response = request_json("GET", url, token=self.token, timeout=timeout)
                except HttpError as e:
                    logger.warning("Report section %s unavailable (%s): %s", section, url, e.message)
                    errors[section] = e.message
                    continue
                if response.get("status") == "error":
                    errors[section] = response.get("error") or response.get("message") or "Results unavailable"
                    continue
                results[section] = response.get("data", response)
        return results, errors

    async def fetch_report(self, identity, stage_ids) -> tuple[dict, dict]:
        return await asyncio.to_thread(self.fetch_report_sync, identity, list(stage_ids))
