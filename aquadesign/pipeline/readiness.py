"""
Field Readiness Store: per-field status of every preview output section.

    section -> field -> ReadinessEntry(status, value, updated_at, token)

Every write is gated by the stage's current request token. A stage has exactly
one current token; `mark_loading` only accepts a strictly newer one, and
`merge`/`mark_error` are no-ops unless they carry the current token. That makes
late responses from superseded requests harmless no matter when they land.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from ..stages import get_stage

logger = logging.getLogger(__name__)

EMPTY = "empty"
LOADING = "loading"
POPULATED = "populated"
ERROR = "error"


@dataclass
class ReadinessEntry:
    status: str = EMPTY
    value: Any = None
    updated_at: Optional[datetime] = None
    token: Optional[int] = None
    # Status held before the current loading phase, restored if no result arrives
    previous: str = EMPTY

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "value": self.value,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ReadinessStore:
    def __init__(self):
        self.clear()

    def clear(self):
        """Forget every entry and token. Used by an explicit reset only."""
        self._entries: dict[str, dict[str, ReadinessEntry]] = {}
        self._current: dict[str, Optional[int]] = {}  # stage -> current token (None once revoked)
        self._high_water: dict[str, int] = {}  # stage -> newest token ever accepted
        self._pending_fingerprint: dict[str, Optional[str]] = {}
        self._success_fingerprint: dict[str, str] = {}
        self._success_schema: dict[str, dict[str, list[str]]] = {}
        self._errors: dict[str, str] = {}

    # --- Token bookkeeping ---

    def current_token(self, stage_id: str) -> Optional[int]:
        return self._current.get(stage_id)

    def is_current(self, stage_id: str, token: int) -> bool:
        return token is not None and self._current.get(stage_id) == token

    def revoke(self, stage_id: str):
        """Drop the stage's current token and settle anything left loading."""
        if self._current.get(stage_id) is None:
            return
        self._current[stage_id] = None
        self._pending_fingerprint[stage_id] = None
        self._settle_loading(stage_id)

    # --- Transitions ---

    def mark_loading(self, stage_id: str, token: int, fingerprint: Optional[str] = None) -> bool:
        """
        Register `token` as the stage's current request.

        Fields flip to loading only when the dispatched payload differs from the
        one that produced the values on screen.
        """
        if token <= self._high_water.get(stage_id, 0):
            logger.debug("Ignoring loading for %s: token %s is not newer", stage_id, token)
            return False

        self._high_water[stage_id] = token
        self._current[stage_id] = token
        self._pending_fingerprint[stage_id] = fingerprint

        if fingerprint is not None and fingerprint == self._success_fingerprint.get(stage_id):
            return True

        for section, field in self._stage_fields(stage_id):
            entry = self._entry(section, field)
            if entry.status != LOADING:
                entry.previous = entry.status
            entry.status = LOADING
            entry.token = token
        return True

    def merge(self, stage_id: str, token: int, sections: dict) -> bool:
        """Apply a preview result. Returns False when the token is stale."""
        if not self.is_current(stage_id, token):
            logger.debug("Discarding stale result for %s (token %s, current %s)",
                         stage_id, token, self._current.get(stage_id))
            return False

        now = datetime.utcnow()
        schema = {}
        for section, values in (sections or {}).items():
            if not isinstance(values, dict):
                continue
            schema[section] = list(values.keys())
            for field, value in values.items():
                entry = self._entry(section, field)
                entry.status = POPULATED
                entry.value = value
                entry.updated_at = now
                entry.token = token

        self._success_schema[stage_id] = schema
        fingerprint = self._pending_fingerprint.get(stage_id)
        if fingerprint is not None:
            self._success_fingerprint[stage_id] = fingerprint
        self._errors.pop(stage_id, None)
        # Declared fields the engine left out of this response
        self._settle_loading(stage_id)
        return True

    def mark_error(self, stage_id: str, token: int, message: Optional[str] = None) -> bool:
        """Flag the stage's last successful schema as error, unless superseded."""
        if not self.is_current(stage_id, token):
            logger.debug("Ignoring error for %s: token %s superseded", stage_id, token)
            return False

        now = datetime.utcnow()
        schema = self._success_schema.get(stage_id)
        pairs = ([(s, f) for s, fields in schema.items() for f in fields]
                 if schema else self._stage_fields(stage_id))
        for section, field in pairs:
            entry = self._entry(section, field)
            entry.status = ERROR
            entry.updated_at = now
            entry.token = token

        self._settle_loading(stage_id)
        self._success_fingerprint.pop(stage_id, None)
        if message:
            self._errors[stage_id] = message
        return True

    # --- Views ---

    def get(self, section: str, field: str) -> ReadinessEntry:
        return self._entries.get(section, {}).get(field) or ReadinessEntry()

    def status(self, section: str, field: str) -> str:
        return self.get(section, field).status

    def value(self, section: str, field: str):
        return self.get(section, field).value

    def section(self, section: str) -> dict:
        return {field: entry.to_dict() for field, entry in self._entries.get(section, {}).items()}

    def last_error(self, stage_id: str) -> Optional[str]:
        return self._errors.get(stage_id)

    def to_dict(self) -> dict:
        return {section: self.section(section) for section in self._entries}

    # --- Internals ---

    def _entry(self, section: str, field: str) -> ReadinessEntry:
        return self._entries.setdefault(section, {}).setdefault(field, ReadinessEntry())

    def _stage_fields(self, stage_id: str) -> list[tuple[str, str]]:
        declared = get_stage(stage_id).sections
        pairs = [(section, field) for section, fields in declared.items() for field in fields]
        # Fields the engine returned that the descriptor doesn't declare
        for section, fields in self._success_schema.get(stage_id, {}).items():
            pairs.extend((section, f) for f in fields if (section, f) not in pairs)
        return pairs

    def _settle_loading(self, stage_id: str):
        """
        Fields still loading when a request ends without a value for them
        (revoked, or left out of the response) go back to the status they had
        before loading. Loading is never followed by a status the field did not
        already hold or earn from a result.
        """
        for section, field in self._stage_fields(stage_id):
            entry = self._entries.get(section, {}).get(field)
            if entry is not None and entry.status == LOADING:
                entry.status = entry.previous
