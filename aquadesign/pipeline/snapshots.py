"""
Snapshot Cache: frozen copies of upstream FormStates feeding dependent previews.

Snapshots are keyed by (producing stage, consuming stage) and are replaced
wholesale, never patched. A consuming stage's preview payload is

    snapshot(dep_1) | snapshot(dep_2) | ... | own live FormState

merged left to right (see `stages.depends_on`), each source first passed through
the omission law in `clean_payload`.
"""

import copy
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Mapping, Optional

from ..stages import FieldSpec, get_stage, is_blank

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"true", "yes", "on", "1"}


@dataclass(frozen=True)
class Snapshot:
    producing_stage: str
    consuming_stage: str
    values: Mapping
    source_version: int
    captured_at: datetime = field(default_factory=datetime.utcnow)


def _parse_number(value, integer: bool = False):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    if number.is_integer() and (integer or isinstance(value, str)):
        return int(number)
    return number


def normalize_value(spec: Optional[FieldSpec], value):
    """
    Returns (include, value) for one payload entry.

    Booleans always go through. Blank strings, None, NaN, zero and unparseable
    numbers are dropped.
    """
    if (spec is not None and spec.is_bool) or isinstance(value, bool):
        if isinstance(value, str):
            return True, value.strip().lower() in _TRUE_STRINGS
        return True, bool(value)

    if is_blank(value):
        return False, None

    if spec is not None and spec.is_numeric:
        number = _parse_number(value, integer=spec.kind == "integer")
        if number is None or number == 0:
            return False, None
        return True, number

    if isinstance(value, (int, float)):
        if value == 0 or (isinstance(value, float) and math.isnan(value)):
            return False, None
        return True, value

    return True, str(value).strip()


def clean_payload(values: dict, fields: Optional[dict] = None) -> dict:
    """Apply the omission law to a merged name -> value map."""
    fields = fields or {}
    cleaned = {}
    for name, value in values.items():
        include, normalized = normalize_value(fields.get(name), value)
        if include:
            cleaned[name] = normalized
    return cleaned


class SnapshotCache:
    def __init__(self, forms: dict):
        """forms: stage_id -> FormState, shared with the SessionState."""
        self.forms = forms
        self._snapshots: dict[tuple[str, str], Snapshot] = {}

    def capture(self, producing_stage: str, consuming_stage: str) -> Snapshot:
        form = self.forms[producing_stage]
        snapshot = Snapshot(
            producing_stage=producing_stage,
            consuming_stage=consuming_stage,
            values=MappingProxyType(copy.deepcopy(form.as_dict())),
            source_version=form.version,
        )
        self._snapshots[(producing_stage, consuming_stage)] = snapshot
        logger.debug("Captured %s -> %s at v%s", producing_stage, consuming_stage, form.version)
        return snapshot

    def capture_for(self, consuming_stage: str) -> list[Snapshot]:
        """Capture every upstream snapshot a stage reads. Called on stage entry."""
        return [self.capture(dep, consuming_stage) for dep in get_stage(consuming_stage).depends_on]

    def refresh(self, producing_stage: str) -> list[str]:
        """
        Re-capture every existing snapshot of `producing_stage` whose source has
        moved on. Returns the consuming stages that got a new snapshot.
        """
        form = self.forms[producing_stage]
        refreshed = []
        for (producer, consumer), snapshot in list(self._snapshots.items()):
            if producer == producing_stage and snapshot.source_version != form.version:
                self.capture(producer, consumer)
                refreshed.append(consumer)
        return refreshed

    def get(self, producing_stage: str, consuming_stage: str) -> Optional[Snapshot]:
        return self._snapshots.get((producing_stage, consuming_stage))

    def build_payload(self, stage_id: str) -> dict:
        """
        Upstream snapshots in `depends_on` order, then the stage's own live form.
        Each source is cleaned before merging, so a blank field in a later stage
        never hides a value an earlier stage supplied.
        """
        descriptor = get_stage(stage_id)
        payload = {}
        for dep in descriptor.depends_on:
            snapshot = self.get(dep, stage_id)
            if snapshot is None:
                continue
            payload.update(clean_payload(snapshot.values, _specs(dep)))

        payload.update(clean_payload(self.forms[stage_id].as_dict(), _specs(stage_id)))
        return payload

    def clear(self):
        self._snapshots.clear()


def _specs(stage_id: str) -> dict:
    return {f.name: f for f in get_stage(stage_id).fields}
