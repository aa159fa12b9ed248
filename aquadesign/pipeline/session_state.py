"""
Explicit, injectable state of one design session.

Everything the orchestrator mutates lives here so it can be built in a test,
persisted to the DesignSession row, and restored after a restart.
"""

from dataclasses import dataclass, field
from typing import Optional

from ..stages import INITIAL, STAGE_ORDER, get_stage
from .identity import ResourceIdentity
from .readiness import ReadinessStore


class FormState:
    """Ordered field -> scalar map for one stage, with an edit counter."""

    def __init__(self, stage_id: str, values: Optional[dict] = None):
        self.stage_id = stage_id
        self.values = get_stage(stage_id).initial_form()
        if values:
            self.values.update(values)
        self.version = 0

    def set(self, field_name: str, value):
        self.values[field_name] = value
        self.version += 1

    def update(self, values: dict):
        if not values:
            return
        self.values.update(values)
        self.version += 1

    def get(self, field_name: str, default=None):
        return self.values.get(field_name, default)

    def as_dict(self) -> dict:
        return dict(self.values)

    def __repr__(self):
        return f"FormState({self.stage_id!r}, v{self.version}, {self.values!r})"


def fresh_forms() -> dict[str, FormState]:
    return {stage_id: FormState(stage_id) for stage_id in STAGE_ORDER}


@dataclass
class SessionState:
    session_id: Optional[str] = None
    update_flow: bool = False
    current_stage: str = INITIAL
    history: list = field(default_factory=list)  # previously visited stages, newest last
    selected_optional_stages: set = field(default_factory=set)
    forms: dict = field(default_factory=fresh_forms)
    identity: ResourceIdentity = field(default_factory=ResourceIdentity)
    readiness: ReadinessStore = field(default_factory=ReadinessStore)
    last_commit_error: Optional[str] = None
    recommended_species: Optional[str] = None  # species whose values were pre-filled
    status: str = "active"  # 'active' | 'complete'
    committed_versions: dict = field(default_factory=dict)  # stage -> FormState version last committed
    commit_results: dict = field(default_factory=dict)  # stage -> last commit response
    report: dict = field(default_factory=dict)  # report section -> results fetched on entering report
    report_errors: dict = field(default_factory=dict)  # report section -> fetch failure message

    def form(self, stage_id: str) -> FormState:
        return self.forms[stage_id]

    def visited_path(self) -> list[str]:
        """Stages from `initial` up to and including the current one."""
        return list(self.history) + [self.current_stage]

    def reset(self):
        """Start a new design. A new design is never an update of the old one."""
        self.update_flow = False
        self.current_stage = INITIAL
        self.history = []
        self.selected_optional_stages = set()
        # In place: the snapshot cache holds a reference to this dict
        self.forms.clear()
        self.forms.update(fresh_forms())
        self.identity = ResourceIdentity()
        self.readiness.clear()
        self.recommended_species = None
        self.last_commit_error = None
        self.status = "active"
        self.committed_versions = {}
        self.commit_results = {}
        self.report = {}
        self.report_errors = {}
