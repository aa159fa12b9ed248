from pydantic import BaseModel
from typing import Any, Optional, Union

Handle = Union[int, str]


class StartSessionRequest(BaseModel):
    update_flow: bool = False
    design_handle: Optional[Handle] = None
    project_handle: Optional[Handle] = None
    forms: Optional[dict] = None  # {stage_id: {field: value}} to pre-fill an update flow


class FieldEditRequest(BaseModel):
    stage_id: str
    field: str
    value: Any = None


class OptionalStageRequest(BaseModel):
    stage_id: str
    selected: bool


class IdentityOut(BaseModel):
    design_handle: Optional[Handle] = None
    project_handle: Optional[Handle] = None


class SessionView(BaseModel):
    session_id: str
    current_stage: str
    next_stage: Optional[str] = None
    status: str
    update_flow: bool
    history: list[str]
    selected_optional_stages: list[str]
    identity: IdentityOut
    forms: dict
    readiness: dict
    preview_errors: dict
    completion: dict
    last_commit_error: Optional[str] = None
    commits: dict = {}
    report: dict = {}
    report_errors: dict = {}
