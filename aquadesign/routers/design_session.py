"""
Design Session API: the presentation layer's view of the staged design flow.

POST /api/design-session/start                - Start a session (new design or update flow)
POST /api/design-session/{id}/edit            - Apply one field edit, schedule a live preview
POST /api/design-session/{id}/advance         - Validate, commit, move to the next stage
POST /api/design-session/{id}/retreat         - Back to the previously visited stage
POST /api/design-session/{id}/optional-stage  - Select or deselect an optional stage
POST /api/design-session/{id}/reset           - Start a new design in the same session
GET  /api/design-session/{id}/status          - Current stage, forms, readiness, identity
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..calc_engine import CalculationEngineClient
from ..database import get_db
from ..design_api import DesignApiClient
from ..errors import (
    CommitRejectedError,
    DesignFlowError,
    IncompleteIdentityError,
    InvalidTransitionError,
    MissingIdentityError,
    ValidationError,
)
from ..pipeline.controller import StagePipelineController
from ..pipeline.registry import SessionRegistry
from ..schemas import FieldEditRequest, OptionalStageRequest, SessionView, StartSessionRequest
from ..species import SpeciesClient
from ..stages import STAGE_ORDER, get_completion_status

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/design-session", tags=["design-session"])

_registry: Optional[SessionRegistry] = None


def get_registry() -> SessionRegistry:
    """Process-wide registry wired to the real collaborators."""
    global _registry
    if _registry is None:
        _registry = SessionRegistry(CalculationEngineClient, DesignApiClient, SpeciesClient)
    return _registry


async def close_registry():
    """Cancel every live session's preview work. Called on app shutdown."""
    if _registry is not None:
        await _registry.close_all()


# --- Helpers ---

def _http_error(e: DesignFlowError) -> HTTPException:
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail={
            "message": str(e),
            "missing_fields": e.missing_fields,
        })
    if isinstance(e, (InvalidTransitionError, MissingIdentityError, IncompleteIdentityError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, CommitRejectedError):
        status = e.status_code if e.status_code and 400 <= e.status_code < 500 else 502
        return HTTPException(status_code=status, detail=e.message)
    return HTTPException(status_code=500, detail=str(e))


def _load(session_id: str, db: Session, registry: SessionRegistry) -> StagePipelineController:
    controller = registry.get(db, session_id)
    if controller is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return controller


def _view(controller: StagePipelineController) -> dict:
    state = controller.session
    errored = [s for s in STAGE_ORDER if controller.readiness.last_error(s)]
    completion = {
        stage_id: get_completion_status(stage_id, controller.form(stage_id))
        for stage_id in state.visited_path()
    }
    return SessionView(
        session_id=state.session_id,
        current_stage=state.current_stage,
        next_stage=controller.next_stage() if state.current_stage != STAGE_ORDER[-1] else None,
        status=state.status,
        update_flow=state.update_flow,
        history=list(state.history),
        selected_optional_stages=sorted(state.selected_optional_stages),
        identity=state.identity.to_dict(),
        forms={stage_id: form.as_dict() for stage_id, form in state.forms.items()},
        readiness=controller.readiness.to_dict(),
        preview_errors={s: controller.readiness.last_error(s) for s in errored},
        completion=completion,
        last_commit_error=state.last_commit_error,
        commits=dict(state.commit_results),
        report=dict(state.report),
        report_errors=dict(state.report_errors),
    ).model_dump()


# --- Endpoints ---

@router.post("/start")
async def start_session(
    request: StartSessionRequest,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
):
    """
    Start a design session.

    update_flow=True edits an existing design: both handles must be supplied,
    otherwise the first commit fails with 409 rather than creating a duplicate.
    """
    controller = registry.start(
        db,
        update_flow=request.update_flow,
        design_handle=request.design_handle,
        project_handle=request.project_handle,
        forms=request.forms,
    )
    return _view(controller)


@router.post("/{session_id}/edit")
async def edit_field(
    session_id: str,
    request: FieldEditRequest,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
):
    controller = _load(session_id, db, registry)
    try:
        controller.on_field_edit(request.stage_id, request.field, request.value)
    except DesignFlowError as e:
        raise _http_error(e)
    registry.save(db, controller)
    return _view(controller)


@router.post("/{session_id}/advance")
async def advance(
    session_id: str,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
):
    controller = _load(session_id, db, registry)
    try:
        await controller.on_advance()
    except DesignFlowError as e:
        # Rejections are part of the session state the client reads back
        registry.save(db, controller)
        raise _http_error(e)
    registry.save(db, controller)
    return _view(controller)


@router.post("/{session_id}/retreat")
async def retreat(
    session_id: str,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
):
    controller = _load(session_id, db, registry)
    try:
        controller.on_retreat()
    except DesignFlowError as e:
        raise _http_error(e)
    registry.save(db, controller)
    return _view(controller)


@router.post("/{session_id}/optional-stage")
async def select_optional_stage(
    session_id: str,
    request: OptionalStageRequest,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
):
    controller = _load(session_id, db, registry)
    try:
        controller.on_select_optional_stage(request.stage_id, request.selected)
    except DesignFlowError as e:
        raise _http_error(e)
    registry.save(db, controller)
    return _view(controller)


@router.post("/{session_id}/reset")
async def reset(
    session_id: str,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
):
    controller = _load(session_id, db, registry)
    controller.on_reset()
    registry.save(db, controller)
    return _view(controller)


@router.get("/{session_id}/status")
async def get_status(
    session_id: str,
    db: Session = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
):
    """Current stage, every FormState, the readiness store and the last commit error."""
    controller = _load(session_id, db, registry)
    return _view(controller)
