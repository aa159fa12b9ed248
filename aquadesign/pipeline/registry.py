"""
In-process registry of live design sessions.

Controllers own asyncio tasks, so they live in memory for as long as the process
does. The DesignSession row mirrors everything needed to rebuild one after a
restart; readiness and in-flight previews are not persisted, the next edit
recomputes them.
"""

import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from .. import models
from ..stages import STAGE_ORDER
from .controller import StagePipelineController
from .identity import ResourceIdentity
from .session_state import FormState, SessionState

logger = logging.getLogger(__name__)


class SessionRegistry:
    def __init__(self, engine_factory: Callable, commit_factory: Callable,
                 species_factory: Optional[Callable] = None, **dispatcher_options):
        self.engine_factory = engine_factory
        self.commit_factory = commit_factory
        self.species_factory = species_factory
        self.dispatcher_options = dispatcher_options
        self._controllers: dict[str, StagePipelineController] = {}

    def _build(self, session: SessionState) -> StagePipelineController:
        controller = StagePipelineController(
            session,
            self.engine_factory(),
            self.commit_factory(),
            self.species_factory() if self.species_factory else None,
            **self.dispatcher_options,
        )
        self._controllers[session.session_id] = controller
        return controller

    def start(self, db: Session, update_flow: bool = False, design_handle=None,
              project_handle=None, forms: Optional[dict] = None) -> StagePipelineController:
        session = SessionState(
            session_id=str(uuid.uuid4()),
            update_flow=update_flow,
            identity=ResourceIdentity(design_handle, project_handle),
        )
        for stage_id, values in (forms or {}).items():
            if stage_id in session.forms:
                session.forms[stage_id] = FormState(stage_id, values)

        controller = self._build(session)
        self.save(db, controller)
        logger.info("Started design session %s (update_flow=%s)", session.session_id, update_flow)
        return controller

    def get(self, db: Session, session_id: str) -> Optional[StagePipelineController]:
        controller = self._controllers.get(session_id)
        if controller is not None:
            return controller

        row = db.query(models.DesignSession).filter(
            models.DesignSession.id == session_id,
        ).first()
        if not row:
            return None
        logger.info("Restoring design session %s from the database", session_id)
        return self._restore(row)

    def _restore(self, row: models.DesignSession) -> StagePipelineController:
        session = SessionState(
            session_id=row.id,
            update_flow=bool(row.update_flow),
            current_stage=row.stage or "initial",
            history=list(row.history_json or []),
            selected_optional_stages=set(row.selected_stages_json or []),
            identity=ResourceIdentity(row.design_handle, row.project_handle),
            last_commit_error=row.last_commit_error,
            recommended_species=row.recommended_species,
            status=row.status or "active",
            commit_results=dict(row.commit_results_json or {}),
            report=dict(row.report_json or {}),
            report_errors=dict(row.report_errors_json or {}),
        )
        for stage_id, values in (row.forms_json or {}).items():
            if stage_id in session.forms:
                session.forms[stage_id] = FormState(stage_id, values)

        controller = self._build(session)
        # Snapshots are derived state: rebuild the current stage's from the saved forms
        if session.current_stage != STAGE_ORDER[0]:
            controller.snapshots.capture_for(session.current_stage)
        return controller

    def save(self, db: Session, controller: StagePipelineController):
        state = controller.session
        row = db.query(models.DesignSession).filter(
            models.DesignSession.id == state.session_id,
        ).first()
        if row is None:
            row = models.DesignSession(id=state.session_id)
            db.add(row)

        row.stage = state.current_stage
        row.history_json = list(state.history)
        row.selected_stages_json = sorted(state.selected_optional_stages)
        row.update_flow = state.update_flow
        row.design_handle = state.identity.design_handle
        row.project_handle = state.identity.project_handle
        row.forms_json = {stage_id: form.as_dict() for stage_id, form in state.forms.items()}
        row.recommended_species = state.recommended_species
        row.last_commit_error = state.last_commit_error
        row.status = state.status
        row.commit_results_json = dict(state.commit_results)
        row.report_json = dict(state.report)
        row.report_errors_json = dict(state.report_errors)
        row.updated_at = datetime.utcnow()
        flag_modified(row, "history_json")
        flag_modified(row, "selected_stages_json")
        flag_modified(row, "forms_json")
        flag_modified(row, "commit_results_json")
        flag_modified(row, "report_json")
        flag_modified(row, "report_errors_json")
        db.commit()

    def discard(self, session_id: str) -> Optional[StagePipelineController]:
        return self._controllers.pop(session_id, None)

    async def close_all(self):
        for controller in list(self._controllers.values()):
            await controller.close()
        self._controllers.clear()
