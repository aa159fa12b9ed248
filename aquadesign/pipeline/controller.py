"""
Stage Pipeline Controller: the single entry point the presentation layer talks to.

    on_field_edit(stage_id, field, value)    sync: FormState + debounce timer
    on_advance()                             async: validate, commit, move forward
    on_retreat()                             sync: back to the previously visited stage
    on_select_optional_stage(stage_id, on)   sync: transition table input
    on_reset()                               sync: start a new design

Forward moves:
  - out of `initial`: commit through the identity resolver, then optionally
    pre-fill `inputs` with the species' recommended values
  - out of any other committable stage: commit it as an update
  - into a dependent stage: capture its upstream snapshots, schedule a preview
  - into `report`: final commit of every visited stage edited since its last
    commit, then fetch the committed results

A rejected commit leaves the session where it was and is kept as
`last_commit_error`. Only one advance runs at a time; navigation requested while
one is awaiting the backend raises InvalidTransitionError.
"""

import logging
from typing import Optional

from ..errors import (
    CommitRejectedError,
    InvalidTransitionError,
    MissingIdentityError,
    RecommendedValuesError,
    UnknownFieldError,
    ValidationError,
)
from ..species import recommended_inputs
from ..stages import (
    INITIAL,
    INPUTS,
    REPORT,
    STAGE_ORDER,
    get_completion_status,
    get_stage,
    has_stage,
    is_blank,
)
from .dispatcher import PreviewDispatcher
from .identity import ResourceIdentityResolver
from .session_state import SessionState
from .snapshots import SnapshotCache, clean_payload

logger = logging.getLogger(__name__)


class StagePipelineController:
    def __init__(self, session: SessionState, engine, commit_backend, species_client=None,
                 **dispatcher_options):
        self.session = session
        self.snapshots = SnapshotCache(session.forms)
        self.commit_backend = commit_backend
        self.resolver = ResourceIdentityResolver(session, commit_backend)
        self.species_client = species_client
        self.dispatcher = PreviewDispatcher(
            engine,
            session.readiness,
            build_payload=self.preview_payload,
            can_preview=self.can_preview,
            **dispatcher_options,
        )
        self._advancing = False

    # --- Read-only views ---

    @property
    def current_stage(self) -> str:
        return self.session.current_stage

    @property
    def identity(self):
        return self.session.identity

    @property
    def readiness(self):
        return self.session.readiness

    @property
    def last_commit_error(self) -> Optional[str]:
        return self.session.last_commit_error

    def form(self, stage_id: str) -> dict:
        return self.session.form(stage_id).as_dict()

    def next_stage(self, stage_id: Optional[str] = None) -> Optional[str]:
        """Where advance() would go from `stage_id` given the current selection."""
        stage_id = stage_id or self.session.current_stage
        position = STAGE_ORDER.index(stage_id)
        for candidate in STAGE_ORDER[position + 1:]:
            descriptor = get_stage(candidate)
            if descriptor.optional and candidate not in self.session.selected_optional_stages:
                continue
            return candidate
        return None

    # --- Preview plumbing ---

    def preview_payload(self, stage_id: str) -> dict:
        payload = self.snapshots.build_payload(stage_id)
        if self.session.identity.project_handle is not None:
            payload["project_id"] = self.session.identity.project_handle
        return payload

    def can_preview(self, stage_id: str, payload: dict) -> bool:
        descriptor = get_stage(stage_id)
        if not descriptor.previewable:
            return False
        if self.session.identity.project_handle is None:
            return False
        return all(not is_blank(payload.get(name)) for name in descriptor.preview_requires)

    # --- Edits ---

    def on_field_edit(self, stage_id: str, field_name: str, value):
        if not has_stage(stage_id):
            raise ValidationError(f"Unknown stage: {stage_id}")
        descriptor = get_stage(stage_id)
        spec = descriptor.get_field(field_name)
        if spec is None:
            raise UnknownFieldError(stage_id, field_name)
        if not spec.accepts(value):
            raise ValidationError(
                f"'{value}' is not a valid {field_name}; expected one of: {', '.join(spec.options)}",
                [field_name],
            )

        form = self.session.form(stage_id)
        if stage_id == INITIAL and field_name == "species" and value != form.get("species"):
            # Recommendations belong to the species they were asked for
            form.set("use_recommended_values", False)
        form.set(field_name, value)

        if descriptor.previewable:
            self.dispatcher.schedule(stage_id)

        refreshed = self.snapshots.refresh(stage_id)
        active = self.session.current_stage
        if active in refreshed and get_stage(active).previewable:
            self.dispatcher.schedule(active)

    # --- Navigation ---

    async def on_advance(self) -> str:
        self._ensure_idle("advance")
        self._advancing = True
        try:
            return await self._advance()
        finally:
            self._advancing = False

    async def _advance(self) -> str:
        current = self.session.current_stage
        descriptor = get_stage(current)
        if descriptor.terminal:
            raise InvalidTransitionError(f"Cannot advance from '{current}'")

        self.validate_stage(current)
        target = self.next_stage(current)

        if current == INITIAL:
            await self._commit_initial()
        elif descriptor.previewable:
            await self._commit(current)
        if target == REPORT:
            await self._final_commit()
            await self._fetch_report()

        self.session.history.append(current)
        self.session.current_stage = target
        self.session.last_commit_error = None
        if target == REPORT:
            self.session.status = "complete"
        self._enter(target)
        logger.info("Advanced %s -> %s", current, target)
        return target

    def on_retreat(self) -> str:
        self._ensure_idle("retreat")
        current = self.session.current_stage
        if current == INITIAL or not self.session.history:
            raise InvalidTransitionError(f"Cannot retreat from '{current}'")

        self.dispatcher.cancel(current)
        previous = self.session.history.pop()
        self.session.current_stage = previous
        self.session.status = "active"
        if current == REPORT:
            # Fetched again on the next entry
            self.session.report = {}
            self.session.report_errors = {}
        logger.info("Retreated %s -> %s", current, previous)
        return previous

    def on_select_optional_stage(self, stage_id: str, selected: bool):
        self._ensure_idle("change the stage selection")
        if not has_stage(stage_id) or not get_stage(stage_id).optional:
            raise InvalidTransitionError(f"'{stage_id}' is not an optional stage")

        chosen = self.session.selected_optional_stages
        if selected:
            required = get_stage(stage_id).requires_selected
            if required and required not in chosen:
                raise ValidationError(f"'{stage_id}' requires '{required}' to be selected first")
            chosen.add(stage_id)
            return

        dropped = {stage_id} | {s for s in chosen if get_stage(s).requires_selected == stage_id}
        if self.session.current_stage in dropped:
            raise InvalidTransitionError(
                f"Cannot deselect '{self.session.current_stage}' while it is the current stage"
            )
        chosen.difference_update(dropped)

    def on_reset(self):
        self._ensure_idle("reset")
        self.dispatcher.cancel_all()
        self.snapshots.clear()
        self.session.reset()
        logger.info("Session %s reset", self.session.session_id)

    async def close(self):
        self.dispatcher.cancel_all()
        await self.dispatcher.settle()

    # --- Helpers ---

    @property
    def advancing(self) -> bool:
        return self._advancing

    def _ensure_idle(self, action: str):
        # Commits are not idempotent: a second advance racing the first would create twice
        if self._advancing:
            raise InvalidTransitionError(f"Cannot {action} while an advance is in progress")

    def validate_stage(self, stage_id: str):
        completion = get_completion_status(stage_id, self.form(stage_id))
        if not completion["is_complete"]:
            missing = completion["required_missing"]
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing)

    def _enter(self, stage_id: str):
        descriptor = get_stage(stage_id)
        if descriptor.depends_on:
            self.snapshots.capture_for(stage_id)
        if descriptor.previewable:
            self.dispatcher.schedule(stage_id)

    def _commit_payload(self, stage_id: str) -> dict:
        descriptor = get_stage(stage_id)
        return clean_payload(self.form(stage_id), {f.name: f for f in descriptor.fields})

    async def _commit(self, stage_id: str) -> dict:
        version = self.session.form(stage_id).version
        try:
            response = await self.resolver.commit(stage_id, self._commit_payload(stage_id))
        except CommitRejectedError as e:
            self.session.last_commit_error = e.message
            raise
        response = response or {}
        self.session.committed_versions[stage_id] = version
        self.session.commit_results[stage_id] = {
            "action": response.get("action"),
            "results": response.get("results") or {},
        }
        return response

    async def _commit_initial(self):
        response = await self._commit(INITIAL)
        if not self.session.identity.is_complete:
            raise MissingIdentityError("No design/project identity after committing the initial stage")
        await self._apply_recommended_values(response)

    async def _final_commit(self):
        """Commit every visited stage whose form changed since it was last committed."""
        committed = self.session.committed_versions
        for stage_id in self.session.visited_path():
            if not get_stage(stage_id).previewable:
                continue
            if committed.get(stage_id) == self.session.form(stage_id).version:
                continue
            await self._commit(stage_id)

    async def _fetch_report(self):
        stages = [s for s in self.session.visited_path() if get_stage(s).previewable]
        results, errors = await self.commit_backend.fetch_report(self.session.identity.copy(), stages)
        for section, message in errors.items():
            logger.warning("Report section %s unavailable: %s", section, message)
        self.session.report = results
        self.session.report_errors = errors

    async def _apply_recommended_values(self, commit_response: dict):
        initial = self.session.form(INITIAL)
        species = initial.get("species")
        if not initial.get("use_recommended_values") or is_blank(species):
            return
        if species == self.session.recommended_species:
            # Already applied; re-advancing must not clobber later edits
            return

        data = commit_response.get("recommended_values")
        if not data and self.species_client is not None:
            try:
                data = await self.species_client.get_recommended_values(species)
            except RecommendedValuesError as e:
                logger.warning("Recommended values for %s unavailable: %s", species, e)
                return
        if not data:
            return

        values = recommended_inputs(data)
        self.session.form(INPUTS).update(values)
        self.session.recommended_species = species
        logger.info("Applied %d recommended values for %s", len(values), species)
