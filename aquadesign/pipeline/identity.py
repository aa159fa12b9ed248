"""
Resource Identity Resolver: decides create vs update for every commit.

    update_flow  identity     -> mode
    True         complete     update
    True         otherwise    IncompleteIdentityError
    False        complete     update (never a second create)
    False        partial      IncompleteIdentityError
    False        empty        create

Only `initial` can create. Every later stage commits against a complete identity.
On rejection the identity is left exactly as it was.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Union

from ..errors import CommitRejectedError, IncompleteIdentityError

logger = logging.getLogger(__name__)

Handle = Union[int, str]

CREATE = "create"
UPDATE = "update"


@dataclass
class ResourceIdentity:
    design_handle: Optional[Handle] = None
    project_handle: Optional[Handle] = None

    @property
    def is_complete(self) -> bool:
        return self.design_handle is not None and self.project_handle is not None

    @property
    def is_empty(self) -> bool:
        return self.design_handle is None and self.project_handle is None

    @property
    def is_partial(self) -> bool:
        return not self.is_complete and not self.is_empty

    def copy(self) -> "ResourceIdentity":
        return ResourceIdentity(self.design_handle, self.project_handle)

    def to_dict(self) -> dict:
        return {"design_handle": self.design_handle, "project_handle": self.project_handle}


class ResourceIdentityResolver:
    def __init__(self, session, backend):
        """
        session: SessionState (identity and update_flow are read from it on every call)
        backend: anything with `async commit(stage_id, mode, identity, payload) -> dict`
        """
        self.session = session
        self.backend = backend

    def resolve_mode(self, stage_id: str = "initial") -> str:
        identity = self.session.identity
        if self.session.update_flow and not identity.is_complete:
            raise IncompleteIdentityError(
                "Update flow needs both a design and a project handle "
                f"(have design={identity.design_handle}, project={identity.project_handle})"
            )
        if identity.is_complete:
            return UPDATE
        if identity.is_partial:
            raise IncompleteIdentityError(
                f"Partial identity (design={identity.design_handle}, "
                f"project={identity.project_handle}) cannot be created or updated"
            )
        if stage_id != "initial":
            raise IncompleteIdentityError(f"Stage '{stage_id}' needs a committed design first")
        return CREATE

    async def commit(self, stage_id: str, payload: dict) -> dict:
        """
        Commit one stage. Raises CommitRejectedError (identity untouched) or
        IncompleteIdentityError (nothing sent).
        """
        mode = self.resolve_mode(stage_id)
        logger.info("Committing %s as %s (design=%s, project=%s)", stage_id, mode,
                    self.session.identity.design_handle, self.session.identity.project_handle)

        response = await self.backend.commit(stage_id, mode, self.session.identity.copy(), payload)
        response = response or {}
        design_handle = response.get("design_handle")
        project_handle = response.get("project_handle")

        if mode == CREATE:
            if design_handle is None or project_handle is None:
                raise CommitRejectedError("Invalid response: missing design_id or project_id")
            self.session.identity = ResourceIdentity(design_handle, project_handle)
        elif design_handle is not None and project_handle is not None:
            # The backend may re-key on update; adopt only a full pair
            self.session.identity = ResourceIdentity(design_handle, project_handle)

        return response
