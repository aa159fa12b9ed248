"""
Resource identity resolver - create vs update decisions.

Tests:
1. test_first_commit_creates_and_stores_handles    - Empty identity -> create, handles adopted
2. test_second_commit_is_update                    - update_flow=False, complete identity -> update
3. test_update_flow_without_handles_refuses        - IncompleteIdentityError, nothing sent
4. test_update_flow_with_handles_updates           - Edit of an existing design
5. test_partial_identity_refuses                   - One handle only is never guessed at
6. test_rejection_leaves_identity_untouched        - Backend message kept, handles unchanged
7. test_create_without_handles_is_rejected         - Response missing ids -> CommitRejectedError
8. test_later_stage_needs_committed_design         - inputs cannot create
9. test_update_adopts_only_full_handle_pair        - Re-keyed response replaces both handles
"""

import asyncio

import pytest

from aquadesign.errors import CommitRejectedError, IncompleteIdentityError
from aquadesign.pipeline.identity import CREATE, UPDATE, ResourceIdentity, ResourceIdentityResolver
from aquadesign.pipeline.session_state import SessionState


class RekeyingBackend:
    def __init__(self, response):
        self.response = response
        self.calls = 0

    async def commit(self, stage_id, mode, identity, payload):
        self.calls += 1
        return self.response


def test_first_commit_creates_and_stores_handles(backend):
    session = SessionState()
    resolver = ResourceIdentityResolver(session, backend)

    asyncio.run(resolver.commit("initial", {"design_name": "Farm"}))

    assert backend.modes() == [CREATE]
    assert session.identity == ResourceIdentity(101, 201)


def test_second_commit_is_update(backend):
    session = SessionState()
    resolver = ResourceIdentityResolver(session, backend)

    async def scenario():
        await resolver.commit("initial", {})
        await resolver.commit("initial", {})

    asyncio.run(scenario())
    assert backend.modes() == [CREATE, UPDATE]
    assert backend.commits[1][2] == {"design_handle": 101, "project_handle": 201}


def test_update_flow_without_handles_refuses(backend):
    session = SessionState(update_flow=True, identity=ResourceIdentity(design_handle=7))
    resolver = ResourceIdentityResolver(session, backend)

    with pytest.raises(IncompleteIdentityError):
        asyncio.run(resolver.commit("initial", {}))
    assert backend.commits == []

    session.identity = ResourceIdentity()
    with pytest.raises(IncompleteIdentityError):
        resolver.resolve_mode()


def test_update_flow_with_handles_updates(backend):
    session = SessionState(update_flow=True, identity=ResourceIdentity(7, 8))
    resolver = ResourceIdentityResolver(session, backend)

    asyncio.run(resolver.commit("initial", {}))
    assert backend.modes() == [UPDATE]
    assert session.identity == ResourceIdentity(7, 8)


def test_partial_identity_refuses(backend):
    session = SessionState(identity=ResourceIdentity(project_handle=8))
    resolver = ResourceIdentityResolver(session, backend)
    with pytest.raises(IncompleteIdentityError):
        asyncio.run(resolver.commit("initial", {}))
    assert backend.commits == []


def test_rejection_leaves_identity_untouched(backend):
    backend.reject["initial"] = CommitRejectedError("Design name already exists", status_code=400)
    session = SessionState(update_flow=True, identity=ResourceIdentity(7, 8))
    resolver = ResourceIdentityResolver(session, backend)

    with pytest.raises(CommitRejectedError) as exc_info:
        asyncio.run(resolver.commit("initial", {}))
    assert exc_info.value.message == "Design name already exists"
    assert exc_info.value.status_code == 400
    assert session.identity == ResourceIdentity(7, 8)


def test_create_without_handles_is_rejected():
    session = SessionState()
    resolver = ResourceIdentityResolver(session, RekeyingBackend({"status": "success", "design_handle": 5}))

    with pytest.raises(CommitRejectedError):
        asyncio.run(resolver.commit("initial", {}))
    assert session.identity.is_empty


def test_later_stage_needs_committed_design(backend):
    session = SessionState()
    resolver = ResourceIdentityResolver(session, backend)
    with pytest.raises(IncompleteIdentityError):
        asyncio.run(resolver.commit("inputs", {"temperature": 27}))
    assert backend.commits == []


def test_update_adopts_only_full_handle_pair():
    session = SessionState(identity=ResourceIdentity(1, 2))

    partial = RekeyingBackend({"design_handle": 9})
    asyncio.run(ResourceIdentityResolver(session, partial).commit("inputs", {}))
    assert session.identity == ResourceIdentity(1, 2)

    full = RekeyingBackend({"design_handle": 9, "project_handle": 10})
    asyncio.run(ResourceIdentityResolver(session, full).commit("inputs", {}))
    assert session.identity == ResourceIdentity(9, 10)
