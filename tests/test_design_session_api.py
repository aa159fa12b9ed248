"""
Design Session API - end-to-end through FastAPI with the fake collaborators.

Tests:
1.  test_health                              - GET /health
2.  test_start_session                       - New session at initial, empty identity
3.  test_advance_from_initial                - Create commit, handles stored, now at inputs
4.  test_advance_with_missing_fields         - 422 with missing_fields
5.  test_retreat_from_initial_conflicts      - 409
6.  test_unknown_session                     - 404
7.  test_unknown_field                       - 422 naming the field
8.  test_pumps_need_biofilter                - 422 when selecting pumps alone
9.  test_commit_rejection_surfaces           - Backend message as detail and in session state
10. test_update_flow_without_handles         - 409, nothing committed
11. test_full_path_to_report                 - Every visited stage committed, report results in the view
12. test_live_preview_populates_readiness    - Edit -> debounce -> engine -> readiness
13. test_session_restored_from_database      - Registry miss rebuilds from the saved row
14. test_reset_starts_over                   - Back to initial with blank forms
"""

import time

from aquadesign.errors import CommitRejectedError

BASE = "/api/design-session"


def _start(client, **body):
    response = client.post(f"{BASE}/start", json=body)
    assert response.status_code == 200
    return response.json()["session_id"]


def _edit(client, session_id, stage_id, field, value):
    response = client.post(f"{BASE}/{session_id}/edit",
                           json={"stage_id": stage_id, "field": field, "value": value})
    assert response.status_code == 200, response.text
    return response.json()


def _fill_initial(client, session_id):
    _edit(client, session_id, "initial", "design_name", "Farm A")
    _edit(client, session_id, "initial", "project_name", "Phase 1")
    _edit(client, session_id, "initial", "species", "Tilapia")


def _wait_for(client, session_id, predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while True:
        data = client.get(f"{BASE}/{session_id}/status").json()
        if predicate(data) or time.monotonic() > deadline:
            return data
        time.sleep(0.02)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_start_session(client):
    response = client.post(f"{BASE}/start", json={})
    assert response.status_code == 200
    data = response.json()
    assert data["current_stage"] == "initial"
    assert data["next_stage"] == "inputs"
    assert data["update_flow"] is False
    assert data["identity"] == {"design_handle": None, "project_handle": None}
    assert data["forms"]["initial"]["system_type"] == "RAS"


def test_advance_from_initial(client, backend):
    session_id = _start(client)
    _fill_initial(client, session_id)

    response = client.post(f"{BASE}/{session_id}/advance")
    assert response.status_code == 200
    data = response.json()
    assert data["current_stage"] == "inputs"
    assert data["history"] == ["initial"]
    assert data["identity"] == {"design_handle": 101, "project_handle": 201}
    assert backend.modes() == ["create"]


def test_advance_with_missing_fields(client, backend):
    session_id = _start(client)
    _edit(client, session_id, "initial", "design_name", "Farm A")

    response = client.post(f"{BASE}/{session_id}/advance")
    assert response.status_code == 422
    detail = response.json()["detail"]
    assert set(detail["missing_fields"]) == {"project_name", "species"}
    assert backend.commits == []


def test_retreat_from_initial_conflicts(client):
    session_id = _start(client)
    response = client.post(f"{BASE}/{session_id}/retreat")
    assert response.status_code == 409


def test_unknown_session(client):
    response = client.get(f"{BASE}/does-not-exist/status")
    assert response.status_code == 404


def test_unknown_field(client):
    session_id = _start(client)
    response = client.post(f"{BASE}/{session_id}/edit",
                           json={"stage_id": "initial", "field": "colour", "value": "blue"})
    assert response.status_code == 422
    assert response.json()["detail"]["missing_fields"] == ["colour"]


def test_pumps_need_biofilter(client):
    session_id = _start(client)
    response = client.post(f"{BASE}/{session_id}/optional-stage",
                           json={"stage_id": "pumps", "selected": True})
    assert response.status_code == 422

    client.post(f"{BASE}/{session_id}/optional-stage", json={"stage_id": "biofilter", "selected": True})
    response = client.post(f"{BASE}/{session_id}/optional-stage",
                           json={"stage_id": "pumps", "selected": True})
    assert response.status_code == 200
    assert response.json()["selected_optional_stages"] == ["biofilter", "pumps"]


def test_commit_rejection_surfaces(client, backend):
    backend.reject["initial"] = CommitRejectedError("Design name already exists", status_code=400)
    session_id = _start(client)
    _fill_initial(client, session_id)

    response = client.post(f"{BASE}/{session_id}/advance")
    assert response.status_code == 400
    assert response.json()["detail"] == "Design name already exists"

    data = client.get(f"{BASE}/{session_id}/status").json()
    assert data["current_stage"] == "initial"
    assert data["last_commit_error"] == "Design name already exists"
    assert data["identity"] == {"design_handle": None, "project_handle": None}


def test_update_flow_without_handles(client, backend):
    session_id = _start(client, update_flow=True, design_handle=7)
    _fill_initial(client, session_id)

    response = client.post(f"{BASE}/{session_id}/advance")
    assert response.status_code == 409
    assert backend.commits == []


def test_full_path_to_report(client, backend):
    session_id = _start(client)
    _fill_initial(client, session_id)
    client.post(f"{BASE}/{session_id}/optional-stage", json={"stage_id": "biofilter", "selected": True})
    assert client.post(f"{BASE}/{session_id}/advance").status_code == 200

    _edit(client, session_id, "inputs", "temperature", 27)
    _edit(client, session_id, "inputs", "salinity", 12)
    assert client.post(f"{BASE}/{session_id}/advance").json()["current_stage"] == "biofilter"

    _edit(client, session_id, "biofilter", "volumetric_nitrification_rate_vtr", 300)
    response = client.post(f"{BASE}/{session_id}/advance")
    assert response.status_code == 200
    data = response.json()
    assert data["current_stage"] == "report"
    assert data["status"] == "complete"
    assert data["next_stage"] is None

    assert backend.modes() == ["create", "update", "update"]
    committed = [stage for stage, _, _, _ in backend.commits]
    assert committed == ["initial", "inputs", "biofilter"]
    assert backend.commits[1][3]["temperature"] == 27

    assert data["commits"]["biofilter"]["action"] == "updated"
    assert data["report"]["production"] == {"total_biomass_kg": 5000}
    assert data["report"]["biofilter"] == {"biomedia_required_m3": 12.5}
    assert data["report_errors"] == {}


def test_live_preview_populates_readiness(client, fake_engine):
    session_id = _start(client)
    _fill_initial(client, session_id)
    client.post(f"{BASE}/{session_id}/advance")

    _edit(client, session_id, "inputs", "temperature", 27)
    data = _wait_for(
        client, session_id,
        lambda d: d["readiness"].get("oxygen", {}).get("effluentMgL", {}).get("value") == 27,
    )
    entry = data["readiness"]["oxygen"]["effluentMgL"]
    assert entry["status"] == "populated"
    assert entry["value"] == 27
    assert fake_engine.calls_for("inputs")[-1]["project_id"] == 201


def test_session_restored_from_database(client, registry):
    session_id = _start(client)
    _fill_initial(client, session_id)
    client.post(f"{BASE}/{session_id}/advance")
    _edit(client, session_id, "inputs", "salinity", 12)

    registry.discard(session_id)

    data = client.get(f"{BASE}/{session_id}/status").json()
    assert data["current_stage"] == "inputs"
    assert data["history"] == ["initial"]
    assert data["identity"] == {"design_handle": 101, "project_handle": 201}
    assert data["forms"]["inputs"]["salinity"] == 12
    assert data["forms"]["initial"]["species"] == "Tilapia"
    assert data["commits"]["initial"]["action"] == "created"


def test_reset_starts_over(client):
    session_id = _start(client)
    _fill_initial(client, session_id)
    client.post(f"{BASE}/{session_id}/advance")

    response = client.post(f"{BASE}/{session_id}/reset")
    assert response.status_code == 200
    data = response.json()
    assert data["current_stage"] == "initial"
    assert data["history"] == []
    assert data["identity"] == {"design_handle": None, "project_handle": None}
    assert data["forms"]["initial"]["design_name"] == ""
    assert data["readiness"] == {}
