"""
Staged calculation orchestrator.

Readiness store, snapshot cache, identity resolver and preview dispatcher,
wired together by the stage pipeline controller. No HTTP, no database:
collaborators are injected.
"""
