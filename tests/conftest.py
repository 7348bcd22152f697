from __future__ import annotations

import pytest

import api.main as api_main
from safety.policy import PolicyEnforcer, SafetyConfig

from api_fakes import FakeStore, offline_planner


@pytest.fixture
def fake_store(monkeypatch) -> FakeStore:
    store = FakeStore()
    monkeypatch.setattr(api_main, "get_store", lambda: store)
    monkeypatch.setattr(api_main, "get_planner", offline_planner)
    enforcer = PolicyEnforcer(config=SafetyConfig())
    monkeypatch.setattr(api_main, "get_policy_enforcer", lambda: enforcer)
    return store
