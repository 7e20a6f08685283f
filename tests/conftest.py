"""Shared fixtures: engines wired with real or stubbed concepts."""

from typing import Any, Dict, List

import pytest

from concepts import AnimalIdentity, HerdGrouping, Requesting, UserAuthentication
from engine import ActionRecord, Concept, Engine
from sync import make_syncs


class FakeAuth(Concept):
    """Token -> user table standing in for UserAuthentication."""

    def __init__(self, tokens: Dict[str, str]):
        super().__init__("UserAuthentication")
        self.tokens = tokens
        self.verified: List[str] = []

    async def verify(self, token: str) -> Dict[str, Any]:
        self.verified.append(token)
        if token in self.tokens:
            return {"user": self.tokens[token]}
        return {"error": "invalid token"}


class SpyHerds(HerdGrouping):
    """HerdGrouping that remembers every createHerd call."""

    def __init__(self):
        super().__init__("HerdGrouping")
        self.created: List[Dict[str, Any]] = []

    async def createHerd(self, user: str, name: str, description: str = "") -> Dict[str, Any]:
        self.created.append({"user": user, "name": name})
        return await super().createHerd(user, name, description)


def wire(eng: Engine, *concepts: Concept) -> Engine:
    for c in concepts:
        eng.register_concept(c)
    eng.register_terminal("Requesting", "respond", key="request")
    for s in make_syncs(eng):
        eng.register_sync(s)
    return eng


def responses(eng: Engine, flow: str) -> List[ActionRecord]:
    return [r for r in eng.flow_log(flow) if r.name == "Requesting.respond"]


@pytest.fixture
def herd_engine():
    """Engine with stubbed auth (token T1 is alice) and a spying HerdGrouping."""
    eng = Engine()
    herds = SpyHerds()
    wire(eng, Requesting(), FakeAuth({"T1": "alice"}), herds, AnimalIdentity())
    return eng, herds


@pytest.fixture
def full_engine():
    """Engine with every real concept and the whole sync library."""
    return wire(Engine(), Requesting(), UserAuthentication(), HerdGrouping(), AnimalIdentity())
