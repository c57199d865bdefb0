from __future__ import annotations

from typing import Any, Callable, List, Optional

import pytest

from goalengine.config import Settings
from goalengine.db.database import InMemoryStore
from goalengine.runtime import Engine
from tests.fakes import fixed_sampler, make_settings


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(WORKSPACE_DIR=str(tmp_path / "workspace"))


@pytest.fixture
def engine_factory(tmp_path) -> Callable[..., Engine]:
    """Build an Engine on in-memory storage with fake providers and a fixed sampler"""

    def build(
        providers: List[Any],
        tools: Optional[List[Any]] = None,
        sampler: Optional[Callable[[], Any]] = None,
        **overrides: Any,
    ) -> Engine:
        overrides.setdefault("WORKSPACE_DIR", str(tmp_path / "workspace"))
        return Engine(
            make_settings(**overrides),
            providers=providers,
            tools=tools,
            store=InMemoryStore(),
            resource_sampler=sampler or fixed_sampler(),
        )

    return build
