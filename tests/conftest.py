"""
Shared fixtures: an isolated SQLite-backed engine per test, a fake clock,
scripted providers and an in-memory stats cache.
"""

from __future__ import annotations

import random
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from backend.notifier.core import cache
from backend.notifier.core.database import create_db_engine, create_session_factory, init_db
from backend.notifier.scheduling.engine import NotificationEngine

from fakes import FakeClock, FakeRedis, fake_providers, make_settings


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def session_factory(tmp_path: Path):
    db = create_db_engine(f"sqlite:///{tmp_path / 'store.db'}")
    init_db(db)
    yield create_session_factory(db)
    db.dispose()


@pytest.fixture()
def engine_factory(tmp_path: Path, clock: FakeClock):
    """Build engines with custom providers/settings; all are closed after the test."""
    built = []

    def _build(providers: Optional[dict] = None, **overrides: Any) -> NotificationEngine:
        config = make_settings(**overrides)
        db = create_db_engine(f"sqlite:///{tmp_path / f'notifier-{len(built)}.db'}")
        init_db(db)
        engine = NotificationEngine(
            config,
            create_session_factory(db),
            providers if providers is not None else fake_providers(),
            clock=clock,
            rng=random.Random(7),
            db_engine=db,
        )
        built.append(engine)
        return engine

    yield _build
    for engine in built:
        engine.close()


@pytest.fixture()
def engine(engine_factory: Callable[..., NotificationEngine]) -> NotificationEngine:
    return engine_factory()



@pytest.fixture()
def stats_cache(monkeypatch) -> FakeRedis:
    """Turn the stats cache on, backed by an in-memory client."""
    fake = FakeRedis()
    monkeypatch.setattr(cache.settings, "REDIS_URL", "redis://cache.test:6379/0")
    monkeypatch.setattr(cache, "_client", fake)
    return fake
