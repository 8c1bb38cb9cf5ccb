"""Shared pytest configuration: markers, execution ordering and loop fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from loopkeeper.commands import LoopCommands
from loopkeeper.history_log import IterationHistory
from loopkeeper.prompts.catalog import PromptCatalog
from loopkeeper.state_store import StateStore

_LOOPKEEPER_ENV = (
    "LOOPKEEPER_HOME",
    "LOOPKEEPER_STATE_DIR",
    "LOOPKEEPER_MAX_ITERATIONS",
    "LOOPKEEPER_LOCK_TTL",
    "LOOPKEEPER_PROMPT_OVERRIDES",
    "LOOPKEEPER_PROMPT_DEBUG",
)


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast isolated unit tests")
    config.addinivalue_line("markers", "integration: filesystem/subprocess integration tests")
    config.addinivalue_line("markers", "slow: expensive or timing-sensitive tests")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run fast unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture(autouse=True)
def _clean_loopkeeper_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _LOOPKEEPER_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def catalog() -> PromptCatalog:
    return PromptCatalog()


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(tmp_path)


@pytest.fixture
def history(store: StateStore) -> IterationHistory:
    return IterationHistory(store.state_dir)


@pytest.fixture
def commands(store: StateStore, history: IterationHistory, catalog: PromptCatalog) -> LoopCommands:
    return LoopCommands(store, history=history, catalog=catalog)
