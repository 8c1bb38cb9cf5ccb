"""Tests for prompt catalog loading, overrides and accessors."""

from __future__ import annotations

from pathlib import Path

import pytest

import loopkeeper.prompts.catalog as catalog_module
from loopkeeper.prompts.catalog import PromptCatalog, _deep_merge, _load_yaml, get_catalog
from loopkeeper.schemas import LoopMode

pytestmark = pytest.mark.unit


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_load_yaml_success_and_failure(caplog, tmp_path: Path) -> None:
    good = _write(tmp_path / "good.yaml", "a: 1\nb:\n  - two\n")
    assert _load_yaml(good) == {"a": 1, "b": ["two"]}

    bad = _write(tmp_path / "bad.yaml", "a: [1, 2\n")
    with caplog.at_level("WARNING"):
        assert _load_yaml(bad) == {}
    assert "Failed to load" in caplog.text


def test_load_yaml_rejects_non_mapping(caplog, tmp_path: Path) -> None:
    listing = _write(tmp_path / "list.yaml", "- one\n- two\n")
    with caplog.at_level("WARNING"):
        assert _load_yaml(listing) == {}
    assert "not a mapping" in caplog.text

    assert _load_yaml(_write(tmp_path / "empty.yaml", "")) == {}


def test_deep_merge_recursively_overrides_values() -> None:
    base = {"a": 1, "nested": {"x": 1, "y": 2}, "keep": {"k": "v"}}
    override = {"nested": {"y": 99, "z": 3}, "new": 7, "keep": 9}
    assert _deep_merge(base, override) == {
        "a": 1,
        "nested": {"x": 1, "y": 99, "z": 3},
        "keep": 9,
        "new": 7,
    }


def test_builtin_templates_cover_every_accessor(catalog: PromptCatalog) -> None:
    assert "{{loopName}}" in catalog.iteration(LoopMode.BUILD)
    assert "PLANNING MODE" in catalog.iteration("plan")
    assert "CHECKPOINT" in catalog.checkpoint()
    assert "{{sessionRotations}}" in catalog.rotation()
    assert "## Checklist" in catalog.task_scaffold()
    assert "LOOP COMPLETE" in catalog.banner("complete")
    assert "Max iterations" in catalog.banner("max_iterations")
    assert "{{markerLines}}" in catalog.system("addendum")
    assert "PLANNING mode" in catalog.system("plan_notice")


def test_templates_are_stripped(catalog: PromptCatalog) -> None:
    text = catalog.banner("complete")
    assert text == text.strip()


def test_unknown_mode_raises(catalog: PromptCatalog) -> None:
    with pytest.raises(ValueError):
        catalog.iteration("dance")


def test_missing_entry_raises_key_error(catalog: PromptCatalog) -> None:
    with pytest.raises(KeyError, match="banners.nope"):
        catalog.banner("nope")


def test_overrides_merge_over_builtin(tmp_path: Path) -> None:
    override = _write(
        tmp_path / "override.yaml",
        "banners:\n  complete: 'DONE {{loopName}}'\n",
    )
    catalog = PromptCatalog(extra_path=override)

    assert catalog.banner("complete") == "DONE {{loopName}}"
    assert "Max iterations" in catalog.banner("max_iterations")
    assert "{{loopName}}" in catalog.iteration(LoopMode.BUILD)


def test_empty_override_entry_falls_back_to_builtin(caplog, tmp_path: Path) -> None:
    override = _write(tmp_path / "override.yaml", "banners:\n  complete: ''\n")
    catalog = PromptCatalog(extra_path=override)

    with caplog.at_level("WARNING"):
        assert "LOOP COMPLETE" in catalog.banner("complete")
    assert "banners.complete" in caplog.text


@pytest.mark.parametrize(
    "content",
    [
        "iteration:\n  build: ''\n",
        "iteration:\n  build: [1, 2]\n",
        "iteration: x\n",
    ],
)
def test_malformed_override_section_falls_back_to_builtin(tmp_path: Path, content: str) -> None:
    catalog = PromptCatalog(extra_path=_write(tmp_path / "override.yaml", content))
    assert "{{loopName}}" in catalog.iteration(LoopMode.BUILD)


def test_missing_override_file_warns(caplog, tmp_path: Path) -> None:
    with caplog.at_level("WARNING"):
        catalog = PromptCatalog(extra_path=tmp_path / "missing.yaml")
    assert "not found" in caplog.text
    assert "LOOP COMPLETE" in catalog.banner("complete")


def test_reload_picks_up_changes(tmp_path: Path) -> None:
    override = _write(tmp_path / "override.yaml", "system:\n  plan_notice: first\n")
    catalog = PromptCatalog(extra_path=override)
    assert catalog.system("plan_notice") == "first"

    _write(override, "system:\n  plan_notice: second\n")
    catalog.reload()
    assert catalog.system("plan_notice") == "second"


def test_get_catalog_is_a_singleton_honoring_overrides(monkeypatch, tmp_path: Path) -> None:
    override = _write(tmp_path / "override.yaml", "banners:\n  complete: custom\n")
    monkeypatch.setattr(catalog_module, "_default_catalog", None)
    monkeypatch.setenv("LOOPKEEPER_PROMPT_OVERRIDES", str(override))

    first = get_catalog()
    assert first is get_catalog()
    assert first.banner("complete") == "custom"
    assert isinstance(first.raw, dict)
