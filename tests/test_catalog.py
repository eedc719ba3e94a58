from __future__ import annotations

from pathlib import Path

import pytest

from stagedrift.catalog import CatalogError, build_catalog, env_var_fixes, fixes_for_stage
from stagedrift.context import build_context
from stagedrift.fixes import Fix, applies_to_os
from stagedrift.plugins import PluginSet, ServerPlugin
from stagedrift.stages import ScanOutcome, normalize_outcome


def _noop(_ctx) -> bool:
    return False


class ApiServer(ServerPlugin):
    id = "api"
    name = "API"
    required_env_vars = ("API_KEY",)
    fixes = (
        Fix(id="api-dev-check", stage="dev", severity="info", description="d", scan=_noop, manual_fix="m"),
    )


class OtherServer(ServerPlugin):
    id = "other"
    name = "Other"
    fixes = (
        Fix(id="api-dev-check", stage="dev", severity="info", description="d", scan=_noop, manual_fix="m"),
    )


def _ctx(root: Path, config: dict):
    return build_context(root, config=config, env={}, home=root / "home")


def test_catalog_tags_and_synthesizes_env_var_fixes() -> None:
    catalog = build_catalog(PluginSet.of([ApiServer]))
    ids = [f.id for f in catalog]
    assert ids == [
        "api-dev-check",
        "missing-env-example-api_key",
        "missing-env-staging-api_key",
        "missing-env-prod-api_key",
    ]
    assert all(f.plugin == "api" for f in catalog)
    staging = catalog[2]
    assert staging.stage == "staging"
    assert staging.severity == "critical"
    assert staging.fix is None
    assert staging.manual_fix == "Add API_KEY=staging_value to .env.staging"


def test_duplicate_fix_ids_are_rejected() -> None:
    with pytest.raises(CatalogError):
        build_catalog(PluginSet.of([ApiServer, OtherServer]))


def test_staging_env_var_is_not_applicable_without_staging_environment(tmp_path: Path) -> None:
    (tmp_path / ".env.staging").write_text("OTHER=1\n", encoding="utf-8")
    ctx = _ctx(tmp_path, {"name": "shop"})
    staging_fix = [f for f in env_var_fixes("api", ["API_KEY"]) if f.stage == "staging"][0]

    assert staging_fix.id == "missing-env-staging-api_key"
    assert normalize_outcome(staging_fix.scan(ctx)) is ScanOutcome.NOT_APPLICABLE

    (tmp_path / ".env.staging").write_text("API_KEY=secret\n", encoding="utf-8")
    assert normalize_outcome(staging_fix.scan(ctx)) is ScanOutcome.NOT_APPLICABLE


def test_env_var_detector_reads_assignments(tmp_path: Path) -> None:
    ctx = _ctx(tmp_path, {"staging": {"domain": "s.test"}})
    by_stage = {f.stage: f for f in env_var_fixes("api", ["API_KEY"])}

    assert by_stage["dev"].scan(ctx) is ScanOutcome.PROBLEM
    (tmp_path / ".env.example").write_text("# API_KEY=commented out\n", encoding="utf-8")
    assert by_stage["dev"].scan(ctx) is ScanOutcome.PROBLEM
    (tmp_path / ".env.example").write_text("export API_KEY=\n", encoding="utf-8")
    assert by_stage["dev"].scan(ctx) is ScanOutcome.CLEAN

    assert by_stage["staging"].scan(ctx) is ScanOutcome.PROBLEM
    (tmp_path / ".env.staging").write_text("API_KEY_OLD=1\nAPI_KEY=\"x\"\n", encoding="utf-8")
    assert by_stage["staging"].scan(ctx) is ScanOutcome.CLEAN


def test_os_filter() -> None:
    linux_only = Fix(id="l", stage="prod", severity="info", description="d", scan=_noop, manual_fix="m", os=["linux"])
    anywhere = Fix(id="a", stage="prod", severity="info", description="d", scan=_noop, manual_fix="m")

    assert applies_to_os(anywhere, None)
    assert applies_to_os(linux_only, "linux")
    assert not applies_to_os(linux_only, "darwin")
    assert not applies_to_os(linux_only, None)

    applicable, skipped = fixes_for_stage([linux_only, anywhere], "prod", "darwin")
    assert [f.id for f in applicable] == ["a"]
    assert skipped == 1
