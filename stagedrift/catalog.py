from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from stagedrift.config import stage_configured
from stagedrift.envfiles import ENV_FILES, has_assignment
from stagedrift.fixes import Fix, applies_to_os
from stagedrift.plugins import Plugin, PluginSet
from stagedrift.stages import ScanOutcome

if TYPE_CHECKING:
    from stagedrift.context import ExecutionContext


_PLACEHOLDERS = {
    "dev": "your_value",
    "staging": "staging_value",
    "prod": "production_value",
}

_ENV_FILE_LABELS = {
    "dev": "example",
    "staging": "staging",
    "prod": "prod",
}


class CatalogError(Exception):
    pass


def _env_var_detector(stage: str, var_name: str):
    env_file = ENV_FILES[stage]

    def scan(ctx: ExecutionContext) -> ScanOutcome:
        # An environment that is not configured has nothing to be missing from.
        if stage != "dev" and not stage_configured(ctx.config, stage):
            return ScanOutcome.NOT_APPLICABLE
        if has_assignment(ctx.path(env_file), var_name):
            return ScanOutcome.CLEAN
        return ScanOutcome.PROBLEM

    return scan


def env_var_fixes(plugin_id: str, var_names: Iterable[str]) -> list[Fix]:
    out: list[Fix] = []
    for var_name in var_names:
        for stage in ("dev", "staging", "prod"):
            env_file = ENV_FILES[stage]
            out.append(
                Fix(
                    id=f"missing-env-{_ENV_FILE_LABELS[stage]}-{var_name.lower()}",
                    stage=stage,
                    severity="critical",
                    description=f"{var_name} not found in {env_file}",
                    scan=_env_var_detector(stage, var_name),
                    fix=None,
                    manual_fix=f"Add {var_name}={_PLACEHOLDERS[stage]} to {env_file}",
                    plugin=plugin_id,
                )
            )
    return out


def plugin_fixes(plugin_cls: type[Plugin]) -> list[Fix]:
    fixes = [f.tagged(plugin_cls.id) for f in plugin_cls.fixes]
    fixes.extend(env_var_fixes(plugin_cls.id, plugin_cls.required_env_vars))
    return fixes


def build_catalog(plugin_set: PluginSet) -> list[Fix]:
    """Flatten every loaded plugin's fixes, in plugin load order then declaration order."""

    catalog: list[Fix] = []
    owners: dict[str, str] = {}
    for plugin_cls in plugin_set.plugins:
        for fix in plugin_fixes(plugin_cls):
            if fix.id in owners:
                raise CatalogError(f"duplicate fix id {fix.id!r} (from {owners[fix.id]} and {plugin_cls.id})")
            owners[fix.id] = plugin_cls.id
            catalog.append(fix)
    return catalog


def fixes_for_stage(catalog: list[Fix], stage: str, target_os: str | None) -> tuple[list[Fix], int]:
    """Return (applicable fixes, number skipped by the OS filter) for one stage."""

    applicable: list[Fix] = []
    skipped = 0
    for fix in catalog:
        if fix.stage != stage:
            continue
        if not applies_to_os(fix, target_os):
            skipped += 1
            continue
        applicable.append(fix)
    return applicable, skipped
