from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from stagedrift.catalog import build_catalog
from stagedrift.context import ExecutionContext
from stagedrift.fixes import Fix, FixOutcome, FixResult
from stagedrift.plugins import CAP_FIX_STAGE, HookResult, Plugin, PluginRegistry, PluginSet, load_relevant_plugins
from stagedrift.reachability import StagePlan, plan_stages
from stagedrift.scan import ScanProblems, detect_problems, instance_for
from stagedrift.stages import STAGES, select_stages


@dataclass
class FixReport:
    plan: StagePlan
    result: FixResult
    delegated: dict[str, HookResult | None] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out = self.result.to_dict()
        out["stages"] = self.plan.to_dict()
        out["delegated"] = {
            stage: (None if hook is None else hook.handled) for stage, hook in self.delegated.items()
        }
        return out


def apply_fix(ctx: ExecutionContext, fix: Fix, *, silent: bool = True) -> FixOutcome:
    if fix.fix is None:
        return FixOutcome(fix.id, fix.stage, "manual", fix.description, manual_fix=fix.manual_fix)

    started = time.monotonic()
    try:
        ok = bool(fix.fix(ctx))
        error = None if ok else "fix reported failure"
    except Exception as e:
        ok = False
        error = str(e) or type(e).__name__
    elapsed_ms = int((time.monotonic() - started) * 1000)
    if not silent and elapsed_ms > ctx.settings.slow_fix_ms:
        print(f"  note: {fix.id} took {elapsed_ms}ms")

    if ok:
        return FixOutcome(fix.id, fix.stage, "fixed", fix.description)
    return FixOutcome(fix.id, fix.stage, "failed", fix.description, manual_fix=fix.manual_fix, error=error)


def apply_fixes(
    ctx: ExecutionContext,
    problems: ScanProblems,
    *,
    stages: Iterable[str] | None = None,
    silent: bool = True,
) -> FixResult:
    """Run remediators for detected problems, stage order then catalog order."""

    wanted = set(STAGES if stages is None else stages)
    result = FixResult()
    for stage in STAGES:
        if stage not in wanted:
            continue
        for fix in problems.get(stage, []):
            result.record(apply_fix(ctx, fix, silent=silent))
    return result


def fix_locally(
    ctx: ExecutionContext,
    catalog: list[Fix],
    stages: Iterable[str],
    *,
    silent: bool = True,
) -> FixResult:
    wanted = list(stages)
    detection = detect_problems(ctx, catalog, wanted, silent=silent)
    return apply_fixes(ctx, detection.problems, stages=wanted, silent=silent)


def _delegate_fix(
    ctx: ExecutionContext,
    plugin_set: PluginSet,
    plan: StagePlan,
    catalog: list[Fix],
    result: FixResult,
    *,
    silent: bool,
) -> dict[str, HookResult | None]:
    delegated: dict[str, HookResult | None] = {}
    instances: dict[str, Plugin] = {}
    for stage in [s for s in plan.stages if s in plan.remote]:
        owner = plan.remote[stage]
        if not plugin_set.supports(owner, CAP_FIX_STAGE):
            # Nothing can fix it remotely, so fix what is visible from here.
            delegated[stage] = None
            result.extend(fix_locally(ctx, catalog, [stage], silent=silent).outcomes)
            continue

        pipeline = instance_for(owner, ctx, plugin_set, instances)
        if not silent:
            print(f"Delegating {stage} fixes to {owner}...")
        try:
            hook = pipeline.fix_stage(stage, {})  # type: ignore[union-attr]
        except Exception as e:
            delegated[stage] = HookResult(handled=True, message=str(e) or type(e).__name__, failed=True)
            result.record(
                FixOutcome(
                    id=f"remote-fix-{stage}",
                    stage=stage,
                    status="failed",
                    description=f"Remote fix of {stage} via {owner}",
                    error=str(e) or type(e).__name__,
                )
            )
            continue

        delegated[stage] = hook
        if not hook.handled:
            result.extend(fix_locally(ctx, catalog, [stage], silent=silent).outcomes)
    return delegated


def display_results(report: FixReport) -> None:
    result = report.result
    print("")
    print("-" * 60)
    print("RESULTS BY STAGE")
    print("-" * 60)
    print("")
    for stage in STAGES:
        if stage in report.plan.unreachable:
            reach = report.plan.reachability[stage]
            print(f"{stage.upper()}: skipped (cannot reach - {reach.reason})")
            print("")
            continue
        outcomes = result.for_stage(stage)
        hook = report.delegated.get(stage)
        if not outcomes and hook is not None and hook.handled:
            print(f"{stage.upper()}: fixed remotely via {report.plan.remote.get(stage)}")
            print("")
            continue
        if not outcomes:
            continue
        print(f"{stage.upper()}:")
        for outcome in outcomes:
            if outcome.status == "fixed":
                print(f"  [OK] Fixed: {outcome.description}")
            elif outcome.status == "manual":
                print(f"  [man] Manual: {outcome.description}")
                if outcome.manual_fix:
                    print(f"    -> {outcome.manual_fix}")
            else:
                print(f"  [ERROR] Failed: {outcome.description}")
                if outcome.error:
                    print(f"      Error: {outcome.error}")
        print("")

    print("-" * 60)
    print(f"TOTAL: Fixed: {result.fixed}, Manual: {result.manual}, Failed: {result.failed}")


def fix_report(
    ctx: ExecutionContext,
    stages: Iterable[str] | None = None,
    *,
    silent: bool = False,
    registry: PluginRegistry | None = None,
) -> FixReport:
    requested = select_stages(stages=stages)
    plugin_set = load_relevant_plugins(ctx.root_dir, ctx.config, registry)
    plan = plan_stages(ctx, plugin_set, requested)
    catalog = build_catalog(plugin_set)

    if not silent:
        print("Running auto-fixes...")
    result = fix_locally(ctx, catalog, plan.local, silent=silent)
    delegated = _delegate_fix(ctx, plugin_set, plan, catalog, result, silent=silent)
    result.outcomes.sort(key=lambda o: STAGES.index(o.stage))

    report = FixReport(plan=plan, result=result, delegated=delegated)
    if not silent:
        display_results(report)
    return report


def fix(
    ctx: ExecutionContext,
    stages: Iterable[str] | None = None,
    *,
    silent: bool = False,
    registry: PluginRegistry | None = None,
) -> FixResult:
    return fix_report(ctx, stages, silent=silent, registry=registry).result
