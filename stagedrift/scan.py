from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from stagedrift.catalog import build_catalog, fixes_for_stage
from stagedrift.config import target_os_for_stage
from stagedrift.context import ExecutionContext
from stagedrift.fixes import Fix
from stagedrift.plugins import CAP_SCAN_STAGE, HookResult, Plugin, PluginRegistry, PluginSet, load_relevant_plugins
from stagedrift.reachability import StagePlan, plan_stages
from stagedrift.stages import STAGES, ScanOutcome, normalize_outcome, select_stages


ScanProblems = dict[str, list[Fix]]


def empty_problems() -> ScanProblems:
    return {stage: [] for stage in STAGES}


@dataclass
class Detection:
    problems: ScanProblems = field(default_factory=empty_problems)
    not_applicable: int = 0
    os_skipped: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def merge(self, other: Detection) -> None:
        for stage, fixes in other.problems.items():
            self.problems[stage].extend(fixes)
        self.not_applicable += other.not_applicable
        self.os_skipped += other.os_skipped
        self.errors.update(other.errors)


@dataclass
class ScanReport:
    plan: StagePlan
    detection: Detection
    delegated: dict[str, HookResult | None] = field(default_factory=dict)

    @property
    def problems(self) -> ScanProblems:
        return self.detection.problems

    @property
    def total_problems(self) -> int:
        return sum(len(v) for v in self.problems.values())

    def critical(self) -> list[Fix]:
        return [f for stage in STAGES for f in self.problems[stage] if f.severity == "critical"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stages": self.plan.to_dict(),
            "problems": {
                stage: [
                    {
                        "id": f.id,
                        "severity": f.severity,
                        "description": f.description,
                        "plugin": f.plugin,
                        "auto_fixable": f.auto_fixable,
                        "manual_fix": f.manual_fix,
                    }
                    for f in fixes
                ]
                for stage, fixes in self.problems.items()
                if stage in self.plan.stages
            },
            "total_problems": self.total_problems,
            "not_applicable": self.detection.not_applicable,
            "os_skipped": self.detection.os_skipped,
            "errors": dict(self.detection.errors),
            "delegated": {
                stage: (None if hook is None else hook.handled) for stage, hook in self.delegated.items()
            },
        }


def detect_problems(
    ctx: ExecutionContext,
    catalog: list[Fix],
    stages: Iterable[str],
    *,
    silent: bool = True,
) -> Detection:
    """
    Run detectors for the given stages, in stage order then catalog order.

    A detector that raises is counted as a problem: a broken check must not
    hide real drift.
    """

    out = Detection()
    wanted = set(stages)
    for stage in [s for s in STAGES if s in wanted]:
        applicable, skipped = fixes_for_stage(catalog, stage, target_os_for_stage(ctx.config, stage))
        out.os_skipped += skipped
        for fix in applicable:
            try:
                outcome = normalize_outcome(fix.scan(ctx))
            except Exception as e:
                out.errors[fix.id] = str(e) or type(e).__name__
                if not silent:
                    print(f"  [!] Error scanning {fix.id}: {out.errors[fix.id]}")
                outcome = ScanOutcome.PROBLEM
            if outcome is ScanOutcome.NOT_APPLICABLE:
                out.not_applicable += 1
            elif outcome.is_problem:
                out.problems[stage].append(fix)
    return out


def instance_for(
    owner: str,
    ctx: ExecutionContext,
    plugin_set: PluginSet,
    cache: dict[str, Plugin],
) -> Plugin | None:
    if owner not in cache:
        plugin_cls = plugin_set.get(owner)
        if plugin_cls is None:
            return None
        cache[owner] = plugin_cls(ctx)
    return cache[owner]


def _delegate_scan(
    ctx: ExecutionContext,
    plugin_set: PluginSet,
    plan: StagePlan,
    catalog: list[Fix],
    detection: Detection,
    *,
    silent: bool,
) -> dict[str, HookResult | None]:
    delegated: dict[str, HookResult | None] = {}
    instances: dict[str, Plugin] = {}
    for stage in [s for s in plan.stages if s in plan.remote]:
        owner = plan.remote[stage]
        if not plugin_set.supports(owner, CAP_SCAN_STAGE):
            delegated[stage] = None
            continue
        pipeline = instance_for(owner, ctx, plugin_set, instances)
        try:
            hook = pipeline.scan_stage(stage, {})  # type: ignore[union-attr]
        except Exception as e:
            if not silent:
                print(f"  [!] {stage} remote scan via {owner} failed: {e}")
            hook = HookResult(handled=True, message=str(e) or type(e).__name__, failed=True)
        delegated[stage] = hook
        if not hook.handled:
            detection.merge(detect_problems(ctx, catalog, [stage], silent=silent))
    return delegated


def _status_line(stage: str, report: ScanReport) -> list[str]:
    label = stage.upper()
    reach = report.plan.reachability[stage]
    if not reach.reachable:
        lines = [f"[X] {label}: cannot reach - {reach.reason}"]
        if reach.hint:
            lines.append(f"    hint: {reach.hint}")
        return lines
    if stage in report.plan.remote:
        hook = report.delegated.get(stage)
        owner = report.plan.remote[stage]
        if hook is None:
            return [f"[>] {label}: reachable via {reach.via} ({owner}); no remote scan available"]
        if hook.failed:
            return [f"[X] {label}: remote scan via {owner} failed - {hook.message}"]
        if hook.handled:
            return [f"[>] {label}: reachable via {reach.via} ({owner}); scanned remotely"]
    count = len(report.problems[stage])
    if count:
        return [f"[!] {label}: {count} issue(s) found"]
    return [f"[OK] {label}: ready (via {reach.via})"]


def display_report(report: ScanReport) -> None:
    print("")
    print("=" * 60)
    print("SCAN RESULTS")
    print("=" * 60)
    for stage in report.plan.stages:
        for line in _status_line(stage, report):
            print(line)

    for stage in report.plan.stages:
        problems = report.problems[stage]
        if not problems:
            continue
        print("")
        print(f"{stage.upper()}:")
        for fix in problems:
            marker = "auto" if fix.auto_fixable else "manual"
            print(f"  [{marker}] {fix.description} ({fix.severity}, {fix.id})")
            if not fix.auto_fixable:
                print(f"      -> {fix.manual_fix}")

    print("-" * 60)
    total = report.total_problems
    if total == 0:
        print("No issues found in reachable stages.")
    else:
        print(f"Found {total} issue(s). Run `stagedrift fix` to apply automatic fixes.")
    if report.detection.os_skipped:
        print(f"({report.detection.os_skipped} check(s) skipped: not applicable to the target OS)")


def scan_report(
    ctx: ExecutionContext,
    stages: Iterable[str] | None = None,
    *,
    silent: bool = False,
    registry: PluginRegistry | None = None,
) -> ScanReport:
    requested = select_stages(stages=stages)
    plugin_set = load_relevant_plugins(ctx.root_dir, ctx.config, registry)
    plan = plan_stages(ctx, plugin_set, requested)
    catalog = build_catalog(plugin_set)

    if not silent:
        print("Scanning...")
    detection = detect_problems(ctx, catalog, plan.local, silent=silent)
    delegated = _delegate_scan(ctx, plugin_set, plan, catalog, detection, silent=silent)
    report = ScanReport(plan=plan, detection=detection, delegated=delegated)
    if not silent:
        display_report(report)
    return report


def scan(
    ctx: ExecutionContext,
    stages: Iterable[str] | None = None,
    *,
    silent: bool = False,
    registry: PluginRegistry | None = None,
) -> ScanProblems:
    return scan_report(ctx, stages, silent=silent, registry=registry).problems
