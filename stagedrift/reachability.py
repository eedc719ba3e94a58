# ABOUTME: Reachability resolver: asks pipeline plugins, in registry order, whether a stage is reachable.
# ABOUTME: Also partitions requested stages into local / remote / unreachable for the scan, fix and deploy passes.
from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from stagedrift.plugins import PluginSet
from stagedrift.stages import ordered_stages

if TYPE_CHECKING:
    from stagedrift.context import ExecutionContext


NO_PIPELINE_REASON = "no pipeline plugin loaded"


@dataclass(frozen=True)
class Reachability:
    reachable: bool
    via: str | None = None
    reason: str | None = None
    hint: str | None = None
    owner: str | None = None

    def __post_init__(self) -> None:
        if self.reachable and not self.via:
            raise ValueError("reachable stages must say how they are reached (via)")
        if not self.reachable and not self.reason:
            raise ValueError("unreachable stages must carry a reason")

    @classmethod
    def local(cls, owner: str | None = None) -> Reachability:
        return cls(reachable=True, via="local", owner=owner)

    @classmethod
    def remote(cls, via: str, owner: str | None = None) -> Reachability:
        return cls(reachable=True, via=via, owner=owner)

    @classmethod
    def blocked(cls, reason: str, hint: str | None = None, owner: str | None = None) -> Reachability:
        return cls(reachable=False, reason=reason, hint=hint, owner=owner)

    @property
    def is_local(self) -> bool:
        return self.reachable and self.via == "local"

    def owned_by(self, owner: str) -> Reachability:
        return Reachability(self.reachable, self.via, self.reason, self.hint, owner)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"reachable": self.reachable}
        for key in ("via", "reason", "hint", "owner"):
            value = getattr(self, key)
            if value:
                out[key] = value
        return out


def resolve(stage: str, ctx: ExecutionContext, plugin_set: PluginSet) -> Reachability:
    pipelines = plugin_set.pipelines
    if not pipelines:
        return Reachability.local()

    results: dict[str, Reachability] = {}
    last: Reachability | None = None
    for pipeline in pipelines:
        try:
            reach = pipeline.can_reach(stage, ctx)
        except Exception as e:
            print(f"note: {pipeline.id} could not check {stage} ({e})", file=sys.stderr)
            reach = Reachability.blocked(f"{pipeline.id} reachability check failed: {e}")
        if reach.reachable:
            return reach.owned_by(pipeline.id)
        last = reach.owned_by(pipeline.id)
        results[pipeline.id] = last

    default_pipeline = str(ctx.config.get("pipeline") or "")
    if default_pipeline in results:
        return results[default_pipeline]
    if last is not None:
        return last
    return Reachability.blocked(NO_PIPELINE_REASON)


@dataclass
class StagePlan:
    stages: list[str]
    reachability: dict[str, Reachability] = field(default_factory=dict)
    local: list[str] = field(default_factory=list)
    remote: dict[str, str] = field(default_factory=dict)  # stage -> owning pipeline id
    unreachable: list[str] = field(default_factory=list)

    def status(self, stage: str) -> str:
        if stage in self.unreachable:
            return "unreachable"
        if stage in self.remote:
            return "remote"
        if stage in self.local:
            return "local"
        return "unchecked"

    def to_dict(self) -> dict[str, Any]:
        return {stage: self.reachability[stage].to_dict() for stage in self.stages}


def plan_stages(ctx: ExecutionContext, plugin_set: PluginSet, stages: list[str]) -> StagePlan:
    ordered = ordered_stages(stages)
    plan = StagePlan(stages=ordered)
    for stage in ordered:
        reach = resolve(stage, ctx, plugin_set)
        plan.reachability[stage] = reach
        if not reach.reachable:
            plan.unreachable.append(stage)
        elif reach.is_local:
            plan.local.append(stage)
        else:
            plan.remote[stage] = str(reach.owner or "")
    return plan
