# ABOUTME: Fix definitions (detector + optional remediator) and fix-pass results.
# ABOUTME: A Fix with no remediator is permanently manual.
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Callable, Iterable

from stagedrift.stages import SEVERITIES, STAGES, ScanOutcome

if TYPE_CHECKING:
    from stagedrift.context import ExecutionContext


Detector = Callable[["ExecutionContext"], "bool | ScanOutcome"]
Remediator = Callable[["ExecutionContext"], bool]


@dataclass(frozen=True)
class Fix:
    id: str
    stage: str
    severity: str
    description: str
    scan: Detector
    manual_fix: str
    fix: Remediator | None = None
    plugin: str = ""
    os: str | tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if self.stage not in STAGES:
            raise ValueError(f"{self.id}: unknown stage {self.stage!r}")
        if self.severity not in SEVERITIES:
            raise ValueError(f"{self.id}: unknown severity {self.severity!r}")

    @property
    def auto_fixable(self) -> bool:
        return self.fix is not None

    @property
    def os_filter(self) -> tuple[str, ...]:
        if self.os is None:
            return ()
        if isinstance(self.os, str):
            return (self.os,)
        return tuple(self.os)

    def tagged(self, plugin_id: str) -> Fix:
        return replace(self, plugin=plugin_id)


def applies_to_os(fix: Fix, target_os: str | None) -> bool:
    wanted = fix.os_filter
    if not wanted:
        return True
    if target_os is None:
        return False
    return target_os in wanted


@dataclass(frozen=True)
class FixOutcome:
    id: str
    stage: str
    status: str  # "fixed", "manual", "failed"
    description: str
    manual_fix: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "stage": self.stage,
            "status": self.status,
            "description": self.description,
        }
        if self.manual_fix:
            out["manual_fix"] = self.manual_fix
        if self.error:
            out["error"] = self.error
        return out


@dataclass
class FixResult:
    fixed: int = 0
    manual: int = 0
    failed: int = 0
    outcomes: list[FixOutcome] = field(default_factory=list)

    def record(self, outcome: FixOutcome) -> None:
        if outcome.status == "fixed":
            self.fixed += 1
        elif outcome.status == "manual":
            self.manual += 1
        elif outcome.status == "failed":
            self.failed += 1
        else:
            raise ValueError(f"unknown fix status: {outcome.status}")
        self.outcomes.append(outcome)

    def extend(self, outcomes: Iterable[FixOutcome]) -> None:
        for outcome in outcomes:
            self.record(outcome)

    def for_stage(self, stage: str) -> list[FixOutcome]:
        return [o for o in self.outcomes if o.stage == stage]

    def to_dict(self) -> dict[str, Any]:
        return {
            "fixed": self.fixed,
            "manual": self.manual,
            "failed": self.failed,
            "fixes": [o.to_dict() for o in self.outcomes],
        }
