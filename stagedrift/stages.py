from __future__ import annotations

from enum import Enum
from typing import Iterable


STAGES: tuple[str, ...] = ("dev", "secrets", "staging", "prod")

SEVERITIES: tuple[str, ...] = ("critical", "warning", "info")


class ScanOutcome(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    CLEAN = "clean"
    PROBLEM = "problem"

    @property
    def is_problem(self) -> bool:
        return self is ScanOutcome.PROBLEM


def normalize_outcome(value: object) -> ScanOutcome:
    """
    Detectors may answer with a plain bool (True = problem present) or with a
    ScanOutcome. Anything else is a detector bug.
    """

    if isinstance(value, ScanOutcome):
        return value
    if isinstance(value, bool):
        return ScanOutcome.PROBLEM if value else ScanOutcome.CLEAN
    raise TypeError(f"detector returned {type(value).__name__}, expected bool or ScanOutcome")


def is_stage(value: str) -> bool:
    return value in STAGES


def ordered_stages(stages: Iterable[str]) -> list[str]:
    wanted = {str(s) for s in stages}
    unknown = sorted(wanted - set(STAGES))
    if unknown:
        raise ValueError(f"Unknown stage(s): {', '.join(unknown)}")
    return [s for s in STAGES if s in wanted]


def select_stages(
    *,
    dev: bool = False,
    secrets: bool = False,
    staging: bool = False,
    prod: bool = False,
    stages: Iterable[str] | None = None,
) -> list[str]:
    # A single stage flag wins over an explicit list; nothing selects all.
    flags = {"dev": dev, "secrets": secrets, "staging": staging, "prod": prod}
    for stage in STAGES:
        if flags[stage]:
            return [stage]
    if stages is not None:
        return ordered_stages(stages)
    return list(STAGES)
