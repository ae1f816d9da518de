"""
TIMECUBE_PIPELINE_STAGES
========================

Canonical TIMECUBE pipeline stages and helpers for parsing stage identifiers.

    MANIFEST -> CUBE

MANIFEST scans the instrument timestamp files and writes the resample
manifest; CUBE applies the manifest and writes the time-binned FITS cube.

This module is standard-library only and free of project imports, so the
pipeline manifest and manager can import it first.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, Optional, Tuple, Union


class Stage(str, Enum):
    """
    Canonical pipeline stages.

    The values are the stage IDs accepted by ``--recompute-from`` and
    ``--stop-after`` and shown in the dry-run plan.  Ordering lives in
    STAGE_ORDER.
    """

    MANIFEST = "MANIFEST"
    CUBE = "CUBE"

    def __str__(self) -> str:
        return self.value


STAGE_ORDER: Tuple[Stage, ...] = (
    Stage.MANIFEST,
    Stage.CUBE,
)

STAGE_INDEX: Dict[Stage, int] = {s: i for i, s in enumerate(STAGE_ORDER)}
STAGE_BY_ID: Dict[str, Stage] = {s.value: s for s in STAGE_ORDER}

# Aliases accepted by the parsers (case-insensitive).
_STAGE_ALIASES: Dict[str, str] = {
    "RESAMPLE": "MANIFEST",
    "SCAN": "MANIFEST",
    "APPLYTS": "CUBE",
    "APPLY_TIMESTAMPS": "CUBE",
    "FITS": "CUBE",
}


StageLike = Union[Stage, str]


def normalize_stage_id(stage_id: str) -> str:
    """Uppercase, strip, and map separator variants / aliases to a lookup key."""
    s = " ".join(stage_id.strip().upper().split())
    s = s.replace("-", "_").replace(" ", "_")
    return _STAGE_ALIASES.get(s, s)


def try_parse_stage(stage: Optional[StageLike]) -> Optional[Stage]:
    """
    Non-throwing parse of a stage specifier.

    Returns None for None or an unknown ID, which the manager reads as
    "no stop-after / no recompute".
    """
    if stage is None:
        return None
    if isinstance(stage, Stage):
        return stage
    if isinstance(stage, str):
        return STAGE_BY_ID.get(normalize_stage_id(stage))
    return None


def parse_stage(stage: StageLike) -> Stage:
    """
    Strict parse of a stage specifier.

    Raises
    ------
    ValueError
        If the stage is unknown.
    """
    parsed = try_parse_stage(stage)
    if parsed is None:
        valid = ", ".join(s.value for s in STAGE_ORDER)
        raise ValueError(f"Invalid stage '{stage}'. Valid stages: {valid}")
    return parsed


def upstream_stages(stage: StageLike, inclusive: bool = True) -> Tuple[Stage, ...]:
    """Stages up to `stage` in canonical order."""
    idx = STAGE_INDEX[parse_stage(stage)]
    return STAGE_ORDER[: idx + 1] if inclusive else STAGE_ORDER[:idx]


def downstream_stages(stage: StageLike, inclusive: bool = True) -> Tuple[Stage, ...]:
    """Stages from `stage` onward in canonical order."""
    idx = STAGE_INDEX[parse_stage(stage)]
    return STAGE_ORDER[idx:] if inclusive else STAGE_ORDER[idx + 1 :]


def resolve_run_list(stop_after: Optional[StageLike]) -> Tuple[Stage, ...]:
    """
    Stages to run under stop-after semantics: through `stop_after` when it
    is valid, otherwise the full chain.
    """
    s = try_parse_stage(stop_after)
    if s is None:
        return STAGE_ORDER
    return upstream_stages(s, inclusive=True)


def resolve_invalidate_list(recompute_from: Optional[StageLike]) -> Tuple[Stage, ...]:
    """
    Stages whose owned outputs are deleted: from `recompute_from` onward
    when it is valid, otherwise none.
    """
    s = try_parse_stage(recompute_from)
    if s is None:
        return tuple()
    return downstream_stages(s, inclusive=True)


def validate_stage_order() -> None:
    """Check that STAGE_ORDER lists every Stage exactly once."""
    if len(set(STAGE_ORDER)) != len(STAGE_ORDER):
        raise RuntimeError("STAGE_ORDER contains duplicate stages.")
    if set(STAGE_ORDER) != set(Stage):
        missing = set(Stage) - set(STAGE_ORDER)
        raise RuntimeError(f"STAGE_ORDER mismatch. Missing={sorted(m.value for m in missing)}")


__all__ = [
    "Stage",
    "StageLike",
    "STAGE_ORDER",
    "STAGE_INDEX",
    "STAGE_BY_ID",
    "normalize_stage_id",
    "try_parse_stage",
    "parse_stage",
    "upstream_stages",
    "downstream_stages",
    "resolve_run_list",
    "resolve_invalidate_list",
    "validate_stage_order",
]
