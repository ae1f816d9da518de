"""
TIMECUBE_PIPELINE_MANAGER
=========================

Execution engine for the TIMECUBE pipeline (MANIFEST -> CUBE).

Policy
------
1) Strict chain: MANIFEST -> CUBE.

2) Outputs are reused.  A stage whose owned outputs exist is not rerun,
   unless it is invalidated.

3) Recompute is deletion-driven.  "Recompute from stage X" deletes ONLY the
   owned output files of X and every later stage in this run (never
   directories), then runs forward from X.  A stage with missing outputs
   pulls the run start back to itself, and every stage after it is rerun
   too, so a cube is never reused on top of a rebuilt manifest.

4) STOP_AFTER: a valid stage ID runs the chain through it (inclusive); an
   invalid or missing one runs the full chain.

5) DRY_RUN prints the plan (run list, invalidate list, delete list with
   existence status, entrypoints) and neither deletes nor executes.

Usage
-----
from TIMECUBE.Utility.PIPELINE.TIMECUBE_PIPELINE_MANIFEST import RunRequest
from TIMECUBE.Utility.PIPELINE.TIMECUBE_PIPELINE_MANAGER import run_pipeline

req = RunRequest(teldir=Path("/data/tel1"), sname="cam0",
                 tstart=1718280600.0, tend=1718280725.0, dt=0.5)
run_pipeline(req, dry_run=True)
run_pipeline(req, recompute_from_stage="CUBE", dry_run=False)

Command line:
    timecube-pipeline /data/tel1 cam0 UT20240613T12:10:00 +2:05 0.5 --execute
"""

from __future__ import annotations

import argparse
import inspect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from TIMECUBE.Utility.MANIFEST.TIMECUBE_TIME_PARSING import parse_time_arg
from TIMECUBE.Utility.PIPELINE.TIMECUBE_PIPELINE_MANIFEST import (
    RunRequest,
    StageSpec,
    get_stage_spec,
    load_stage_callable,
    resolve_owned_output_paths,
    resolve_owned_output_paths_for_stages,
    resolve_stage_kwargs,
)
from TIMECUBE.Utility.PIPELINE.TIMECUBE_PIPELINE_STAGES import (
    STAGE_ORDER,
    Stage,
    StageLike,
    downstream_stages,
    resolve_run_list,
    try_parse_stage,
)
from TIMECUBE.Utility.TIMECUBE_LOGGING import get_logger


# -----------------------------------------------------------------------------
# Data model
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class PipelineRunPlan:
    """Fully resolved plan for one run (used for dry-run and execution)."""

    request: RunRequest
    output_dir: Path
    recompute_from_stage: Optional[str]
    stop_after_stage: Optional[str]

    run_stages: Tuple[Stage, ...]
    reuse_stages: Tuple[Stage, ...]
    invalidate_stages: Tuple[Stage, ...]
    delete_paths: Tuple[Path, ...]

    stage_entrypoints: Tuple[str, ...]


@dataclass
class PipelineRunResult:
    """What a run did."""

    plan: PipelineRunPlan
    deleted_paths: List[Path]
    executed_stages: List[Stage]
    stage_return_values: Dict[Stage, Any]


# -----------------------------------------------------------------------------
# Safety helpers
# -----------------------------------------------------------------------------
def _is_within_dir(path: Path, base_dir: Path) -> bool:
    p = path.resolve()
    b = base_dir.resolve()
    return b == p or b in p.parents


def _safe_unlink(path: Path, base_dir: Path, logger: logging.Logger) -> bool:
    """
    Delete a file if it exists and lies inside `base_dir`.

    Returns True if a file was deleted.
    """
    p = path.resolve()
    if not _is_within_dir(p, base_dir):
        raise RuntimeError(
            f"Refusing to delete path outside output_dir.\n"
            f"  output_dir: {base_dir}\n"
            f"  candidate : {p}"
        )
    if not p.exists():
        return False
    if p.is_dir():
        raise RuntimeError(f"Refusing to delete directory (files-only policy): {p}")

    logger.info("Deleting owned output: %s", p)
    p.unlink()
    return True


def _format_entrypoint(spec: StageSpec) -> str:
    ep = spec.entrypoint
    return f"{spec.stage.value}: {ep.module}.{ep.function}(...)  # {spec.description}"


def _stage_outputs_exist(stage: Stage, request: RunRequest) -> bool:
    """True if every owned output of `stage` exists for `request`."""
    return all(p.exists() for p in resolve_owned_output_paths(stage, request))


def _first_missing_stage(stages_in_order: Sequence[Stage], request: RunRequest) -> Optional[Stage]:
    for st in stages_in_order:
        if not _stage_outputs_exist(st, request):
            return st
    return None


def _canonical_or_raw(stage: Optional[StageLike]) -> Optional[str]:
    parsed = try_parse_stage(stage)
    if parsed is not None:
        return parsed.value
    return str(stage) if stage is not None else None


# -----------------------------------------------------------------------------
# Plan resolution
# -----------------------------------------------------------------------------
def build_plan(
    request: RunRequest,
    *,
    recompute_from_stage: Optional[StageLike] = None,
    stop_after_stage: Optional[StageLike] = None,
    invalidate_beyond_stop_after: bool = False,
) -> PipelineRunPlan:
    """
    Resolve a PipelineRunPlan from the run request and user knobs.

    Parameters
    ----------
    request : RunRequest
    recompute_from_stage : StageLike | None
        If valid, rebuild from this stage onward. Invalid/None: rebuild only
        what is missing.
    stop_after_stage : StageLike | None
        If valid, run only through this stage (inclusive).
    invalidate_beyond_stop_after : bool
        False (default): only delete outputs of stages that run in this
        invocation. True: also delete outputs of later stages.

    Raises
    ------
    ValueError
        If recompute_from_stage lies after stop_after_stage.
    """
    base_dir = request.resolved_output_dir()
    required_chain = resolve_run_list(stop_after_stage)

    requested_start = try_parse_stage(recompute_from_stage)
    if requested_start is not None and requested_start not in required_chain:
        raise ValueError(
            "Invalid stage combination: recompute_from_stage is downstream of stop_after_stage.\n"
            f"  recompute_from_stage: {recompute_from_stage}\n"
            f"  stop_after_stage    : {stop_after_stage}\n"
            f"  required_chain      : {[s.value for s in required_chain]}"
        )

    # Run from whichever comes first: the requested stage or the first
    # stage with missing outputs.
    candidates = [s for s in (requested_start, _first_missing_stage(required_chain, request)) if s is not None]
    if candidates:
        actual_start = min(candidates, key=required_chain.index)
        actual_idx = required_chain.index(actual_start)
        run_list = required_chain[actual_idx:]
        reuse_list = required_chain[:actual_idx]
        invalidate_full = downstream_stages(actual_start, inclusive=True)
    else:
        run_list = tuple()
        reuse_list = required_chain
        invalidate_full = tuple()

    if invalidate_beyond_stop_after:
        invalidate_list = invalidate_full
    else:
        invalidate_list = tuple(s for s in invalidate_full if s in run_list)

    delete_paths = tuple(resolve_owned_output_paths_for_stages(invalidate_list, request))
    entrypoints = tuple(_format_entrypoint(get_stage_spec(st)) for st in run_list)

    return PipelineRunPlan(
        request=request,
        output_dir=base_dir,
        recompute_from_stage=_canonical_or_raw(recompute_from_stage),
        stop_after_stage=_canonical_or_raw(stop_after_stage),
        run_stages=tuple(run_list),
        reuse_stages=tuple(reuse_list),
        invalidate_stages=tuple(invalidate_list),
        delete_paths=delete_paths,
        stage_entrypoints=entrypoints,
    )


def print_plan(plan: PipelineRunPlan, *, logger: Optional[logging.Logger] = None) -> None:
    """Log the plan in human-readable form."""
    log = logger or get_logger("TIMECUBE_PIPELINE")

    log.info("TIMECUBE pipeline plan")
    log.info("  run_name             : %s", plan.request.run_name)
    log.info("  output_dir           : %s", plan.output_dir)
    log.info("  recompute_from_stage : %s", plan.recompute_from_stage)
    log.info("  stop_after_stage     : %s", plan.stop_after_stage)
    log.info("  RUN stages           : %s", [s.value for s in plan.run_stages])
    log.info("  REUSE stages         : %s", [s.value for s in plan.reuse_stages])
    log.info("  INVALIDATE stages    : %s", [s.value for s in plan.invalidate_stages])

    log.info("  DELETE owned outputs :")
    if not plan.delete_paths:
        log.info("    (none)")
    for p in plan.delete_paths:
        log.info("    - %s  (exists=%s)", p, p.exists())

    log.info("  Entrypoints to call  :")
    if not plan.stage_entrypoints:
        log.info("    (none; all outputs present)")
    for s in plan.stage_entrypoints:
        log.info("    - %s", s)


# -----------------------------------------------------------------------------
# Execution
# -----------------------------------------------------------------------------
def _filtered_kwargs_for_callable(fn: Callable[..., Any], kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only the kwargs `fn` accepts (everything if it takes **kwargs)."""
    sig = inspect.signature(fn)
    if any(p.kind == inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values()):
        return kwargs
    accepted = set(sig.parameters.keys())
    return {k: v for k, v in kwargs.items() if k in accepted}


def _execute_stage(stage: Stage, request: RunRequest, *, logger: logging.Logger) -> Any:
    spec = get_stage_spec(stage)
    fn = load_stage_callable(stage)

    kwargs = resolve_stage_kwargs(stage, request)
    kwargs["logger"] = logger

    logger.info("Executing stage %s: %s.%s", stage.value, spec.entrypoint.module, spec.entrypoint.function)
    return fn(**_filtered_kwargs_for_callable(fn, kwargs))


def run_pipeline(
    request: RunRequest,
    *,
    recompute_from_stage: Optional[StageLike] = None,
    stop_after_stage: Optional[StageLike] = None,
    dry_run: bool = True,
    logger: Optional[logging.Logger] = None,
    invalidate_beyond_stop_after: bool = False,
) -> PipelineRunResult:
    """
    Run the TIMECUBE pipeline for one request.

    Parameters
    ----------
    request : RunRequest
    recompute_from_stage, stop_after_stage : StageLike | None
        See build_plan.
    dry_run : bool
        Print the plan and return without deleting or executing.
    logger : logging.Logger | None
    invalidate_beyond_stop_after : bool
        See build_plan.

    Returns
    -------
    PipelineRunResult
    """
    log = logger or get_logger("TIMECUBE_PIPELINE")

    plan = build_plan(
        request,
        recompute_from_stage=recompute_from_stage,
        stop_after_stage=stop_after_stage,
        invalidate_beyond_stop_after=invalidate_beyond_stop_after,
    )
    print_plan(plan, logger=log)

    result = PipelineRunResult(plan=plan, deleted_paths=[], executed_stages=[], stage_return_values={})

    if dry_run:
        log.info("DRY_RUN=True -> no deletions, no stage execution.")
        return result

    plan.output_dir.mkdir(parents=True, exist_ok=True)
    for p in plan.delete_paths:
        if _safe_unlink(p, base_dir=plan.output_dir, logger=log):
            result.deleted_paths.append(p)

    for st in plan.run_stages:
        result.stage_return_values[st] = _execute_stage(st, request, logger=log)
        result.executed_stages.append(st)

    log.info("Pipeline run complete.")
    return result


# -----------------------------------------------------------------------------
# CLI
# -----------------------------------------------------------------------------
def _build_arg_parser() -> argparse.ArgumentParser:
    stages = [s.value for s in STAGE_ORDER]

    p = argparse.ArgumentParser(
        description="TIMECUBE pipeline manager (MANIFEST -> CUBE).",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    p.add_argument("teldir", help="Telescope data directory (contains YYYYMMDD/ folders).")
    p.add_argument("sname", help="Sensor/stream name.")
    p.add_argument("tstart", help="Grid start: UTYYYYMMDDTHH:MM:SS.SSS or unix seconds.")
    p.add_argument("tend", help="Grid end: absolute, or +SS / +MM:SS / +HH:MM:SS relative to tstart.")
    p.add_argument("dt", type=float, help="Bin width [s].")
    p.add_argument("--output-dir", dest="output_dir", default=None, help="Override TIMECUBE_OUTPUT_DIR.")
    p.add_argument(
        "--recompute-from",
        dest="recompute_from",
        default=None,
        help=f"Stage ID to rebuild from (owned outputs deleted). Choices: {stages}",
    )
    p.add_argument(
        "--stop-after",
        dest="stop_after",
        default=None,
        help=f"Stage ID to stop after (inclusive). Choices: {stages}",
    )
    p.add_argument("--dry-run", dest="dry_run", action="store_true", help="Print plan only.")
    p.add_argument(
        "--execute",
        dest="execute",
        action="store_true",
        help="Actually delete and run stages (default is a dry run).",
    )
    p.add_argument(
        "--invalidate-beyond-stop-after",
        dest="invalidate_beyond_stop_after",
        action="store_true",
        help="Delete invalidated outputs even past stop_after (advanced).",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return p


def _main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_arg_parser().parse_args(argv)
    log = get_logger("TIMECUBE_PIPELINE", level=logging.DEBUG if args.verbose else logging.INFO)

    # Dry run unless --execute is given; --dry-run always wins.
    dry_run = not args.execute or args.dry_run

    try:
        tstart = parse_time_arg(args.tstart)
        tend = parse_time_arg(args.tend, relative_to=tstart)
        request = RunRequest(
            teldir=Path(args.teldir),
            sname=args.sname,
            tstart=tstart,
            tend=tend,
            dt=args.dt,
            output_dir=Path(args.output_dir) if args.output_dir else None,
        )
        run_pipeline(
            request,
            recompute_from_stage=args.recompute_from,
            stop_after_stage=args.stop_after,
            dry_run=dry_run,
            logger=log,
            invalidate_beyond_stop_after=args.invalidate_beyond_stop_after,
        )
    except (RuntimeError, ValueError, OSError) as exc:
        log.error("%s", exc)
        return 1
    return 0


__all__ = [
    "PipelineRunPlan",
    "PipelineRunResult",
    "build_plan",
    "print_plan",
    "run_pipeline",
]


if __name__ == "__main__":
    raise SystemExit(_main())
