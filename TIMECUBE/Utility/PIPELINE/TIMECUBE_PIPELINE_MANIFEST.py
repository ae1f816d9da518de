"""
TIMECUBE_PIPELINE_MANIFEST
==========================

Declarative description of the TIMECUBE pipeline.

For every stage this module records:
  - the entrypoint (module + function), imported lazily via importlib when
    the manager actually runs the stage,
  - the owned output files, as templates relative to the output directory
    (``{run_name}`` is substituted per run),
  - the path keyword arguments the manager passes to the entrypoint,
  - a description for the dry-run plan.

Recompute is deletion-driven: invalidating a stage deletes only its owned
output files, never directories.

Note the word "manifest" has two meanings in TIMECUBE: this module is the
*pipeline* manifest; the MANIFEST stage writes the *resample* manifest
(``<run_name>.resample.txt``) consumed by the CUBE stage.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from TIMECUBE.Configuration.TIMECUBE_PATH_CONFIG import resolve_output_dir
from TIMECUBE.Configuration.TIMECUBE_RESAMPLE_CONFIG import IMAGE_SUFFIX, MANIFEST_SUFFIX
from TIMECUBE.Utility.MANIFEST.TIMECUBE_TIME_PARSING import format_ut
from TIMECUBE.Utility.PIPELINE.TIMECUBE_PIPELINE_STAGES import (
    STAGE_INDEX,
    STAGE_ORDER,
    Stage,
    StageLike,
    parse_stage,
)


MANIFEST_TEMPLATE: str = "{run_name}" + MANIFEST_SUFFIX
CUBE_TEMPLATE: str = "{run_name}" + IMAGE_SUFFIX


# -----------------------------------------------------------------------------
# Data model
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class RunRequest:
    """
    One resampling run.

    Attributes
    ----------
    teldir : Path
        Telescope data directory (contains YYYYMMDD/ folders).
    sname : str
        Sensor/stream name.
    tstart, tend : float
        Grid start/end [unix s].
    dt : float
        Bin width [s].
    output_dir : Path, optional
        Where the run's products go. None -> TIMECUBE_OUTPUT_DIR.
    """

    teldir: Path
    sname: str
    tstart: float
    tend: float
    dt: float
    output_dir: Optional[Path] = None

    @property
    def run_name(self) -> str:
        """``<sname>_<UT start>``, e.g. ``cam0_UT20240613T12:10:00.000``."""
        return f"{self.sname}_{format_ut(self.tstart)}"

    def resolved_output_dir(self) -> Path:
        return resolve_output_dir(self.output_dir)

    def stage_kwargs(self) -> Dict[str, Any]:
        """Run parameters offered to every stage entrypoint."""
        return {
            "teldir": Path(self.teldir),
            "sname": self.sname,
            "tstart": float(self.tstart),
            "tend": float(self.tend),
            "dt": float(self.dt),
        }


@dataclass(frozen=True)
class EntrypointSpec:
    """Module path and callable name executing a stage."""

    module: str
    function: str


@dataclass(frozen=True)
class StageSpec:
    """
    Declarative stage specification.

    Attributes
    ----------
    stage : Stage
    description : str
        Shown in the dry-run plan.
    entrypoint : EntrypointSpec
    owned_outputs_rel : tuple[str, ...]
        Output file templates relative to the output directory. These are
        the ONLY files the manager deletes when the stage is invalidated.
    path_kwargs : dict[str, str]
        Entrypoint keyword -> file template; resolved to absolute paths.
    extra_kwargs : dict[str, Any]
        Fixed keyword arguments passed on every call.
    """

    stage: Stage
    description: str
    entrypoint: EntrypointSpec
    owned_outputs_rel: Tuple[str, ...]
    path_kwargs: Mapping[str, str] = field(default_factory=dict)
    extra_kwargs: Mapping[str, Any] = field(default_factory=dict)


# -----------------------------------------------------------------------------
# Canonical pipeline
# -----------------------------------------------------------------------------
_MANIFEST: Tuple[StageSpec, ...] = (
    StageSpec(
        stage=Stage.MANIFEST,
        description="Scan timestamp files and write the resample manifest.",
        entrypoint=EntrypointSpec(
            module="TIMECUBE.Utility.MANIFEST.TIMECUBE_MANIFEST_BUILDER",
            function="generate_manifest",
        ),
        owned_outputs_rel=(MANIFEST_TEMPLATE,),
        path_kwargs={"output_path": MANIFEST_TEMPLATE},
    ),
    StageSpec(
        stage=Stage.CUBE,
        description="Apply the resample manifest and write the time-binned FITS cube.",
        entrypoint=EntrypointSpec(
            module="TIMECUBE.Utility.RESAMPLE.TIMECUBE_APPLY_TIMESTAMPS",
            function="build_cube",
        ),
        owned_outputs_rel=(CUBE_TEMPLATE,),
        path_kwargs={"manifest_path": MANIFEST_TEMPLATE, "output_path": CUBE_TEMPLATE},
    ),
)

_MANIFEST_BY_STAGE: Dict[Stage, StageSpec] = {spec.stage: spec for spec in _MANIFEST}


def _validate_manifest() -> None:
    missing = set(STAGE_ORDER) - set(_MANIFEST_BY_STAGE)
    extra = set(_MANIFEST_BY_STAGE) - set(STAGE_ORDER)
    if missing or extra:
        raise RuntimeError(
            "TIMECUBE_PIPELINE_MANIFEST: Stage coverage mismatch. "
            f"Missing={sorted(s.value for s in missing)} Extra={sorted(s.value for s in extra)}"
        )
    for s in STAGE_ORDER:
        if not _MANIFEST_BY_STAGE[s].owned_outputs_rel:
            raise RuntimeError(f"TIMECUBE_PIPELINE_MANIFEST: Stage '{s.value}' has no owned outputs.")


_validate_manifest()


# -----------------------------------------------------------------------------
# Helpers used by the pipeline manager
# -----------------------------------------------------------------------------
def get_stage_spec(stage: StageLike) -> StageSpec:
    return _MANIFEST_BY_STAGE[parse_stage(stage)]


def render_template(template: str, run_name: str, output_dir: Union[str, Path]) -> Path:
    """Absolute path of an output template for one run."""
    return Path(output_dir) / template.format(run_name=run_name)


def resolve_owned_output_paths(stage: StageLike, request: RunRequest) -> Tuple[Path, ...]:
    """Owned output files of one stage for `request`."""
    base = request.resolved_output_dir()
    spec = get_stage_spec(stage)
    return tuple(render_template(rel, request.run_name, base) for rel in spec.owned_outputs_rel)


def resolve_owned_output_paths_for_stages(
    stages: Iterable[StageLike],
    request: RunRequest,
) -> List[Path]:
    """
    Owned outputs of several stages, in stage order, without duplicates.
    """
    stage_list = sorted((parse_stage(s) for s in stages), key=lambda st: STAGE_INDEX[st])
    seen = set()
    out: List[Path] = []
    for st in stage_list:
        for p in resolve_owned_output_paths(st, request):
            if p not in seen:
                seen.add(p)
                out.append(p)
    return out


def resolve_stage_kwargs(stage: StageLike, request: RunRequest) -> Dict[str, Any]:
    """Keyword arguments offered to a stage entrypoint for `request`."""
    spec = get_stage_spec(stage)
    base = request.resolved_output_dir()
    kwargs = request.stage_kwargs()
    for key, template in spec.path_kwargs.items():
        kwargs[key] = render_template(template, request.run_name, base)
    kwargs.update(dict(spec.extra_kwargs))
    return kwargs


def load_entrypoint(spec: EntrypointSpec) -> Callable[..., Any]:
    """
    Import and return the callable described by `spec`.

    Raises
    ------
    ImportError, AttributeError
        Module or function not found.
    TypeError
        The attribute is not callable.
    """
    module = importlib.import_module(spec.module)
    fn = getattr(module, spec.function)
    if not callable(fn):
        raise TypeError(
            f"Entrypoint '{spec.module}.{spec.function}' resolved to a non-callable "
            f"object of type {type(fn)}."
        )
    return fn


def load_stage_callable(stage: StageLike) -> Callable[..., Any]:
    return load_entrypoint(get_stage_spec(stage).entrypoint)


__all__ = [
    "MANIFEST_TEMPLATE",
    "CUBE_TEMPLATE",
    "RunRequest",
    "EntrypointSpec",
    "StageSpec",
    "get_stage_spec",
    "render_template",
    "resolve_owned_output_paths",
    "resolve_owned_output_paths_for_stages",
    "resolve_stage_kwargs",
    "load_entrypoint",
    "load_stage_callable",
]
