"""
TIMECUBE_PATH_CONFIG.py

Filesystem locations for the TIMECUBE resampling tools.

This module is pure configuration: it defines where TIMECUBE writes its
pipeline products (manifests and cubes) and nothing else.  Utilities
import these constants instead of hard-coding paths.

Override
--------
Set the environment variable ``TIMECUBE_OUTPUT_DIR`` to redirect all
pipeline outputs (useful for batch runs and tests).
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Union


# ---------------------------------------------------------------------------
# Output directory
# ---------------------------------------------------------------------------

# Environment variable consulted for an output directory override.
TIMECUBE_OUTPUT_ENV_VAR: str = "TIMECUBE_OUTPUT_DIR"

# Default output location when no override is given: ./TIMECUBE_OUTPUT
# relative to the current working directory (outputs belong to the run,
# not to the installed package).
_DEFAULT_OUTPUT_DIR: Path = Path.cwd() / "TIMECUBE_OUTPUT"

TIMECUBE_OUTPUT_DIR: Path = Path(
    os.environ.get(TIMECUBE_OUTPUT_ENV_VAR, str(_DEFAULT_OUTPUT_DIR))
).expanduser()


def resolve_output_dir(output_dir: Optional[Union[str, Path]] = None) -> Path:
    """Return `output_dir` if given, else TIMECUBE_OUTPUT_DIR, as an absolute Path."""
    base = Path(output_dir) if output_dir is not None else TIMECUBE_OUTPUT_DIR
    return base.expanduser().resolve()


__all__ = [
    "TIMECUBE_OUTPUT_ENV_VAR",
    "TIMECUBE_OUTPUT_DIR",
    "resolve_output_dir",
]
