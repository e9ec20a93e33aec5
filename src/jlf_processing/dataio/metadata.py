"""
Run metadata for joint label fusion.

A JSON sidecar records the parameters, the label set and the written files
of a fusion run so outputs can be traced back to their inputs.

History:
---------
- **2025/06**: Initial commit.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from jlf_processing import __version__


def parse_label_exclusion(value: str) -> tuple[int, Path]:
    """Parse a `LABEL:path` exclusion argument.

    Parameters
    ----------
    value : str
        e.g. "3:/data/exclude_label3.nii.gz"

    Returns
    -------
    label : int
    path : Path
    """

    label, sep, path = value.partition(":")
    if not sep or not path:
        raise ValueError(f"Exclusion must be LABEL:path, got '{value}'.")
    try:
        label_value = int(label)
    except ValueError as exc:
        raise ValueError(f"Exclusion label must be an integer, got '{label}'.") from exc

    return label_value, Path(path)


def parse_radius(value: str) -> int | tuple[int, ...]:
    """Parse a radius given as `2` or `2x2x1`.

    The per-axis form follows the image axis order (z, y, x).
    """

    parts = value.lower().split("x")
    try:
        values = tuple(int(p) for p in parts)
    except ValueError as exc:
        raise ValueError(f"Radius must be integers separated by 'x', got '{value}'.") from exc
    if any(v < 0 for v in values):
        raise ValueError(f"Radius must be non-negative, got '{value}'.")

    return values[0] if len(values) == 1 else values


def _to_builtin(value: Any) -> Any:
    """Convert numpy scalars and paths to JSON-friendly types."""

    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _to_builtin(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_builtin(v) for v in value]
    if hasattr(value, "item"):
        return value.item()
    return value


def write_fusion_metadata(
    path: Path | str,
    parameters: dict,
    labels: list,
    outputs: dict,
) -> Path:
    """Write the JSON sidecar of a fusion run.

    Parameters
    ----------
    path : Path | str
        output JSON file
    parameters : dict
        fusion parameters
    labels : list
        label set of the run
    outputs : dict
        output name -> written path

    Returns
    -------
    path : Path
    """

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    metadata = {
        "version": __version__,
        "created": datetime.now(timezone.utc).isoformat(),
        "parameters": _to_builtin(parameters),
        "labels": _to_builtin(list(labels)),
        "outputs": _to_builtin(outputs),
    }
    with open(path, "w") as f:
        json.dump(metadata, f, indent=2)

    return path
