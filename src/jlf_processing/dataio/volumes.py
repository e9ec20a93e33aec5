"""
Volume I/O for joint label fusion.

Medical volumes are read and written with SimpleITK. Arrays follow the
SimpleITK numpy convention (z, y, x) and outputs inherit the geometry
(origin, spacing, direction) of a reference image.

History:
---------
- **2025/05**: Initial commit.
"""

from pathlib import Path
from typing import Sequence, Tuple, Union

import numpy as np
import SimpleITK as sitk


def read_volume(path: Union[str, Path]) -> Tuple[np.ndarray, sitk.Image]:
    """Read a volume from disk.

    Parameters
    ----------
    path: Union[str, Path]
        any format SimpleITK can read (NIfTI, NRRD, MHA, ...)

    Returns
    -------
    data: np.ndarray
        voxel data in (z, y, x) order
    image: sitk.Image
        image carrying the physical geometry
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Volume not found: {path}")

    image = sitk.ReadImage(str(path))
    data = sitk.GetArrayFromImage(image)

    return data, image


def read_volumes(paths: Sequence[Union[str, Path]]) -> Tuple[list, sitk.Image]:
    """Read several volumes that must share the grid of the first one.

    Returns
    -------
    data: list of np.ndarray
        voxel data per path
    reference: sitk.Image
        image of the first path
    """

    volumes = []
    reference = None
    for path in paths:
        data, image = read_volume(path)
        if reference is None:
            reference = image
        else:
            check_same_grid(reference, image, path)
        volumes.append(data)

    return volumes, reference


def check_same_grid(
    reference: sitk.Image,
    image: sitk.Image,
    name: Union[str, Path] = "image",
    tolerance: float = 1e-4
) -> None:
    """Raise if `image` is not sampled on the grid of `reference`.

    Atlases are expected to be registered and resampled to the target, so a
    mismatch in size, spacing or origin is a configuration error.
    """

    if image.GetSize() != reference.GetSize():
        raise ValueError(
            f"{name} has size {image.GetSize()}, expected {reference.GetSize()}."
        )
    if not np.allclose(image.GetSpacing(), reference.GetSpacing(), atol=tolerance):
        raise ValueError(
            f"{name} has spacing {image.GetSpacing()}, expected {reference.GetSpacing()}."
        )
    if not np.allclose(image.GetOrigin(), reference.GetOrigin(), atol=tolerance):
        raise ValueError(
            f"{name} has origin {image.GetOrigin()}, expected {reference.GetOrigin()}."
        )


def write_volume(
    data: np.ndarray,
    reference: sitk.Image,
    path: Union[str, Path]
) -> Path:
    """Write an array with the geometry of `reference`.

    Parameters
    ----------
    data: np.ndarray
        voxel data in (z, y, x) order, same grid as `reference`
    reference: sitk.Image
        source of origin, spacing and direction
    path: Union[str, Path]
        output file

    Returns
    -------
    path: Path
        written file
    """

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    image = sitk.GetImageFromArray(np.ascontiguousarray(data))
    image.CopyInformation(reference)
    sitk.WriteImage(image, str(path))

    return path
