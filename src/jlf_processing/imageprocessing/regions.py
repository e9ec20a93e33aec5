"""
Neighborhood and region helpers for patch-based label fusion.

Offset lists are enumerated lexicographically over (z, y, x) with the last
axis varying fastest. The ordering is part of the numerical contract: the
patch matcher breaks ties by evaluation order.

History:
---------
- **2025/06**: Added region partitioning with write-footprint padding.
- **2025/05**: Initial commit.
"""

import itertools
from typing import List, Sequence, Tuple, Union

import numpy as np

Region = Tuple[Tuple[int, int, int], Tuple[int, int, int]]


def normalize_radius(
    radius: Union[int, Sequence[int]],
    ndim: int
) -> Tuple[int, int, int]:
    """Expand a scalar or per-axis radius to a (z, y, x) triple.

    Parameters
    ----------
    radius: int or Sequence[int]
        isotropic radius, or one radius per image axis
    ndim: int
        dimensionality of the input images (2 or 3)

    Returns
    -------
    radius_zyx: Tuple[int, int, int]
        radius per axis. 2D images get a zero radius along z.
    """

    if ndim not in (2, 3):
        raise ValueError(f"Images must be 2D or 3D, got ndim={ndim}.")

    if np.ndim(radius) == 0:
        values = [int(radius)] * ndim
    else:
        values = [int(r) for r in radius]
        if len(values) != ndim:
            raise ValueError(
                f"Radius {tuple(radius)} does not match image dimension {ndim}."
            )

    if any(r < 0 for r in values):
        raise ValueError(f"Radius must be non-negative, got {tuple(values)}.")

    if ndim == 2:
        values = [0] + values

    return tuple(values)


def neighborhood_offsets(radius: Sequence[int]) -> np.ndarray:
    """Flat, ordered list of integer offsets covering a box neighborhood.

    Parameters
    ----------
    radius: Sequence[int]
        (rz, ry, rx) radius

    Returns
    -------
    offsets: np.ndarray
        int64 array of shape (n, 3), lexicographic with x fastest
    """

    ranges = [range(-int(r), int(r) + 1) for r in radius]
    offsets = np.array(list(itertools.product(*ranges)), dtype=np.int64)

    return offsets.reshape(-1, 3)


def zero_offset_index(offsets: np.ndarray) -> int:
    """Index of the (0, 0, 0) offset inside an offset list."""

    hits = np.flatnonzero(np.all(offsets == 0, axis=1))
    if hits.size == 0:
        raise ValueError("Offset list does not contain the zero offset.")
    return int(hits[0])


def split_regions(shape: Sequence[int], n_regions: int) -> List[Region]:
    """Split a (z, y, x) domain into disjoint slabs along its longest axis.

    Parameters
    ----------
    shape: Sequence[int]
        domain shape (z, y, x)
    n_regions: int
        requested number of regions. Fewer are returned when the longest
        axis is shorter than the request.

    Returns
    -------
    regions: List[Region]
        list of ((z0, y0, x0), (z1, y1, x1)) half-open boxes covering the
        domain exactly once
    """

    shape = tuple(int(s) for s in shape)
    if n_regions < 1:
        raise ValueError("n_regions must be >= 1.")
    if any(s == 0 for s in shape):
        return []

    axis = int(np.argmax(shape))
    n_regions = min(n_regions, shape[axis])
    edges = np.linspace(0, shape[axis], n_regions + 1).round().astype(int)

    regions = []
    for lo, hi in zip(edges[:-1], edges[1:]):
        if hi <= lo:
            continue
        start = [0, 0, 0]
        stop = list(shape)
        start[axis] = int(lo)
        stop[axis] = int(hi)
        regions.append((tuple(start), tuple(stop)))

    return regions


def pad_region(
    region: Region,
    radius: Sequence[int],
    shape: Sequence[int]
) -> Region:
    """Grow a region by `radius` on every side, cropped to the domain.

    This is the write footprint of all centre voxels inside `region`.
    """

    start, stop = region
    padded_start = tuple(max(0, int(s) - int(r)) for s, r in zip(start, radius))
    padded_stop = tuple(
        min(int(n), int(s) + int(r)) for s, r, n in zip(stop, radius, shape)
    )
    return padded_start, padded_stop


def region_size(region: Region) -> int:
    """Number of voxels inside a region."""

    start, stop = region
    return int(np.prod([max(0, b - a) for a, b in zip(start, stop)]))
