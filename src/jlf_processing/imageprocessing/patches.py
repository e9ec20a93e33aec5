"""
Patch vectorization and patch matching kernels.

A patch is the flattened neighborhood of a voxel, sampled with a fixed offset
list so every patch of a run has the same length. Samples that fall outside
the image contribute zero.

All kernels are numba-compiled without the GIL so they can be called from the
voting kernel running on a thread pool.

History:
---------
- **2025/06**: Streaming similarity, no per-candidate patch allocation.
- **2025/05**: Initial commit.
"""

import math

import numpy as np
from numba import njit


@njit(nogil=True, error_model="numpy")
def _is_inside(z: int, y: int, x: int, Z: int, Y: int, X: int) -> bool:
    return 0 <= z < Z and 0 <= y < Y and 0 <= x < X


@njit(nogil=True, error_model="numpy")
def normalize_patch(patch: np.ndarray) -> np.ndarray:
    """
    Z-score a patch vector in place.

    The standard deviation is Bessel corrected and floored at 1.0 so that
    near-constant patches are not amplified. A single-sample patch has a
    standard deviation of 0, which is floored as well.

    Parameters
    ----------
    patch : float64[n]
        Patch vector, modified in place.

    Returns
    -------
    patch : float64[n]
        The same array, normalized.
    """
    n = patch.shape[0]
    if n == 0:
        return patch

    total = 0.0
    total_sq = 0.0
    for i in range(n):
        total += patch[i]
        total_sq += patch[i] * patch[i]
    mean = total / n

    std = 0.0
    if n > 1:
        variance = (total_sq - n * mean * mean) / (n - 1.0)
        if variance > 0.0:
            std = math.sqrt(variance)
    if not std >= 1.0:
        std = 1.0

    for i in range(n):
        patch[i] = (patch[i] - mean) / std
    return patch


@njit(nogil=True, error_model="numpy")
def vectorize_patch(
    image: np.ndarray,
    center,
    offsets: np.ndarray,
    normalize: bool,
) -> np.ndarray:
    """
    Sample one image around `center`.

    Parameters
    ----------
    image : (Z, Y, X) array
        Intensity volume.
    center : tuple of int
        (z, y, x) centre voxel.
    offsets : int64[P, 3]
        Patch offset list.
    normalize : bool
        If True, z-score the patch.

    Returns
    -------
    patch : float64[P]
    """
    Z, Y, X = image.shape
    n = offsets.shape[0]
    patch = np.zeros(n, dtype=np.float64)
    for i in range(n):
        z = center[0] + offsets[i, 0]
        y = center[1] + offsets[i, 1]
        x = center[2] + offsets[i, 2]
        if _is_inside(z, y, x, Z, Y, X):
            patch[i] = image[z, y, x]
    if normalize:
        normalize_patch(patch)
    return patch


@njit(nogil=True, error_model="numpy")
def vectorize_patch_list(
    images: np.ndarray,
    center,
    offsets: np.ndarray,
    normalize: bool,
) -> np.ndarray:
    """
    Sample every channel of a co-registered image list around `center`.

    Channel blocks are concatenated in channel order and, when requested,
    normalized independently.

    Parameters
    ----------
    images : (C, Z, Y, X) array
        Channel stack.
    center : tuple of int
        (z, y, x) centre voxel.
    offsets : int64[P, 3]
        Patch offset list.
    normalize : bool
        If True, z-score each channel block.

    Returns
    -------
    patch : float64[C * P]
    """
    n_channels = images.shape[0]
    n = offsets.shape[0]
    patch = np.zeros(n_channels * n, dtype=np.float64)
    for c in range(n_channels):
        block = vectorize_patch(images[c], center, offsets, normalize)
        for j in range(n):
            patch[c * n + j] = block[j]
    return patch


@njit(nogil=True, error_model="numpy")
def patch_similarity(
    images: np.ndarray,
    center,
    offsets: np.ndarray,
    normalized_target: np.ndarray,
    n_channels: int,
    use_pearson: bool,
) -> float:
    """
    Dissimilarity between a raw atlas patch and a normalized target patch.

    Sums are streamed over the first `n_channels` channels of `images`
    without building the atlas patch vector. Lower is better.

    Parameters
    ----------
    images : (C, Z, Y, X) array
        Atlas channel stack.
    center : tuple of int
        Candidate centre voxel.
    offsets : int64[P, 3]
        Patch offset list.
    normalized_target : float64[n_channels * P]
        Normalized target patch.
    n_channels : int
        Number of atlas channels compared.
    use_pearson : bool
        If True, return the negated Pearson correlation.

    Returns
    -------
    score : float
    """
    Z = images.shape[1]
    Y = images.shape[2]
    X = images.shape[3]
    n = offsets.shape[0]

    sum_x = 0.0
    sum_y = 0.0
    sum_xx = 0.0
    sum_yy = 0.0
    sum_xy = 0.0

    count = 0
    for c in range(n_channels):
        for j in range(n):
            z = center[0] + offsets[j, 0]
            y = center[1] + offsets[j, 1]
            x = center[2] + offsets[j, 2]
            xv = 0.0
            if _is_inside(z, y, x, Z, Y, X):
                xv = images[c, z, y, x]
            yv = normalized_target[count]
            count += 1

            sum_x += xv
            sum_y += yv
            sum_xx += xv * xv
            sum_yy += yv * yv
            sum_xy += xv * yv

    N = float(normalized_target.shape[0])

    if use_pearson:
        mean_x = sum_x / N
        mean_y = sum_y / N
        numerator = sum_xy - N * mean_x * mean_y
        denominator = math.sqrt(sum_xx - N * mean_x * mean_x) * math.sqrt(
            sum_yy - N * mean_y * mean_y
        )
        return -(numerator / denominator)

    variance_x = sum_xx - sum_x * sum_x / N
    if variance_x < 1.0e-6:
        variance_x = 1.0e-6
    measure = sum_xy * sum_xy / variance_x
    if sum_xy > 0.0:
        return -measure
    return measure


@njit(nogil=True, error_model="numpy")
def find_best_offset(
    images: np.ndarray,
    center,
    normalized_target: np.ndarray,
    use_only_first_channel: bool,
    search_offsets: np.ndarray,
    patch_offsets: np.ndarray,
    zero_index: int,
    use_pearson: bool,
) -> int:
    """
    Search the neighborhood of `center` for the best matching atlas patch.

    The zero offset is evaluated first, then every other search offset in
    list order. A candidate replaces the current best only with a strictly
    lower, finite score, so ties go to the earliest evaluated offset.
    Candidate centres outside the image are skipped.

    Parameters
    ----------
    images : (C, Z, Y, X) array
        Atlas channel stack.
    center : tuple of int
        Target centre voxel.
    normalized_target : float64[T * P]
        Normalized target patch.
    use_only_first_channel : bool
        Compare against the first atlas channel only (single target channel).
    search_offsets : int64[K, 3]
        Search offset list.
    patch_offsets : int64[P, 3]
        Patch offset list.
    zero_index : int
        Index of the zero offset in `search_offsets`.
    use_pearson : bool
        Similarity selector.

    Returns
    -------
    best_index : int
        Index into `search_offsets`.
    """
    Z = images.shape[1]
    Y = images.shape[2]
    X = images.shape[3]
    n_channels = images.shape[0]
    if use_only_first_channel:
        n_channels = 1

    best_index = zero_index
    best_score = patch_similarity(
        images, center, patch_offsets, normalized_target, n_channels, use_pearson
    )
    if not np.isfinite(best_score):
        best_score = np.inf

    for j in range(search_offsets.shape[0]):
        if j == zero_index:
            continue
        z = center[0] + search_offsets[j, 0]
        y = center[1] + search_offsets[j, 1]
        x = center[2] + search_offsets[j, 2]
        if not _is_inside(z, y, x, Z, Y, X):
            continue
        score = patch_similarity(
            images, (z, y, x), patch_offsets, normalized_target, n_channels, use_pearson
        )
        if np.isfinite(score) and score < best_score:
            best_score = score
            best_index = j

    return best_index
