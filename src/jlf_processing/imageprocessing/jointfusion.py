"""
Patch-based joint label fusion and joint intensity fusion.

This module implements a class with Numba-accelerated kernels that fuse a
set of co-registered atlases (intensity channels plus optional label
volumes) onto a target image. Every target voxel searches each atlas for its
best matching patch, solves for locally optimal atlas weights, and scatters
weighted intensities and label votes over its whole patch footprint.

Footprints of neighboring voxels overlap, so the volume is split into
regions, each region votes into private accumulators padded by the patch
radius, and the partial accumulators are summed after all workers are done.

History:
---------
- **2025/06**: Private per-region accumulators and reduction pass.
- **2025/05**: Initial commit.
"""

import timeit
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from numba import njit, prange
from tqdm import tqdm

from jlf_processing.imageprocessing.patches import (
    find_best_offset,
    vectorize_patch,
    vectorize_patch_list,
)
from jlf_processing.imageprocessing.regions import (
    Region,
    neighborhood_offsets,
    normalize_radius,
    pad_region,
    region_size,
    split_regions,
    zero_offset_index,
)
from jlf_processing.imageprocessing.weights import solve_atlas_weights

ArrayOrList = Union[np.ndarray, Sequence[np.ndarray]]

NNLS_TOLERANCE = 1.0e-6
WEIGHT_SUM_THRESHOLD = 0.1


@njit(nogil=True, error_model="numpy")
def _vote_region(
    target: np.ndarray,
    atlases: np.ndarray,
    segmentations: np.ndarray,
    mask: np.ndarray,
    labels: np.ndarray,
    patch_offsets: np.ndarray,
    search_offsets: np.ndarray,
    zero_index: int,
    alpha: float,
    beta: float,
    use_pearson: bool,
    constrain_nonnegative: bool,
    tolerance: float,
    start: np.ndarray,
    stop: np.ndarray,
    origin: np.ndarray,
    joint_intensity: np.ndarray,
    count: np.ndarray,
    posteriors: np.ndarray,
    weight_sum: np.ndarray,
    voting_weights: np.ndarray,
) -> None:
    """
    Vote every centre voxel of one region into region-local accumulators.

    Parameters
    ----------
    target : float64[T, Z, Y, X]
        Target channels.
    atlases : float64[A, M, Z, Y, X]
        Atlas channels.
    segmentations : int64[S, Z, Y, X]
        Atlas labels, S == A or S == 0.
    mask : bool[Z, Y, X]
        Voxels to process.
    labels : int64[L]
        Sorted label set.
    patch_offsets, search_offsets : int64[P, 3], int64[K, 3]
        Offset lists.
    zero_index : int
        Index of the zero offset in `search_offsets`.
    alpha, beta : float
        Weight solver parameters.
    use_pearson, constrain_nonnegative : bool
        Similarity and solver selectors.
    tolerance : float
        NNLS tolerance.
    start, stop : int64[3]
        Half-open box of centre voxels.
    origin : int64[3]
        Global position of element (0, 0, 0) of the local accumulators.
    joint_intensity : float64[M, bz, by, bx]
    count : int64[bz, by, bx]
    posteriors : float64[L, bz, by, bx]
    weight_sum : float64[bz, by, bx]
    voting_weights : float64[A or 0, bz, by, bx]
        Local accumulators, updated in place.
    """
    n_targets = target.shape[0]
    n_atlases = atlases.shape[0]
    n_modalities = atlases.shape[1]
    n_segmentations = segmentations.shape[0]
    n_labels = labels.shape[0]
    retain_votes = voting_weights.shape[0] > 0
    Z, Y, X = mask.shape
    P = patch_offsets.shape[0]
    use_only_first = n_targets != n_modalities

    differences = np.zeros((n_atlases, P * n_targets), dtype=np.float64)
    intensities = np.zeros((n_atlases, P * n_modalities), dtype=np.float64)
    best = np.zeros(n_atlases, dtype=np.int64)

    for cz in range(start[0], stop[0]):
        for cy in range(start[1], stop[1]):
            for cx in range(start[2], stop[2]):
                if not mask[cz, cy, cx]:
                    continue

                if n_segmentations > 0:
                    labelled = False
                    for i in range(n_segmentations):
                        if segmentations[i, cz, cy, cx] != 0:
                            labelled = True
                            break
                    if not labelled:
                        continue

                center = (cz, cy, cx)
                target_patch = vectorize_patch_list(target, center, patch_offsets, True)

                # best matching patch in every atlas
                for i in range(n_atlases):
                    j = find_best_offset(
                        atlases[i], center, target_patch, use_only_first,
                        search_offsets, patch_offsets, zero_index, use_pearson
                    )
                    best[i] = j
                    match = (
                        cz + search_offsets[j, 0],
                        cy + search_offsets[j, 1],
                        cx + search_offsets[j, 2],
                    )

                    if use_only_first:
                        atlas_patch = vectorize_patch(atlases[i, 0], match, patch_offsets, True)
                    else:
                        atlas_patch = vectorize_patch_list(atlases[i], match, patch_offsets, True)
                    for k in range(atlas_patch.shape[0]):
                        differences[i, k] = abs(atlas_patch[k] - target_patch[k])

                    raw_patch = vectorize_patch_list(atlases[i], match, patch_offsets, False)
                    for k in range(raw_patch.shape[0]):
                        intensities[i, k] = raw_patch[k]

                W = solve_atlas_weights(
                    differences, P, alpha, beta, constrain_nonnegative, tolerance
                )

                # joint intensity fusion
                for c in range(n_modalities):
                    for j in range(P):
                        z = cz + patch_offsets[j, 0]
                        y = cy + patch_offsets[j, 1]
                        x = cx + patch_offsets[j, 2]
                        if not (0 <= z < Z and 0 <= y < Y and 0 <= x < X):
                            continue
                        if not mask[z, y, x]:
                            continue

                        estimate = 0.0
                        for i in range(n_atlases):
                            estimate += W[i] * intensities[i, c * P + j]

                        lz = z - origin[0]
                        ly = y - origin[1]
                        lx = x - origin[2]
                        value = joint_intensity[c, lz, ly, lx] + estimate
                        if not np.isfinite(value):
                            value = 0.0
                        joint_intensity[c, lz, ly, lx] = value
                        if c == 0:
                            count[lz, ly, lx] += 1

                if n_segmentations == 0:
                    continue

                # label voting, each atlas keeps its matched displacement
                for j in range(P):
                    z = cz + patch_offsets[j, 0]
                    y = cy + patch_offsets[j, 1]
                    x = cx + patch_offsets[j, 2]
                    if not (0 <= z < Z and 0 <= y < Y and 0 <= x < X):
                        continue
                    lz = z - origin[0]
                    ly = y - origin[1]
                    lx = x - origin[2]

                    for i in range(n_segmentations):
                        sz = z + search_offsets[best[i], 0]
                        sy = y + search_offsets[best[i], 1]
                        sx = x + search_offsets[best[i], 2]
                        if not (0 <= sz < Z and 0 <= sy < Y and 0 <= sx < X):
                            continue

                        label = segmentations[i, sz, sy, sx]
                        li = np.searchsorted(labels, label)
                        if li >= n_labels or labels[li] != label:
                            continue

                        posteriors[li, lz, ly, lx] += W[i]
                        weight_sum[lz, ly, lx] += W[i]
                        if retain_votes:
                            voting_weights[i, lz, ly, lx] += W[i]


@njit(parallel=True)
def _decide_labels(
    posteriors: np.ndarray,
    labels: np.ndarray,
    mask: np.ndarray,
    exclusions: np.ndarray,
    exclusion_slots: np.ndarray,
    out: np.ndarray,
) -> None:
    """
    Pick the label with the largest posterior at every masked voxel.

    Parameters
    ----------
    posteriors : float64[L, Z, Y, X]
        Accumulated label votes.
    labels : int64[L]
        Label value of each posterior volume.
    mask : bool[Z, Y, X]
        Voxels to label. Others get 0.
    exclusions : uint8[E, Z, Y, X]
        Non-zero where a label may not win.
    exclusion_slots : int64[L]
        Exclusion volume of each label, -1 for none.
    out : int64[Z, Y, X]
        Label map, written in place.
    """
    Z, Y, X = mask.shape
    n_labels = labels.shape[0]
    total = Z * Y

    for idx in prange(total):
        z = idx // Y
        y = idx % Y
        for x in range(X):
            winner = 0
            if mask[z, y, x]:
                best = 0.0
                for li in range(n_labels):
                    slot = exclusion_slots[li]
                    if slot >= 0 and exclusions[slot, z, y, x] != 0:
                        continue
                    value = posteriors[li, z, y, x]
                    if best < value:
                        best = value
                        winner = labels[li]
            out[z, y, x] = winner


@njit(parallel=True)
def _normalize_by_count(joint_intensity: np.ndarray, count: np.ndarray) -> None:
    """
    Average the joint intensity estimates in place.

    Parameters
    ----------
    joint_intensity : float64[M, Z, Y, X]
        Summed estimates.
    count : int64[Z, Y, X]
        Number of estimates per voxel. Zero-count voxels are left untouched.
    """
    C, Z, Y, X = joint_intensity.shape
    total = C * Z * Y

    for idx in prange(total):
        c = idx // (Z * Y)
        rem = idx % (Z * Y)
        z = rem // Y
        y = rem % Y
        for x in range(X):
            n = count[z, y, x]
            if n > 0:
                joint_intensity[c, z, y, x] = joint_intensity[c, z, y, x] / n


@njit(parallel=True)
def _normalize_by_weight_sum(
    maps: np.ndarray,
    weight_sum: np.ndarray,
    threshold: float,
) -> None:
    """
    Divide vote maps by the weight sum where it reaches `threshold`.

    Parameters
    ----------
    maps : float64[N, Z, Y, X]
        Posterior or voting weight maps, normalized in place.
    weight_sum : float64[Z, Y, X]
        Total voting weight per voxel.
    threshold : float
        Voxels with a smaller weight sum keep their raw values.
    """
    N, Z, Y, X = maps.shape
    total = Z * Y

    for idx in prange(total):
        z = idx // Y
        y = idx % Y
        for x in range(X):
            w_val = weight_sum[z, y, x]
            if w_val < threshold:
                continue
            for n in range(N):
                maps[n, z, y, x] = maps[n, z, y, x] / w_val


class RunContext:
    """
    State of a single fusion run.

    Created by `JointLabelFusion.prepare`. Inputs are promoted to 3D float64
    stacks, offsets and the label set are fixed, and the accumulators are
    zero. A context is consumed by `JointLabelFusion.run` and cannot be run
    twice.
    """

    def __init__(
        self,
        target: np.ndarray,
        atlases: np.ndarray,
        segmentations: np.ndarray,
        mask: np.ndarray,
        labels: np.ndarray,
        exclusions: np.ndarray,
        exclusion_slots: np.ndarray,
        patch_radius: Tuple[int, int, int],
        search_radius: Tuple[int, int, int],
        ndim: int,
        label_dtype: np.dtype,
        intensity_dtype: np.dtype,
        retain_atlas_voting_weights: bool,
    ):
        self.target = target
        self.atlases = atlases
        self.segmentations = segmentations
        self.mask = mask
        self.labels = labels
        self.label_index: Dict[int, int] = {
            int(label): idx for idx, label in enumerate(labels)
        }
        self.exclusions = exclusions
        self.exclusion_slots = exclusion_slots

        self.patch_radius = patch_radius
        self.search_radius = search_radius
        self.patch_offsets = neighborhood_offsets(patch_radius)
        self.search_offsets = neighborhood_offsets(search_radius)
        self.zero_index = zero_offset_index(self.search_offsets)

        self.ndim = ndim
        self.label_dtype = label_dtype
        self.intensity_dtype = intensity_dtype

        shape = mask.shape
        self.joint_intensity = np.zeros((atlases.shape[1],) + shape, dtype=np.float64)
        self.count = np.zeros(shape, dtype=np.int64)
        self.posteriors = np.zeros((labels.shape[0],) + shape, dtype=np.float64)
        self.weight_sum = np.zeros(shape, dtype=np.float64)
        n_votes = atlases.shape[0] if retain_atlas_voting_weights else 0
        self.voting_weights = np.zeros((n_votes,) + shape, dtype=np.float64)
        self.label_image: Optional[np.ndarray] = None

        self.consumed = False

    @property
    def shape(self) -> Tuple[int, int, int]:
        """
        Spatial shape (z, y, x) of the run.
        """
        return self.mask.shape

    @property
    def patch_size(self) -> int:
        return int(self.patch_offsets.shape[0])

    @property
    def number_of_atlases(self) -> int:
        return int(self.atlases.shape[0])

    @property
    def number_of_modalities(self) -> int:
        return int(self.atlases.shape[1])

    @property
    def number_of_segmentations(self) -> int:
        return int(self.segmentations.shape[0])


class FusionResult:
    """
    Outputs of a fusion run, in the dimensionality of the inputs.

    Attributes
    ----------
    label_image : ndarray
        Consensus labels (background 0 outside the mask).
    joint_intensity : list of ndarray
        Fused intensity estimate per atlas modality.
    labels : ndarray
        Label set of the run.
    label_posteriors : dict or None
        label -> posterior map, when retained.
    atlas_voting_weights : list of ndarray or None
        Per-atlas voting weight maps, when retained.
    weight_sum : ndarray
        Total voting weight per voxel.
    count : ndarray
        Number of joint intensity estimates per voxel.
    """

    def __init__(
        self,
        label_image: np.ndarray,
        joint_intensity: List[np.ndarray],
        labels: np.ndarray,
        label_posteriors: Optional[Dict[int, np.ndarray]],
        atlas_voting_weights: Optional[List[np.ndarray]],
        weight_sum: np.ndarray,
        count: np.ndarray,
    ):
        self.label_image = label_image
        self.joint_intensity = joint_intensity
        self.labels = labels
        self.label_posteriors = label_posteriors
        self.atlas_voting_weights = atlas_voting_weights
        self.weight_sum = weight_sum
        self.count = count


class JointLabelFusion:
    """
    Multi-atlas joint label fusion and joint intensity fusion.

    Parameters
    ----------
    target_images : ndarray or sequence of ndarray
        One target volume, or one per atlas modality. 2D or 3D.
    atlas_images : sequence
        One entry per atlas: a single volume or a sequence of modality
        volumes. Every atlas must have the same number of modalities.
    atlas_segmentations : sequence of ndarray, optional
        One label volume per atlas. Ignored unless there is exactly one per
        atlas, in which case only joint intensity fusion is performed.
    search_radius : int or tuple of int
        Radius of the patch search neighborhood.
    patch_radius : int or tuple of int
        Radius of the patch.
    alpha : float
        Regularization added to the diagonal of the similarity matrix.
    beta : float
        Exponent of the similarity matrix entries.
    use_pearson_correlation : bool
        Match patches with Pearson correlation instead of the default
        weighted cross-correlation measure.
    constrain_nonnegative : bool
        Solve for the weights with non-negative least squares.
    mask : ndarray, optional
        Only voxels equal to `mask_label` are processed.
    mask_label : int
        Inside value of `mask`.
    label_exclusions : mapping of int to ndarray, optional
        label -> volume, non-zero where that label must not be chosen.
    retain_label_posteriors : bool
        Keep the normalized label posterior maps.
    retain_atlas_voting_weights : bool
        Keep the normalized per-atlas voting weight maps.
    max_workers : int
        Number of worker threads.
    show_progress : bool
        Display a progress bar while voting.
    debug : bool
        If True, prints debug info.
    """

    def __init__(
        self,
        target_images: ArrayOrList,
        atlas_images: Sequence[ArrayOrList],
        atlas_segmentations: Optional[Sequence[np.ndarray]] = None,
        search_radius: Union[int, Sequence[int]] = 3,
        patch_radius: Union[int, Sequence[int]] = 2,
        alpha: float = 0.1,
        beta: float = 2.0,
        use_pearson_correlation: bool = False,
        constrain_nonnegative: bool = False,
        mask: Optional[np.ndarray] = None,
        mask_label: int = 1,
        label_exclusions: Optional[Mapping[int, np.ndarray]] = None,
        retain_label_posteriors: bool = False,
        retain_atlas_voting_weights: bool = False,
        max_workers: int = 8,
        show_progress: bool = True,
        debug: bool = False,
    ):
        self.target_images = self._as_channel_list(target_images)
        self.atlas_images = [self._as_channel_list(atlas) for atlas in atlas_images]
        self.atlas_segmentations = (
            [np.asarray(seg) for seg in atlas_segmentations]
            if atlas_segmentations is not None else []
        )
        self.mask = None if mask is None else np.asarray(mask)
        self.mask_label = mask_label
        self.label_exclusions = {
            int(label): np.asarray(volume)
            for label, volume in (label_exclusions or {}).items()
        }

        self.search_radius = search_radius
        self.patch_radius = patch_radius
        self.alpha = alpha
        self.beta = beta
        self.use_pearson_correlation = bool(use_pearson_correlation)
        self.constrain_nonnegative = bool(constrain_nonnegative)
        self.retain_label_posteriors = bool(retain_label_posteriors)
        self.retain_atlas_voting_weights = bool(retain_atlas_voting_weights)
        self.max_workers = max_workers
        self.show_progress = bool(show_progress)
        self._debug = bool(debug)

    @property
    def search_radius(self) -> Union[int, Tuple[int, ...]]:
        """
        Radius of the patch search neighborhood.
        """
        return self._search_radius

    @search_radius.setter
    def search_radius(self, radius: Union[int, Sequence[int]]):
        self._search_radius = self._check_radius(radius, "search_radius")

    @property
    def patch_radius(self) -> Union[int, Tuple[int, ...]]:
        """
        Radius of the patch neighborhood.
        """
        return self._patch_radius

    @patch_radius.setter
    def patch_radius(self, radius: Union[int, Sequence[int]]):
        self._patch_radius = self._check_radius(radius, "patch_radius")

    @property
    def alpha(self) -> float:
        """
        Ridge regularization weight.
        """
        return self._alpha

    @alpha.setter
    def alpha(self, value: float):
        if not np.isfinite(value):
            raise ValueError("alpha must be finite.")
        self._alpha = float(value)

    @property
    def beta(self) -> float:
        """
        Exponent of the similarity matrix entries.
        """
        return self._beta

    @beta.setter
    def beta(self, value: float):
        if not np.isfinite(value):
            raise ValueError("beta must be finite.")
        self._beta = float(value)

    @property
    def max_workers(self) -> int:
        """
        Number of voting worker threads.
        """
        return self._max_workers

    @max_workers.setter
    def max_workers(self, mw: int):
        if mw < 1:
            raise ValueError("max_workers must be >= 1.")
        self._max_workers = int(mw)

    @property
    def debug(self) -> bool:
        """
        Debug flag for verbose logging.
        """
        return self._debug

    @debug.setter
    def debug(self, flag: bool):
        self._debug = bool(flag)

    @staticmethod
    def _check_radius(radius, name: str):
        if np.ndim(radius) == 0:
            if int(radius) < 0:
                raise ValueError(f"{name} must be non-negative.")
            return int(radius)
        values = tuple(int(r) for r in radius)
        if any(r < 0 for r in values):
            raise ValueError(f"{name} must be non-negative.")
        return values

    @staticmethod
    def _as_channel_list(images: ArrayOrList) -> List[np.ndarray]:
        """
        Normalize a single volume or a sequence of volumes to a list.
        """
        if isinstance(images, np.ndarray):
            return [images]
        return [np.asarray(image) for image in images]

    @staticmethod
    def _as_volume(image: np.ndarray, ndim: int) -> np.ndarray:
        """
        View a 2D image as a single-slice 3D volume.
        """
        return image[np.newaxis] if ndim == 2 else image

    def prepare(self) -> RunContext:
        """
        Validate the configuration and allocate a fresh run context.

        Returns
        -------
        context : RunContext
            Inputs, offsets, label set and zeroed accumulators.

        Raises
        ------
        ValueError
            If the images are inconsistent with each other.
        """
        if len(self.target_images) == 0:
            raise ValueError("At least one target image is required.")
        if len(self.atlas_images) == 0:
            raise ValueError("At least one atlas is required.")

        reference = self.target_images[0]
        ndim = reference.ndim
        if ndim not in (2, 3):
            raise ValueError(f"Images must be 2D or 3D, got ndim={ndim}.")
        shape = reference.shape

        n_modalities = len(self.atlas_images[0])
        if n_modalities == 0:
            raise ValueError("Every atlas needs at least one modality.")
        if any(len(atlas) != n_modalities for atlas in self.atlas_images):
            raise ValueError("All atlases must have the same number of modalities.")

        n_targets = len(self.target_images)
        if n_targets != 1 and n_targets != n_modalities:
            raise ValueError(
                "The number of target images must be 1 or must be the number "
                "of atlas modalities."
            )

        def _check_shape(image: np.ndarray, what: str) -> None:
            if image.shape != shape:
                raise ValueError(
                    f"{what} has shape {image.shape}, target has shape {shape}."
                )

        for c, image in enumerate(self.target_images):
            _check_shape(image, f"Target image {c}")
        for a, atlas in enumerate(self.atlas_images):
            for m, image in enumerate(atlas):
                _check_shape(image, f"Atlas {a} modality {m}")

        segmentations = self.atlas_segmentations
        if len(segmentations) != len(self.atlas_images):
            if len(segmentations) > 0 and self._debug:
                print(
                    f"{len(segmentations)} segmentations for "
                    f"{len(self.atlas_images)} atlases, running joint intensity "
                    "fusion only."
                )
            segmentations = []
        for s, seg in enumerate(segmentations):
            _check_shape(seg, f"Atlas segmentation {s}")

        if self.mask is not None:
            _check_shape(self.mask, "Mask")
        for label, volume in self.label_exclusions.items():
            _check_shape(volume, f"Exclusion image for label {label}")

        patch_radius = normalize_radius(self._patch_radius, ndim)
        search_radius = normalize_radius(self._search_radius, ndim)

        spatial = (1,) + tuple(shape) if ndim == 2 else tuple(shape)

        target = np.ascontiguousarray(
            np.stack([self._as_volume(im, ndim) for im in self.target_images]),
            dtype=np.float64,
        )
        atlases = np.ascontiguousarray(
            np.stack([
                np.stack([self._as_volume(im, ndim) for im in atlas])
                for atlas in self.atlas_images
            ]),
            dtype=np.float64,
        )

        if self.mask is None:
            mask = np.ones(spatial, dtype=np.bool_)
        else:
            mask = np.ascontiguousarray(self._as_volume(self.mask == self.mask_label, ndim))

        if segmentations:
            label_dtype = segmentations[0].dtype
            segs = np.ascontiguousarray(
                np.stack([self._as_volume(seg, ndim) for seg in segmentations]),
                dtype=np.int64,
            )
            labels = np.unique(segs[:, mask]).astype(np.int64)
        else:
            label_dtype = np.dtype(np.int32)
            segs = np.zeros((0,) + spatial, dtype=np.int64)
            labels = np.zeros(0, dtype=np.int64)

        excluded_labels = sorted(self.label_exclusions)
        if excluded_labels:
            exclusions = np.ascontiguousarray(
                np.stack([
                    self._as_volume(self.label_exclusions[label] != 0, ndim)
                    for label in excluded_labels
                ]),
                dtype=np.uint8,
            )
        else:
            exclusions = np.zeros((0,) + spatial, dtype=np.uint8)
        exclusion_slots = np.array(
            [
                excluded_labels.index(int(label)) if int(label) in self.label_exclusions else -1
                for label in labels
            ],
            dtype=np.int64,
        )

        ref_dtype = np.dtype(reference.dtype)
        intensity_dtype = ref_dtype if np.issubdtype(ref_dtype, np.floating) else np.dtype(np.float32)

        context = RunContext(
            target=target,
            atlases=atlases,
            segmentations=segs,
            mask=mask,
            labels=labels,
            exclusions=exclusions,
            exclusion_slots=exclusion_slots,
            patch_radius=patch_radius,
            search_radius=search_radius,
            ndim=ndim,
            label_dtype=label_dtype,
            intensity_dtype=intensity_dtype,
            retain_atlas_voting_weights=self.retain_atlas_voting_weights,
        )

        if self._debug:
            print(
                f"\nJoint fusion configuration:",
                f"\n  atlases: {context.number_of_atlases}",
                f"\n  modalities: {context.number_of_modalities}",
                f"\n  segmentations: {context.number_of_segmentations}",
                f"\n  target images: {n_targets}",
                f"\n  patch radius: {patch_radius} ({context.patch_size} voxels)",
                f"\n  search radius: {search_radius} ({context.search_offsets.shape[0]} offsets)",
                f"\n  alpha: {self._alpha}, beta: {self._beta}",
                f"\n  pearson: {self.use_pearson_correlation}",
                f"\n  non-negative weights: {self.constrain_nonnegative}",
                f"\n  label set: {labels.tolist()}",
            )

        return context

    def _vote(self, context: RunContext, region: Region):
        """
        Run the voting kernel over one region into private accumulators.

        Returns
        -------
        padded : Region
            Global box covered by the accumulators.
        buffers : tuple of ndarray
            (joint_intensity, count, posteriors, weight_sum, voting_weights)
        """
        padded = pad_region(region, context.patch_radius, context.shape)
        local_shape = tuple(b - a for a, b in zip(*padded))

        joint_intensity = np.zeros((context.number_of_modalities,) + local_shape, dtype=np.float64)
        count = np.zeros(local_shape, dtype=np.int64)
        posteriors = np.zeros((context.labels.shape[0],) + local_shape, dtype=np.float64)
        weight_sum = np.zeros(local_shape, dtype=np.float64)
        voting_weights = np.zeros(
            (context.voting_weights.shape[0],) + local_shape, dtype=np.float64
        )

        _vote_region(
            context.target,
            context.atlases,
            context.segmentations,
            context.mask,
            context.labels,
            context.patch_offsets,
            context.search_offsets,
            context.zero_index,
            self._alpha,
            self._beta,
            self.use_pearson_correlation,
            self.constrain_nonnegative,
            NNLS_TOLERANCE,
            np.array(region[0], dtype=np.int64),
            np.array(region[1], dtype=np.int64),
            np.array(padded[0], dtype=np.int64),
            joint_intensity,
            count,
            posteriors,
            weight_sum,
            voting_weights,
        )

        return padded, (joint_intensity, count, posteriors, weight_sum, voting_weights)

    @staticmethod
    def _reduce(context: RunContext, partials) -> None:
        """
        Sum private region accumulators into the run accumulators, in order.
        """
        for padded, (joint_intensity, count, posteriors, weight_sum, voting_weights) in partials:
            (z0, y0, x0), (z1, y1, x1) = padded
            box = (slice(z0, z1), slice(y0, y1), slice(x0, x1))
            context.joint_intensity[(slice(None),) + box] += joint_intensity
            context.count[box] += count
            context.posteriors[(slice(None),) + box] += posteriors
            context.weight_sum[box] += weight_sum
            context.voting_weights[(slice(None),) + box] += voting_weights

        context.joint_intensity[~np.isfinite(context.joint_intensity)] = 0.0

    def finalize(self, context: RunContext) -> None:
        """
        Turn the accumulated votes into labels and averaged intensities.

        Must only be called once every region has been voted and reduced.
        Updates `context` in place: sets `label_image`, normalizes the joint
        intensity, normalizes retained maps where the weight sum is at least
        0.1, and drops the posteriors unless they are retained.
        """
        label_image = np.zeros(context.shape, dtype=np.int64)
        if context.labels.shape[0] > 0:
            _decide_labels(
                context.posteriors,
                context.labels,
                context.mask,
                context.exclusions,
                context.exclusion_slots,
                label_image,
            )
        context.label_image = label_image

        _normalize_by_count(context.joint_intensity, context.count)

        if self.retain_label_posteriors and context.posteriors.shape[0] > 0:
            _normalize_by_weight_sum(
                context.posteriors, context.weight_sum, WEIGHT_SUM_THRESHOLD
            )
        if context.voting_weights.shape[0] > 0:
            _normalize_by_weight_sum(
                context.voting_weights, context.weight_sum, WEIGHT_SUM_THRESHOLD
            )

        if not self.retain_label_posteriors:
            context.posteriors = None

    def run(
        self,
        context: Optional[RunContext] = None,
        partitioner: Optional[Callable[[Sequence[int], int], List[Region]]] = None,
    ) -> FusionResult:
        """
        Execute the fusion end-to-end.

        Parameters
        ----------
        context : RunContext, optional
            Context from `prepare`. A new one is prepared if omitted.
        partitioner : callable, optional
            `partitioner(shape, n_regions) -> regions` splitting the (z, y, x)
            domain into disjoint boxes. Defaults to `split_regions`.

        Returns
        -------
        result : FusionResult
        """
        if context is None:
            context = self.prepare()
        if context.consumed:
            raise RuntimeError("RunContext has already been run; call prepare() again.")
        context.consumed = True

        if partitioner is None:
            partitioner = split_regions
        regions = partitioner(context.shape, self._max_workers)

        start_time = timeit.default_timer()
        partials = [None] * len(regions)
        n_voxels = sum(region_size(region) for region in regions)

        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            futures = {
                executor.submit(self._vote, context, region): idx
                for idx, region in enumerate(regions)
            }
            with tqdm(total=n_voxels, desc="voting", leave=False,
                      disable=not self.show_progress) as pbar:
                for future in as_completed(futures):
                    idx = futures[future]
                    partials[idx] = future.result()
                    pbar.update(region_size(regions[idx]))

        if self._debug:
            print(
                f"Voted {n_voxels} voxels in {len(regions)} regions "
                f"({timeit.default_timer() - start_time:.2f} s)."
            )

        self._reduce(context, partials)
        del partials
        self.finalize(context)

        return self._collect(context)

    def _collect(self, context: RunContext) -> FusionResult:
        """
        Package the finalized accumulators in the input dimensionality.
        """

        def restore(volume: np.ndarray) -> np.ndarray:
            return volume[0] if context.ndim == 2 else volume

        label_image = restore(context.label_image).astype(context.label_dtype)
        joint_intensity = [
            restore(channel).astype(context.intensity_dtype)
            for channel in context.joint_intensity
        ]

        label_posteriors = None
        if context.posteriors is not None:
            label_posteriors = {
                int(label): restore(context.posteriors[idx])
                for label, idx in context.label_index.items()
            }

        atlas_voting_weights = None
        if context.voting_weights.shape[0] > 0:
            atlas_voting_weights = [restore(vw) for vw in context.voting_weights]

        return FusionResult(
            label_image=label_image,
            joint_intensity=joint_intensity,
            labels=context.labels.copy(),
            label_posteriors=label_posteriors,
            atlas_voting_weights=atlas_voting_weights,
            weight_sum=restore(context.weight_sum),
            count=restore(context.count),
        )
