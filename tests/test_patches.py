import numpy as np

from jlf_processing.imageprocessing.patches import (
    find_best_offset,
    normalize_patch,
    patch_similarity,
    vectorize_patch,
    vectorize_patch_list,
)
from jlf_processing.imageprocessing.regions import neighborhood_offsets, zero_offset_index


def _reference_normalize(values: np.ndarray) -> np.ndarray:
    std = max(np.std(values, ddof=1), 1.0)
    return (values - values.mean()) / std


def test_constant_patch_normalizes_to_zero():
    """A constant patch has its std floored at 1 and becomes all zeros."""
    image = np.full((3, 3, 3), 5.0)
    offsets = neighborhood_offsets((1, 1, 1))
    patch = vectorize_patch(image, (1, 1, 1), offsets, True)
    assert patch.shape == (27,)
    assert np.all(np.isfinite(patch))
    assert np.allclose(patch, 0.0)


def test_normalize_patch_matches_bessel_corrected_zscore():
    """Normalization uses the sample standard deviation."""
    values = np.array([1.0, 2.0, 3.0, 4.0, 9.0])
    expected = _reference_normalize(values)
    assert np.allclose(normalize_patch(values.copy()), expected)


def test_normalize_patch_floors_small_std():
    """Patches with std below 1 are only mean-centred."""
    values = np.array([0.0, 0.1, 0.2])
    assert np.allclose(normalize_patch(values.copy()), values - 0.1)


def test_normalize_single_sample_patch():
    """A single-voxel patch normalizes to zero without dividing by zero."""
    assert np.allclose(normalize_patch(np.array([7.0])), [0.0])


def test_vectorize_out_of_bounds_samples_are_zero():
    """Samples outside the image contribute zero but keep the patch length."""
    image = np.arange(1, 28, dtype=np.float64).reshape(3, 3, 3)
    offsets = neighborhood_offsets((1, 1, 1))
    patch = vectorize_patch(image, (0, 0, 0), offsets, False)
    assert patch.shape == (27,)
    assert np.count_nonzero(patch == 0.0) == 19
    assert patch[13] == image[0, 0, 0]
    assert patch[-1] == image[1, 1, 1]


def test_vectorize_patch_list_normalizes_each_channel():
    """Channel blocks are concatenated and z-scored independently."""
    base = np.arange(27, dtype=np.float64).reshape(3, 3, 3)
    images = np.stack([base, 10.0 * base + 100.0])
    offsets = neighborhood_offsets((1, 1, 1))
    patch = vectorize_patch_list(images, (1, 1, 1), offsets, True)
    assert patch.shape == (54,)
    assert np.allclose(patch[:27], _reference_normalize(base.ravel()))
    assert np.allclose(patch[27:], patch[:27])

    raw = vectorize_patch_list(images, (1, 1, 1), offsets, False)
    assert np.allclose(raw[27:], images[1].ravel())


def test_patch_similarity_default_measure():
    """The default score is -(sum xy)^2 / var(x) for positive correlation."""
    rng = np.random.default_rng(3)
    atlas = rng.normal(100.0, 20.0, size=(1, 1, 5, 5))
    offsets = neighborhood_offsets((0, 1, 1))
    y = rng.normal(size=9)

    x = vectorize_patch(atlas[0], (0, 2, 2), offsets, False)
    sum_xy = np.sum(x * y)
    var_x = max(np.sum(x * x) - np.sum(x) ** 2 / 9, 1e-6)
    measure = sum_xy ** 2 / var_x
    expected = -measure if sum_xy > 0 else measure

    score = patch_similarity(atlas, (0, 2, 2), offsets, y, 1, False)
    assert np.isclose(score, expected)


def test_patch_similarity_pearson():
    """Pearson mode returns the negated correlation coefficient."""
    rng = np.random.default_rng(4)
    atlas = rng.normal(50.0, 10.0, size=(1, 1, 5, 5))
    offsets = neighborhood_offsets((0, 1, 1))
    y = rng.normal(size=9)
    x = vectorize_patch(atlas[0], (0, 2, 2), offsets, False)

    score = patch_similarity(atlas, (0, 2, 2), offsets, y, 1, True)
    assert np.isclose(score, -np.corrcoef(x, y)[0, 1])


def test_find_best_offset_recovers_shift():
    """The matcher finds the atlas location holding the target's content."""
    rng = np.random.default_rng(5)
    atlas = rng.normal(1000.0, 300.0, size=(1, 1, 11, 11))
    target = np.zeros((1, 1, 11, 11))
    target[0, 0, :, :-1] = atlas[0, 0, :, 1:]

    patch_offsets = neighborhood_offsets((0, 1, 1))
    search_offsets = neighborhood_offsets((0, 2, 2))
    zero_index = zero_offset_index(search_offsets)
    expected = int(np.flatnonzero(np.all(search_offsets == (0, 0, 1), axis=1))[0])

    center = (0, 5, 5)
    normalized_target = vectorize_patch_list(target, center, patch_offsets, True)
    for use_pearson in (False, True):
        best = find_best_offset(
            atlas, center, normalized_target, True,
            search_offsets, patch_offsets, zero_index, use_pearson
        )
        assert best == expected


def test_find_best_offset_prefers_self_on_ties():
    """When every candidate scores the same the zero offset is kept."""
    atlas = np.full((1, 1, 9, 9), 3.0)
    target = np.random.default_rng(6).normal(size=(1, 1, 9, 9))
    patch_offsets = neighborhood_offsets((0, 1, 1))
    search_offsets = neighborhood_offsets((0, 1, 1))
    zero_index = zero_offset_index(search_offsets)

    normalized_target = vectorize_patch_list(target, (0, 4, 4), patch_offsets, True)
    best = find_best_offset(
        atlas, (0, 4, 4), normalized_target, True,
        search_offsets, patch_offsets, zero_index, False
    )
    assert best == zero_index


def test_find_best_offset_skips_candidates_outside_image():
    """Candidate centres outside the image are never returned."""
    rng = np.random.default_rng(7)
    atlas = rng.normal(size=(1, 1, 4, 4))
    patch_offsets = neighborhood_offsets((0, 1, 1))
    search_offsets = neighborhood_offsets((0, 2, 2))
    zero_index = zero_offset_index(search_offsets)

    center = (0, 0, 0)
    normalized_target = vectorize_patch_list(atlas, center, patch_offsets, True)
    best = find_best_offset(
        atlas, center, normalized_target, False,
        search_offsets, patch_offsets, zero_index, False
    )
    oz, oy, ox = search_offsets[best]
    assert oy >= 0 and ox >= 0
