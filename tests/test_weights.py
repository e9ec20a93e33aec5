import numpy as np
import pytest
from scipy.optimize import nnls

from jlf_processing.imageprocessing.weights import (
    nonnegative_least_squares,
    similarity_matrix,
    solve_atlas_weights,
)

TOL = 1e-6


def test_similarity_matrix_matches_dense_formula():
    """M is the squared, scaled Gram matrix of the patch differences."""
    rng = np.random.default_rng(0)
    diffs = np.abs(rng.normal(size=(4, 9)))
    M = similarity_matrix(diffs, 9, 2.0)
    expected = (diffs @ diffs.T / 8.0) ** 2
    assert np.allclose(M, expected)
    assert np.allclose(M, M.T)


def test_similarity_matrix_general_beta():
    """Non-quadratic exponents use the power function."""
    rng = np.random.default_rng(1)
    diffs = np.abs(rng.normal(size=(3, 5)))
    M = similarity_matrix(diffs, 5, 1.5)
    assert np.allclose(M, (diffs @ diffs.T / 4.0) ** 1.5)


def test_similarity_matrix_clamps_non_finite():
    """Single-voxel patches divide by zero and yield a zero matrix."""
    diffs = np.array([[0.5], [1.0]])
    M = similarity_matrix(diffs, 1, 2.0)
    assert np.all(np.isfinite(M))
    assert np.allclose(M, 0.0)


def test_nnls_known_solution():
    """Negative unconstrained components are clamped to zero."""
    A = np.eye(3)
    y = np.array([1.0, -2.0, 3.0])
    x = nonnegative_least_squares(A, y, TOL)
    assert np.allclose(x, [1.0, 0.0, 3.0])


@pytest.mark.parametrize("seed", range(6))
def test_nnls_kkt_conditions(seed):
    """The solution is feasible and satisfies the KKT conditions."""
    rng = np.random.default_rng(seed)
    A = rng.normal(size=(8, 5))
    y = rng.normal(size=8)
    x = nonnegative_least_squares(A, y, TOL)

    assert x.shape == (5,)
    assert np.all(x >= 0.0)
    w = A.T @ (y - A @ x)
    zero = x == 0.0
    assert np.all(w[zero] <= TOL + 1e-9)
    assert np.allclose(w[~zero], 0.0, atol=1e-6)


@pytest.mark.parametrize("seed", range(4))
def test_nnls_agrees_with_scipy(seed):
    """Results match scipy's Lawson-Hanson implementation."""
    rng = np.random.default_rng(100 + seed)
    A = rng.normal(size=(10, 4))
    y = rng.normal(size=10)
    x = nonnegative_least_squares(A, y, TOL)
    expected, _ = nnls(A, y)
    assert np.allclose(x, expected, atol=1e-5)


def test_nnls_zero_matrix_returns_zero():
    """A zero system has a zero gradient and the solver stops immediately."""
    x = nonnegative_least_squares(np.zeros((3, 3)), np.ones(3), TOL)
    assert np.allclose(x, 0.0)


@pytest.mark.parametrize("constrain", [False, True])
@pytest.mark.parametrize("seed", range(5))
def test_weights_are_nonnegative_and_sum_to_one(constrain, seed):
    """Weights are a convex combination for random patch differences."""
    rng = np.random.default_rng(seed)
    n_atlases = rng.integers(1, 7)
    diffs = np.abs(rng.normal(scale=rng.uniform(0.1, 3.0), size=(n_atlases, 27)))
    W = solve_atlas_weights(diffs, 27, 0.1, 2.0, constrain, TOL)

    assert W.shape == (n_atlases,)
    assert np.all(W >= 0.0)
    assert np.isclose(W.sum(), 1.0)


def test_single_atlas_gets_full_weight():
    """One atlas always receives weight 1."""
    W = solve_atlas_weights(np.zeros((1, 1)), 1, 0.1, 2.0, False, TOL)
    assert np.allclose(W, [1.0])


def test_identical_atlases_share_weight():
    """Atlases with identical errors are weighted equally."""
    row = np.linspace(0.0, 2.0, 9)
    diffs = np.stack([row, row])
    for constrain in (False, True):
        W = solve_atlas_weights(diffs, 9, 0.1, 2.0, constrain, TOL)
        assert np.allclose(W, [0.5, 0.5])


def test_better_atlas_gets_more_weight():
    """An atlas with smaller patch errors gets a larger weight."""
    rng = np.random.default_rng(11)
    good = np.abs(rng.normal(scale=0.1, size=9))
    bad = np.abs(rng.normal(scale=2.0, size=9))
    W = solve_atlas_weights(np.stack([good, bad]), 9, 0.1, 2.0, True, TOL)
    assert W[0] > W[1]


def test_degenerate_system_gives_zero_weights():
    """A zero weight sum produces all-zero weights instead of NaN."""
    diffs = np.zeros((3, 9))
    for constrain in (False, True):
        W = solve_atlas_weights(diffs, 9, 0.0, 2.0, constrain, TOL)
        assert np.all(np.isfinite(W))
        assert np.allclose(W, 0.0)
