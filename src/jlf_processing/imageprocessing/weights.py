"""
Atlas weight estimation for joint label fusion.

For every target voxel the atlases are weighted by solving a regularized
linear system built from the pairwise agreement of their patch errors. The
non-negative variant uses the Lawson-Hanson active set method.

References
----------
Wang, H. et al. (2013). Multi-Atlas Segmentation with Joint Label Fusion.
IEEE TPAMI 35(3).
Lawson, C. L. & Hanson, R. J. (1995). Solving Least Squares Problems. SIAM.

History:
---------
- **2025/06**: Iteration cap on the active set loop.
- **2025/05**: Initial commit.
"""

import numpy as np
from numba import njit


@njit(nogil=True, error_model="numpy")
def similarity_matrix(
    differences: np.ndarray,
    patch_size: int,
    beta: float,
) -> np.ndarray:
    """
    Pairwise error agreement between atlases.

    Parameters
    ----------
    differences : float64[A, D]
        Absolute differences between each atlas's normalized best patch and
        the normalized target patch.
    patch_size : int
        Number of offsets in a single-channel patch.
    beta : float
        Exponent applied to every entry.

    Returns
    -------
    M : float64[A, A]
        Symmetric matrix. Non-finite entries are set to 0.
    """
    n_atlases = differences.shape[0]
    n_components = differences.shape[1]
    M = np.zeros((n_atlases, n_atlases), dtype=np.float64)

    for i in range(n_atlases):
        for j in range(i + 1):
            value = 0.0
            for k in range(n_components):
                value += differences[i, k] * differences[j, k]
            value /= patch_size - 1.0

            if beta == 2.0:
                value *= value
            else:
                value = value ** beta

            if not np.isfinite(value):
                value = 0.0

            M[i, j] = value
            M[j, i] = value

    return M


@njit(nogil=True, error_model="numpy")
def _restricted_solve(A: np.ndarray, y: np.ndarray, passive: np.ndarray):
    """Least squares on the passive columns of A, scattered back to full length."""
    m = A.shape[0]
    n = A.shape[1]

    n_passive = 0
    for j in range(n):
        if passive[j]:
            n_passive += 1

    sub = np.empty((m, n_passive), dtype=np.float64)
    k = 0
    for j in range(n):
        if passive[j]:
            for i in range(m):
                sub[i, k] = A[i, j]
            k += 1

    sp = np.dot(np.linalg.pinv(sub), y)

    s = np.zeros(n, dtype=np.float64)
    k = 0
    for j in range(n):
        if passive[j]:
            s[j] = sp[k]
            k += 1

    return s, sp


@njit(nogil=True, error_model="numpy")
def _entering_index(w: np.ndarray, passive: np.ndarray):
    """Largest gradient component among the active (zero) coordinates."""
    max_index = -1
    max_value = -np.inf
    for i in range(w.shape[0]):
        if not passive[i] and w[i] > max_value:
            max_index = i
            max_value = w[i]
    return max_index, max_value


@njit(nogil=True, error_model="numpy")
def nonnegative_least_squares(
    A: np.ndarray,
    y: np.ndarray,
    tolerance: float,
) -> np.ndarray:
    """
    Solve argmin ||Ax - y|| subject to x >= 0.

    Parameters
    ----------
    A : float64[m, n]
        System matrix.
    y : float64[m]
        Right-hand side.
    tolerance : float
        Gradient / feasibility tolerance.

    Returns
    -------
    x : float64[n]
        Non-negative solution.
    """
    a = np.ascontiguousarray(A)
    b = np.ascontiguousarray(y)
    at = np.ascontiguousarray(a.T)
    n = a.shape[1]

    passive = np.zeros(n, dtype=np.bool_)
    x = np.zeros(n, dtype=np.float64)
    s = np.zeros(n, dtype=np.float64)
    w = np.dot(at, b - np.dot(a, x))

    max_index, max_value = _entering_index(w, passive)

    iterations = 0
    max_iterations = 3 * n
    while max_index >= 0 and max_value > tolerance and iterations < max_iterations:
        iterations += 1
        passive[max_index] = True

        s, sp = _restricted_solve(a, b, passive)

        while sp.shape[0] > 0 and sp.min() <= tolerance:
            alpha = np.inf
            for i in range(n):
                if passive[i] and s[i] <= tolerance:
                    denominator = x[i] - s[i]
                    if denominator != 0.0:
                        ratio = x[i] / denominator
                        if ratio < alpha:
                            alpha = ratio
            if alpha == np.inf:
                alpha = 0.0

            for i in range(n):
                x[i] += alpha * (s[i] - x[i])

            for i in range(n):
                if passive[i] and x[i] <= tolerance:
                    passive[i] = False

            if not np.any(passive):
                s = np.zeros(n, dtype=np.float64)
                break

            s, sp = _restricted_solve(a, b, passive)

        x = s.copy()
        w = np.dot(at, b - np.dot(a, x))
        max_index, max_value = _entering_index(w, passive)

    return x


@njit(nogil=True, error_model="numpy")
def solve_atlas_weights(
    differences: np.ndarray,
    patch_size: int,
    alpha: float,
    beta: float,
    constrain_nonnegative: bool,
    tolerance: float,
) -> np.ndarray:
    """
    Voting weights for one voxel.

    Parameters
    ----------
    differences : float64[A, D]
        Absolute normalized patch differences per atlas.
    patch_size : int
        Number of offsets in a single-channel patch.
    alpha : float
        Ridge added to the diagonal.
    beta : float
        Exponent of the similarity matrix entries.
    constrain_nonnegative : bool
        Use NNLS instead of the clipped pseudo-inverse solution.
    tolerance : float
        NNLS tolerance.

    Returns
    -------
    W : float64[A]
        Non-negative weights summing to 1, or all zeros when the raw
        solution sums to zero.
    """
    n_atlases = differences.shape[0]
    M = similarity_matrix(differences, patch_size, beta)
    for i in range(n_atlases):
        M[i, i] += alpha

    ones = np.ones(n_atlases, dtype=np.float64)

    if constrain_nonnegative:
        W = nonnegative_least_squares(M, ones, tolerance)
    else:
        W = np.dot(np.linalg.pinv(M), ones)
        for i in range(n_atlases):
            if W[i] < 0.0:
                W[i] = 0.0

    total = 0.0
    for i in range(n_atlases):
        total += W[i]

    if total > 0.0 and np.isfinite(total):
        for i in range(n_atlases):
            W[i] /= total
    else:
        for i in range(n_atlases):
            W[i] = 0.0

    return W
