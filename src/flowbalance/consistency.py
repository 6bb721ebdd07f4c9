"""
Statistical consistency tests - global test and GLR localization

Global test:
- sigma[k] = tolerance[k] / 1.96 for measured flows (tolerance is a 95% half-width)
- sigma[k] = 100 * max(x0) for unmeasured flows
- r = A x0, V = A diag(sigma^2) A_T
- score = r_T V^+ r / chi2_inv(rows(A), 1 - alpha), V^+ Moore-Penrose

A score >= 1 flags a statistically significant imbalance.

Localization (generalized likelihood ratio):
- For a candidate node pair (i, j) append an unmeasured column with +1 at i
  and -1 at j and recompute the global test
- The score of (i, j) is the drop of the global test caused by that column
"""

import numpy as np
import warnings
from scipy.linalg import pinv
from scipy.stats import chi2
from typing import Iterable, Optional, Sequence, Tuple

from .core import BalanceInputError, validate_measurements
from .flows import augment
from .utils import ALPHA, CONFIDENCE_Z, UNMEASURED_SCALE, is_measured


def chi_squared_threshold(degrees_of_freedom: int, alpha: float = ALPHA) -> float:
    """Inverse CDF of the chi-squared distribution at confidence 1 - alpha."""
    if degrees_of_freedom < 1:
        raise BalanceInputError("A", "at least one node is required for the global test")
    if not 0.0 < alpha < 1.0:
        raise BalanceInputError("alpha", f"significance level {alpha} must lie in (0, 1)")
    return float(chi2.ppf(1.0 - alpha, degrees_of_freedom))


def flow_variances(x0: np.ndarray, measurability: np.ndarray, tolerance: np.ndarray) -> np.ndarray:
    """
    Per-flow variances used by the global test.

    Unmeasured flows get an arbitrarily large standard deviation,
    UNMEASURED_SCALE * max(x0), reflecting unconstrained uncertainty.
    """
    sigma = np.asarray(tolerance, dtype=float) / CONFIDENCE_Z
    unmeasured = ~is_measured(measurability)
    if np.any(unmeasured):
        x_max = np.max(x0)
        if x_max <= 0:
            warnings.warn(
                f"max(x0) = {x_max} is not positive; unmeasured variance is not meaningful",
                UserWarning
            )
        sigma[unmeasured] = UNMEASURED_SCALE * x_max
    return sigma ** 2


def global_test_statistic(
    x0: np.ndarray,
    incidence_matrix: np.ndarray,
    measurability: np.ndarray,
    tolerance: np.ndarray
) -> float:
    """
    Quadratic form r_T V^+ r of the node imbalance.

    V is singular whenever rows of A are linearly dependent, hence the
    pseudo-inverse.
    """
    A = incidence_matrix
    variances = flow_variances(x0, measurability, tolerance)

    r = A @ x0
    V = (A * variances) @ A.T

    return float(r @ pinv(V) @ r)


def global_test(
    x0,
    incidence_matrix,
    measurability,
    tolerance,
    alpha: float = ALPHA
) -> float:
    """
    Network-wide consistency score.

    Args:
        x0: Measurement vector
        incidence_matrix: Incidence matrix A (nodes x flows)
        measurability: Measurability flags (1 measured, 0 unmeasured)
        tolerance: Measurement tolerances
        alpha: Significance level

    Returns:
        Statistic divided by the chi-squared critical value; >= 1 means
        the measurements are inconsistent at confidence 1 - alpha
    """
    x0, A, measurability, tolerance = validate_measurements(x0, incidence_matrix, measurability, tolerance)
    threshold = chi_squared_threshold(A.shape[0], alpha)
    return global_test_statistic(x0, A, measurability, tolerance) / threshold


def all_pairs(n_nodes: int) -> Iterable[Tuple[int, int]]:
    """Every unordered node pair i < j."""
    for i in range(n_nodes):
        for j in range(i + 1, n_nodes):
            yield i, j


def _candidate_pairs(
    candidates: Optional[Iterable[Sequence[int]]],
    n_nodes: int
) -> Iterable[Tuple[int, int]]:
    if candidates is None:
        yield from all_pairs(n_nodes)
        return
    for candidate in candidates:
        i, j = int(candidate[0]), int(candidate[1])
        if not (0 <= i < n_nodes and 0 <= j < n_nodes):
            raise BalanceInputError("candidates", f"pair ({i}, {j}) outside of 0..{n_nodes - 1}")
        if i == j:
            continue
        yield i, j


def localize(
    x0,
    incidence_matrix,
    measurability,
    tolerance,
    candidates: Optional[Iterable[Sequence[int]]] = None,
    global_test_value: Optional[float] = None,
    alpha: float = ALPHA
) -> np.ndarray:
    """
    GLR localization matrix.

    Args:
        x0: Measurement vector
        incidence_matrix: Incidence matrix A (nodes x flows)
        measurability: Measurability flags
        tolerance: Measurement tolerances
        candidates: (i, j) or (i, j, column) items; None means all pairs i < j
        global_test_value: Global test of the unaugmented system (computed if None)
        alpha: Significance level

    Returns:
        nodes x nodes matrix; cell (i, j) holds the drop of the global test
        obtained by adding a flow between i and j, zero where not evaluated
    """
    x0, A, measurability, tolerance = validate_measurements(x0, incidence_matrix, measurability, tolerance)
    n_nodes = A.shape[0]
    threshold = chi_squared_threshold(n_nodes, alpha)

    if global_test_value is None:
        global_test_value = global_test_statistic(x0, A, measurability, tolerance) / threshold

    glr = np.zeros((n_nodes, n_nodes))
    for i, j in _candidate_pairs(candidates, n_nodes):
        augmented = augment(x0, A, measurability, tolerance, [(i, j)])
        glr[i, j] = global_test_value - global_test_statistic(*augmented) / threshold

    return glr
