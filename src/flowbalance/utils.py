"""
Numerical constants and shared helpers for flow balance reconciliation

This module provides the package-wide configuration constants and small
helpers shared by the solver and the statistical tests.
"""

import numpy as np
from typing import Tuple


# Significance level of the global test (95% confidence)
ALPHA = 0.05

# Tolerances are 95%-confidence half-widths: sigma = tolerance / 1.96
CONFIDENCE_Z = 1.96

# Unmeasured flows get sigma = UNMEASURED_SCALE * max(x0)
UNMEASURED_SCALE = 100.0

# Smallest admissible measurement tolerance
TOLERANCE_FLOOR = 1e-9

# Entries with |value| below this are treated as zero
ZERO_TOL = 1e-7

# Accepted residual of equality constraints and bounds after a solve
ATOL_FEASIBILITY = 1e-6

# Search bounds used by the fault-localization service
MAX_CHILDREN = 3
MAX_DEPTH = 5


def apply_tolerance_floor(tolerance: np.ndarray, floor: float = TOLERANCE_FLOOR) -> np.ndarray:
    """Return a copy of ``tolerance`` with near-zero entries replaced by ``floor``."""
    tolerance = np.array(tolerance, dtype=float)
    tolerance[np.abs(tolerance) <= floor] = floor
    return tolerance


def is_measured(measurability: np.ndarray) -> np.ndarray:
    """Boolean mask of measured flows."""
    return np.abs(np.asarray(measurability, dtype=float)) >= ZERO_TOL


def disbalance(incidence_matrix: np.ndarray, x: np.ndarray, targets: np.ndarray) -> float:
    """Euclidean norm of the node imbalance ``A x - b``."""
    return float(np.linalg.norm(incidence_matrix @ x - targets))


def check_feasibility(
    x: np.ndarray,
    incidence_matrix: np.ndarray,
    targets: np.ndarray,
    lower: np.ndarray,
    upper: np.ndarray
) -> Tuple[float, float]:
    """
    Check primal feasibility of a reconciled vector.

    Args:
        x: Flow vector
        incidence_matrix: Incidence matrix A
        targets: Node balance targets b
        lower: Lower bounds
        upper: Upper bounds

    Returns:
        Tuple of (constraint_violation, bound_violation), both in the inf-norm
    """
    constraint_violation = float(np.linalg.norm(incidence_matrix @ x - targets, np.inf)) if len(targets) else 0.0
    bound_violation = float(max(np.max(lower - x), np.max(x - upper), 0.0))
    return constraint_violation, bound_violation
