"""
Reconciliation Solver - weighted least squares under balance constraints

Minimize (x - x0)_T W (x - x0), W = diag(measurability / tolerance^2)
Subject to A x = b, lower <= x <= upper

The problem is a convex QP: the Hessian is diagonal and positive
semidefinite (unmeasured flows carry zero weight). Feasibility is decided
by an LP first so that an empty feasible region is reported as such and
never confused with a convergence failure.
"""

import time
import warnings
import numpy as np
import scipy.optimize as opt
from scipy.linalg import qr
from scipy.optimize import Bounds, LinearConstraint
from typing import Any, Dict, Optional, Tuple

from .core import (
    ReconciliationResult, InfeasibleProblemError, SolverError, BalanceInputError,
    as_vector, validate_measurements, validate_bounds
)
from .utils import ATOL_FEASIBILITY, apply_tolerance_floor, check_feasibility, disbalance


SUPPORTED_METHODS = ("SLSQP", "trust-constr")


def build_weights(measurability: np.ndarray, tolerance: np.ndarray) -> np.ndarray:
    """
    Diagonal of W, normalized by its maximum.

    Scaling the objective leaves the minimizer unchanged and keeps tiny
    tolerances from wrecking the conditioning of the QP.
    """
    weights = measurability / apply_tolerance_floor(tolerance) ** 2
    w_max = np.max(weights)
    if w_max > 0:
        weights = weights / w_max
    return weights


def independent_rows(incidence_matrix: np.ndarray, tol: float = 1e-10) -> np.ndarray:
    """
    Indices of a maximal set of linearly independent rows.

    Closed networks give rows summing to zero; dropping the dependent
    ones leaves the feasible set unchanged once A x = b is known to be
    consistent.
    """
    A = incidence_matrix
    if A.shape[0] == 0:
        return np.arange(0)
    _, R, pivots = qr(A.T, mode='economic', pivoting=True)
    diag = np.abs(np.diag(R))
    if len(diag) == 0 or diag[0] == 0:
        return np.arange(0)
    rank = int(np.sum(diag > tol * diag[0]))
    return np.sort(pivots[:rank])


def find_feasible_point(
    incidence_matrix: np.ndarray,
    targets: np.ndarray,
    lower: np.ndarray,
    upper: np.ndarray
) -> np.ndarray:
    """
    Any point with A x = b and lower <= x <= upper.

    Raises:
        InfeasibleProblemError: If the feasible region is empty
        SolverError: If the LP fails for another reason
    """
    n_flows = incidence_matrix.shape[1]
    result = opt.linprog(
        c=np.zeros(n_flows),
        A_eq=incidence_matrix,
        b_eq=targets,
        bounds=list(zip(lower, upper)),
        method='highs'
    )
    # The objective is zero, so "unbounded or infeasible" can only mean infeasible
    if result.status == 2 or (result.status in (3, 4) and 'infeasible' in str(result.message).lower()):
        raise InfeasibleProblemError(
            f"Infeasible problem: balance equations cannot be met within the bounds ({result.message})"
        )
    if result.status != 0:
        raise SolverError(f"Feasibility check failed: {result.message}")
    return result.x


def _minimize(
    method: str,
    x_start: np.ndarray,
    x0: np.ndarray,
    weights: np.ndarray,
    A: np.ndarray,
    b: np.ndarray,
    lower: np.ndarray,
    upper: np.ndarray,
    options: Optional[Dict[str, Any]]
) -> opt.OptimizeResult:
    def objective_fun(x):
        d = x - x0
        return 0.5 * np.dot(weights * d, d)

    def objective_grad(x):
        return weights * (x - x0)

    bounds = Bounds(lower, upper)

    has_equalities = A.shape[0] > 0

    if method == 'SLSQP':
        constraints = ()
        if has_equalities:
            constraints = {
                'type': 'eq',
                'fun': lambda x: A @ x - b,
                'jac': lambda x: A
            }
        slsqp_options = {
            'ftol': 1e-12,
            'maxiter': 1000,
            'disp': False
        }
        if options:
            slsqp_options.update(options)
        return opt.minimize(
            fun=objective_fun,
            x0=x_start,
            method='SLSQP',
            jac=objective_grad,
            bounds=bounds,
            constraints=constraints,
            options=slsqp_options
        )

    hessian = np.diag(weights)
    trust_constr_options = {
        'gtol': 1e-12,
        'xtol': 1e-12,
        'maxiter': 2000,
        'verbose': 0,
        'disp': False
    }
    if options:
        trust_constr_options.update(options)
    return opt.minimize(
        fun=objective_fun,
        x0=x_start,
        method='trust-constr',
        jac=objective_grad,
        hess=lambda x: hessian,
        bounds=bounds,
        constraints=LinearConstraint(A, b, b) if has_equalities else (),
        options=trust_constr_options
    )


def reconcile(
    x0,
    incidence_matrix,
    targets,
    measurability,
    tolerance,
    lower,
    upper,
    method: str = 'SLSQP',
    options: Optional[Dict[str, Any]] = None
) -> ReconciliationResult:
    """
    Reconcile measurements so that every node balances.

    Args:
        x0: Measured values (n_flows,)
        incidence_matrix: Incidence matrix A (n_nodes x n_flows)
        targets: Required net balance b per node (n_nodes,)
        measurability: 1 for measured flows, 0 for unmeasured (n_flows,)
        tolerance: Measurement tolerances, floored at TOLERANCE_FLOOR (n_flows,)
        lower: Lower bounds (n_flows,)
        upper: Upper bounds (n_flows,)
        method: 'SLSQP' (default) or 'trust-constr'; the other one is the fallback
        options: Options passed to scipy.optimize.minimize (optional)

    Returns:
        ReconciliationResult with reconciled flows and disbalance metrics

    Raises:
        BalanceInputError: On missing or inconsistent arguments
        InfeasibleProblemError: If no point satisfies constraints and bounds
        SolverError: If the optimizer does not reach a feasible optimum
    """
    if method not in SUPPORTED_METHODS:
        raise BalanceInputError("method", f"unsupported method {method!r}, expected one of {SUPPORTED_METHODS}")

    x0, A, measurability, tolerance = validate_measurements(x0, incidence_matrix, measurability, tolerance)
    n_nodes, n_flows = A.shape
    b = as_vector(targets, "b")
    if len(b) != n_nodes:
        raise BalanceInputError("b", f"length {len(b)} != number of nodes {n_nodes}")
    lower, upper = validate_bounds(lower, upper, n_flows)

    start = time.perf_counter()

    weights = build_weights(measurability, tolerance)
    rows = independent_rows(A)
    A_eq, b_eq = A[rows], b[rows]

    time_matrix = time.perf_counter() - start

    x_feasible = find_feasible_point(A, b, lower, upper)

    if not np.any(weights > 0):
        # Zero cost: every feasible point is optimal
        x_opt, success, iterations, used = x_feasible, True, 0, 'linprog'
    else:
        x_start = np.clip(x0, lower, upper)
        x_opt, success, iterations, used = _solve_with_fallback(
            method, x_start, x_feasible, x0, weights, A_eq, b_eq, lower, upper, options
        )

    constraint_viol, bound_viol = check_feasibility(x_opt, A, b, lower, upper)
    if constraint_viol > ATOL_FEASIBILITY or bound_viol > ATOL_FEASIBILITY:
        raise SolverError(
            f"Failed to solve balance task: constraint violation {constraint_viol:.3e}, "
            f"bound violation {bound_viol:.3e}"
        )

    time_all = time.perf_counter() - start

    return ReconciliationResult(
        x=x_opt,
        disbalance_original=disbalance(A, x0, b),
        disbalance=disbalance(A, x_opt, b),
        time_matrix=time_matrix,
        time_all=time_all,
        success=success,
        iterations=iterations,
        method=used,
        constraint_violation=constraint_viol,
        bound_violation=bound_viol
    )


def _solve_with_fallback(
    method: str,
    x_start: np.ndarray,
    x_feasible: np.ndarray,
    x0: np.ndarray,
    weights: np.ndarray,
    A: np.ndarray,
    b: np.ndarray,
    lower: np.ndarray,
    upper: np.ndarray,
    options: Optional[Dict[str, Any]]
) -> Tuple[np.ndarray, bool, int, str]:
    fallback = 'trust-constr' if method == 'SLSQP' else 'SLSQP'

    try:
        result = _minimize(method, x_start, x0, weights, A, b, lower, upper, options)
        if result.success and _is_feasible(result.x, A, b, lower, upper):
            return result.x, True, int(result.nit), method
        warnings.warn(f"{method} did not converge ({result.message}), falling back to {fallback}", RuntimeWarning)
    except (ValueError, np.linalg.LinAlgError) as e:
        warnings.warn(f"{method} failed ({e}), falling back to {fallback}", RuntimeWarning)

    # The fallback starts from the LP point, which is feasible by construction
    result = _minimize(fallback, x_feasible, x0, weights, A, b, lower, upper, None)
    if not result.success:
        raise SolverError(f"Failed to solve balance task: {result.message}")
    return result.x, True, int(result.nit), fallback


def _is_feasible(x, A, b, lower, upper) -> bool:
    constraint_viol, bound_viol = check_feasibility(x, A, b, lower, upper)
    return constraint_viol <= ATOL_FEASIBILITY and bound_viol <= ATOL_FEASIBILITY
