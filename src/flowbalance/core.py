"""
Core data structures and input validation for flow balance reconciliation

A balance problem is a network of conservation nodes connected by flows:
- Incidence matrix A (nodes x flows): A[i, k] = +1 if flow k enters node i,
  -1 if it leaves node i, 0 otherwise
- Measurement vector x0 with per-flow tolerance and measurability flags
- Node balance targets b (typically zeros) and two sets of box bounds
  (metrological and technological), one of which is active per request
"""

import numpy as np
from typing import Dict, List, Optional, Sequence, Tuple, NamedTuple, Any
from dataclasses import dataclass, field

from .utils import apply_tolerance_floor


class BalanceInputError(ValueError):
    """Raised when arguments are missing, malformed or dimensionally inconsistent."""

    def __init__(self, argument: str, message: str):
        self.argument = argument
        super().__init__(f"{argument}: {message}")


class InfeasibleProblemError(Exception):
    """Raised when no point satisfies both the balance equations and the bounds."""


class SolverError(RuntimeError):
    """Raised when the optimizer stops without a feasible optimum."""


class SearchCancelled(Exception):
    """Raised when a fault-localization search is cancelled or runs past its deadline."""

    def __init__(self, nodes_visited: int, reason: str = "cancelled"):
        self.nodes_visited = nodes_visited
        self.reason = reason
        super().__init__(f"Search {reason} after {nodes_visited} node visits")


class FlowDescriptor(NamedTuple):
    """A real directed flow recovered from an incidence matrix column."""
    source: int
    destination: int
    column: int


@dataclass
class ReconciliationResult:
    """Results from balance reconciliation."""
    x: np.ndarray
    disbalance_original: float
    disbalance: float
    time_matrix: float
    time_all: float
    success: bool
    iterations: int
    method: str
    constraint_violation: float
    bound_violation: float


@dataclass
class FlowBoundsOffset:
    """Suggested additional flow parallel to an existing one, bounds relative to its x0."""
    name: str
    metrologic: Tuple[float, float]
    technologic: Tuple[float, float]
    tolerance: float
    is_measured: bool = True


@dataclass
class FlowRecord:
    """One hypothetical flow proposed by a fault-localization search."""
    flow_id: str
    flow_name: str
    original_index: int
    source: int
    destination: int
    source_node: str
    destination_node: str
    test_value: float
    bounds: Optional[FlowBoundsOffset] = None

    @property
    def is_new(self) -> bool:
        return self.original_index == -1

    @property
    def info(self) -> str:
        return f"{self.source} -> {self.destination}"


@dataclass
class SearchResult:
    """A leaf of the search tree: a chain of added flows and the global test it reaches."""
    flows: List[FlowRecord]
    test_value: float

    @property
    def pairs(self) -> List[Tuple[int, int]]:
        return [(record.source, record.destination) for record in self.flows]


def as_vector(value: Any, name: str, length: Optional[int] = None, allow_inf: bool = False) -> np.ndarray:
    """Convert ``value`` to a 1-D float array, checking presence, finiteness and length."""
    if value is None:
        raise BalanceInputError(name, "argument is required")
    array = np.asarray(value, dtype=float)
    if array.ndim != 1:
        raise BalanceInputError(name, f"expected a vector, got array with shape {array.shape}")
    if length is not None and len(array) != length:
        raise BalanceInputError(name, f"length {len(array)} != number of flows {length}")
    if allow_inf:
        if np.any(np.isnan(array)):
            raise BalanceInputError(name, "contains NaN values")
    elif not np.all(np.isfinite(array)):
        raise BalanceInputError(name, "contains non-finite values")
    return array


def as_matrix(value: Any, name: str = "A") -> np.ndarray:
    """Convert ``value`` to a dense 2-D float array."""
    if value is None:
        raise BalanceInputError(name, "argument is required")
    if hasattr(value, "toarray"):
        value = value.toarray()
    array = np.asarray(value, dtype=float)
    if array.ndim != 2:
        raise BalanceInputError(name, f"expected a matrix, got array with shape {array.shape}")
    if not np.all(np.isfinite(array)):
        raise BalanceInputError(name, "contains non-finite values")
    return array


def validate_measurements(
    x0: Any,
    incidence_matrix: Any,
    measurability: Any,
    tolerance: Any
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Validate the inputs shared by every operation.

    Returns:
        Tuple of float arrays (x0, A, measurability, tolerance)

    Raises:
        BalanceInputError: On missing arguments or dimension mismatch
    """
    x0 = as_vector(x0, "x0")
    if len(x0) == 0:
        raise BalanceInputError("x0", "at least one flow is required")
    n_flows = len(x0)

    A = as_matrix(incidence_matrix, "A")
    if A.shape[0] == 0:
        raise BalanceInputError("A", "at least one node is required")
    if A.shape[1] != n_flows:
        raise BalanceInputError("A", f"number of columns {A.shape[1]} != length of x0 {n_flows}")

    measurability = as_vector(measurability, "measurability", n_flows)
    if not np.all(np.isin(measurability, (0.0, 1.0))):
        raise BalanceInputError("measurability", "entries must be 0 (unmeasured) or 1 (measured)")

    tolerance = as_vector(tolerance, "tolerance", n_flows)
    return x0, A, measurability, tolerance


def validate_bounds(lower: Any, upper: Any, n_flows: int, prefix: str = "") -> Tuple[np.ndarray, np.ndarray]:
    """Validate a lower/upper bound pair; ``lower <= upper`` is required, never clamped."""
    lower = as_vector(lower, f"{prefix}lower", n_flows, allow_inf=True)
    upper = as_vector(upper, f"{prefix}upper", n_flows, allow_inf=True)
    inverted = np.where(lower > upper)[0]
    if len(inverted) > 0:
        k = int(inverted[0])
        raise BalanceInputError(
            f"{prefix}lower",
            f"lower bound {lower[k]} > upper bound {upper[k]} for flow {k}"
        )
    return lower, upper


@dataclass
class BalanceProblem:
    """
    Container for one reconciliation request.

    Holds the numeric input contract plus the identities of flows and nodes,
    which are only used to label search results.
    """
    x0: np.ndarray
    incidence_matrix: np.ndarray
    targets: np.ndarray
    measurability: np.ndarray
    tolerance: np.ndarray
    lower_metrologic: np.ndarray
    upper_metrologic: np.ndarray
    lower_technologic: np.ndarray
    upper_technologic: np.ndarray
    use_technologic: bool = False
    flow_ids: List[str] = field(default_factory=list)
    flow_names: List[str] = field(default_factory=list)
    node_ids: List[str] = field(default_factory=list)

    @classmethod
    def create(
        cls,
        x0: Sequence[float],
        incidence_matrix: Any,
        targets: Optional[Sequence[float]],
        measurability: Sequence[float],
        tolerance: Sequence[float],
        lower_metrologic: Sequence[float],
        upper_metrologic: Sequence[float],
        lower_technologic: Optional[Sequence[float]] = None,
        upper_technologic: Optional[Sequence[float]] = None,
        use_technologic: bool = False,
        flow_ids: Optional[Sequence[str]] = None,
        flow_names: Optional[Sequence[str]] = None,
        node_ids: Optional[Sequence[str]] = None
    ) -> "BalanceProblem":
        """
        Build and validate a problem.

        Technological bounds default to the metrological ones, ``targets``
        defaults to zeros, and tolerances are floored at TOLERANCE_FLOOR.

        Raises:
            BalanceInputError: If any argument is missing or inconsistent
        """
        x0, A, measurability, tolerance = validate_measurements(
            x0, incidence_matrix, measurability, tolerance
        )
        n_nodes, n_flows = A.shape

        if targets is None:
            targets = np.zeros(n_nodes)
        targets = as_vector(targets, "b")
        if len(targets) != n_nodes:
            raise BalanceInputError("b", f"length {len(targets)} != number of nodes {n_nodes}")

        lower_m, upper_m = validate_bounds(lower_metrologic, upper_metrologic, n_flows, "metrologic ")
        if lower_technologic is None:
            lower_technologic = lower_m
        if upper_technologic is None:
            upper_technologic = upper_m
        lower_t, upper_t = validate_bounds(lower_technologic, upper_technologic, n_flows, "technologic ")

        flow_ids = _labels(flow_ids, n_flows, "flow-{}", "flow_ids")
        flow_names = _labels(flow_names, n_flows, "Flow {}", "flow_names")
        node_ids = _labels(node_ids, n_nodes, "node-{}", "node_ids")

        return cls(
            x0=x0,
            incidence_matrix=A,
            targets=targets,
            measurability=measurability,
            tolerance=apply_tolerance_floor(tolerance),
            lower_metrologic=lower_m,
            upper_metrologic=upper_m,
            lower_technologic=lower_t,
            upper_technologic=upper_t,
            use_technologic=use_technologic,
            flow_ids=flow_ids,
            flow_names=flow_names,
            node_ids=node_ids
        )

    @property
    def n_nodes(self) -> int:
        return self.incidence_matrix.shape[0]

    @property
    def n_flows(self) -> int:
        return self.incidence_matrix.shape[1]

    def active_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """Bounds selected by ``use_technologic``."""
        if self.use_technologic:
            return self.lower_technologic, self.upper_technologic
        return self.lower_metrologic, self.upper_metrologic

    def reconcile(self, **kwargs) -> ReconciliationResult:
        from .solver import reconcile
        lower, upper = self.active_bounds()
        return reconcile(
            self.x0, self.incidence_matrix, self.targets, self.measurability,
            self.tolerance, lower, upper, **kwargs
        )

    def global_test(self, **kwargs) -> float:
        from .consistency import global_test
        return global_test(self.x0, self.incidence_matrix, self.measurability, self.tolerance, **kwargs)

    def localize(self, candidates=None, global_test_value=None, **kwargs) -> np.ndarray:
        from .consistency import localize
        return localize(
            self.x0, self.incidence_matrix, self.measurability, self.tolerance,
            candidates, global_test_value, **kwargs
        )

    def tree_search(self, **kwargs) -> List[SearchResult]:
        from .search import tree_search
        return tree_search(self, **kwargs)

    def greedy_search(self, **kwargs) -> List[FlowRecord]:
        from .search import greedy_search
        return greedy_search(self, **kwargs)

    def summary(self) -> Dict[str, Any]:
        """Shape and measurement statistics, mainly for diagnostics."""
        measured = int(np.count_nonzero(self.measurability))
        return {
            "n_nodes": self.n_nodes,
            "n_flows": self.n_flows,
            "n_measured": measured,
            "n_unmeasured": self.n_flows - measured,
            "use_technologic": self.use_technologic,
        }


def _labels(values: Optional[Sequence[str]], count: int, template: str, name: str) -> List[str]:
    if values is None:
        return [template.format(k) for k in range(count)]
    values = [str(v) for v in values]
    if len(values) != count:
        raise BalanceInputError(name, f"length {len(values)} != expected {count}")
    return values
