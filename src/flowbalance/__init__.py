"""
pyFlowBalance - reconciliation of flow measurements in conservation networks

Adjusts noisy flow measurements so that every node balances, tests the
measurement set for statistical consistency and localizes the connections
that best explain an inconsistency.

Modules:
- core: Data structures, validation and errors
- solver: Weighted least-squares reconciliation (convex QP)
- consistency: Global chi-squared test and GLR localization
- flows: Flow extraction and matrix augmentation
- search: Tree search and greedy best-path fault localization
- utils: Constants and numerical helpers
"""

# Core functionality
from .core import (
    BalanceProblem,
    ReconciliationResult,
    FlowDescriptor,
    FlowRecord,
    FlowBoundsOffset,
    SearchResult,
    BalanceInputError,
    InfeasibleProblemError,
    SolverError,
    SearchCancelled,
)
from .solver import reconcile
from .consistency import global_test, localize, chi_squared_threshold
from .flows import extract_flows, augment
from .search import tree_search, greedy_search, build_search_tree

__version__ = "0.1.0"
__all__ = [
    # Core
    "BalanceProblem",
    "ReconciliationResult",
    "FlowDescriptor",
    "FlowRecord",
    "FlowBoundsOffset",
    "SearchResult",
    "BalanceInputError",
    "InfeasibleProblemError",
    "SolverError",
    "SearchCancelled",

    # Solver
    "reconcile",

    # Consistency tests
    "global_test",
    "localize",
    "chi_squared_threshold",

    # Flows
    "extract_flows",
    "augment",

    # Search
    "tree_search",
    "greedy_search",
    "build_search_tree",
]
