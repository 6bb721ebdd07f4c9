"""
Flow extraction and matrix augmentation

A column of the incidence matrix with one -1 (source node) and one +1
(destination node) is a real directed flow between two nodes. Columns
lacking either entry are boundary flows (external source or sink) and are
never candidates for fault localization.
"""

import numpy as np
from typing import Iterable, List, Optional, Sequence, Tuple

from .core import FlowDescriptor, as_matrix
from .utils import ZERO_TOL


def extract_flows(incidence_matrix) -> List[FlowDescriptor]:
    """
    Recover the (source, destination, column) triples of real flows.

    For each column the first row holding -1 is the source and the first
    row holding +1 is the destination; columns missing one of them are
    skipped. Order follows the columns.

    Args:
        incidence_matrix: Incidence matrix A (nodes x flows)

    Returns:
        List of FlowDescriptor
    """
    A = as_matrix(incidence_matrix, "A")
    flows = []
    for k in range(A.shape[1]):
        column = A[:, k]
        sources = np.where(np.abs(column + 1.0) < ZERO_TOL)[0]
        destinations = np.where(np.abs(column - 1.0) < ZERO_TOL)[0]
        if len(sources) == 0 or len(destinations) == 0:
            continue
        flows.append(FlowDescriptor(int(sources[0]), int(destinations[0]), k))
    return flows


def find_flow(flows: Sequence[FlowDescriptor], source: int, destination: int) -> Optional[FlowDescriptor]:
    """First flow running from ``source`` to ``destination``, or None."""
    for flow in flows:
        if flow.source == source and flow.destination == destination:
            return flow
    return None


def candidate_column(n_nodes: int, i: int, j: int) -> np.ndarray:
    """Incidence column of a hypothetical flow: +1 at node i, -1 at node j."""
    column = np.zeros(n_nodes)
    column[i] = 1.0
    column[j] = -1.0
    return column


def augment(
    x0: np.ndarray,
    incidence_matrix: np.ndarray,
    measurability: np.ndarray,
    tolerance: np.ndarray,
    added_flows: Iterable[Tuple[int, int]]
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Append one unmeasured column per hypothetical flow.

    The new flows carry x0 = 0, measurability = 0 and tolerance = 0. The
    inputs are never modified; fresh arrays are returned.

    Args:
        x0: Measurement vector
        incidence_matrix: Incidence matrix A
        measurability: Measurability flags
        tolerance: Measurement tolerances
        added_flows: (i, j) node pairs

    Returns:
        Tuple of augmented (x0, A, measurability, tolerance)
    """
    added_flows = list(added_flows)
    n_nodes = incidence_matrix.shape[0]
    if not added_flows:
        return x0.copy(), incidence_matrix.copy(), measurability.copy(), tolerance.copy()

    columns = np.column_stack([candidate_column(n_nodes, i, j) for i, j in added_flows])
    zeros = np.zeros(len(added_flows))

    return (
        np.concatenate([x0, zeros]),
        np.hstack([incidence_matrix, columns]),
        np.concatenate([measurability, zeros]),
        np.concatenate([tolerance, zeros])
    )
