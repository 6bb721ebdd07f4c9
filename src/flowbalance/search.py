"""
Fault-localization search over hypothetical flows

Both strategies share one routine:
1. Augment the matrix with the flows accumulated from the root to the
   current tree node
2. Compute the global test and the GLR localization matrix there
3. Take the k-th best positive candidate, k = number of children so far
4. Descend into a new child while the node is still inconsistent
   (global test >= 1) and the fan-out and depth bounds allow it,
   otherwise backtrack to the parent

The tree lives in a networkx.DiGraph arena: integer node ids, edges
parent -> child, root 0. The greedy best path is the same routine with a
fan-out of one and no depth bound.
"""

import time
import uuid
import numpy as np
import networkx as nx
from typing import Iterable, List, Optional, Sequence, Tuple, Union

from .core import (
    BalanceProblem, BalanceInputError, FlowBoundsOffset, FlowDescriptor,
    FlowRecord, SearchCancelled, SearchResult
)
from .consistency import all_pairs, chi_squared_threshold, global_test_statistic, localize
from .flows import augment, extract_flows, find_flow
from .utils import ALPHA, MAX_CHILDREN, MAX_DEPTH


ROOT = 0
NEW_FLOW_NAME = "New flow"

Pair = Tuple[int, int]
Candidates = Union[str, Iterable[Sequence[int]]]


def rank_candidates(glr: np.ndarray) -> List[Tuple[Pair, float]]:
    """
    Cells with a positive score, best first.

    Ties keep row-major order, so the first entry is what argmax over the
    flattened matrix returns.
    """
    flat = glr.ravel()
    order = np.argsort(-flat, kind='stable')
    n_cols = glr.shape[1]
    ranking = []
    for index in order:
        score = float(flat[index])
        if score <= 0:
            break
        ranking.append(((int(index // n_cols), int(index % n_cols)), score))
    return ranking


def resolve_candidates(candidates: Candidates, original_flows: Sequence[FlowDescriptor], n_nodes: int) -> List[Pair]:
    """
    Candidate node pairs for the search.

    'flows' takes the real flows of the original matrix (boundary columns
    never qualify), 'all' takes every pair i < j; an explicit iterable of
    pairs is used as given.
    """
    if isinstance(candidates, str):
        if candidates == 'flows':
            pairs = [(flow.source, flow.destination) for flow in original_flows]
        elif candidates == 'all':
            pairs = list(all_pairs(n_nodes))
        else:
            raise BalanceInputError("candidates", f"expected 'flows', 'all' or pairs, got {candidates!r}")
    else:
        pairs = [(int(c[0]), int(c[1])) for c in candidates]

    # Parallel flows share one GLR cell
    return list(dict.fromkeys(pairs))


def _parent(tree: nx.DiGraph, node: int) -> Optional[int]:
    return next(iter(tree.predecessors(node)), None)


def _check_search_bounds(max_children: int, max_depth: Optional[int]) -> None:
    if max_children < 1:
        raise BalanceInputError("max_children", f"must be at least 1, got {max_children}")
    if max_depth is not None and max_depth < 0:
        raise BalanceInputError("max_depth", f"must be non-negative, got {max_depth}")


def build_search_tree(
    problem: BalanceProblem,
    max_children: int = MAX_CHILDREN,
    max_depth: Optional[int] = MAX_DEPTH,
    candidates: Candidates = 'flows',
    cancel_event=None,
    timeout: Optional[float] = None,
    alpha: float = ALPHA
) -> nx.DiGraph:
    """
    Run the bounded search and return the whole tree.

    Node attributes:
    - flows: tuple of (i, j) pairs added from the root
    - test_value: global test after those additions
    - ranking: cached candidate ranking of the node, without the pairs
      already on the path from the root

    Args:
        problem: Balance problem (only measurements and A are used)
        max_children: Fan-out bound per node
        max_depth: Depth bound, None for unbounded
        candidates: 'flows', 'all' or explicit (i, j) pairs
        cancel_event: Object with is_set(), e.g. threading.Event (optional)
        timeout: Wall-clock budget in seconds (optional)
        alpha: Significance level

    Returns:
        networkx.DiGraph of search nodes

    Raises:
        SearchCancelled: If cancelled or out of time before a node expansion
    """
    _check_search_bounds(max_children, max_depth)

    x0 = problem.x0
    A = problem.incidence_matrix
    measurability = problem.measurability
    tolerance = problem.tolerance
    n_nodes = A.shape[0]

    pairs = resolve_candidates(candidates, extract_flows(A), n_nodes)
    threshold = chi_squared_threshold(n_nodes, alpha)
    deadline = time.monotonic() + timeout if timeout is not None else None

    tree = nx.DiGraph()
    tree.add_node(ROOT, flows=(), test_value=None, ranking=None)

    current = ROOT
    visits = 0
    while current is not None:
        if cancel_event is not None and cancel_event.is_set():
            raise SearchCancelled(visits)
        if deadline is not None and time.monotonic() > deadline:
            raise SearchCancelled(visits, "timed out")
        visits += 1

        node = tree.nodes[current]
        if node['ranking'] is None:
            augmented = augment(x0, A, measurability, tolerance, node['flows'])
            test_value = global_test_statistic(*augmented) / threshold

            used = set(node['flows'])
            unused = [pair for pair in pairs if pair not in used]
            glr = localize(*augmented, unused, test_value, alpha)

            node['test_value'] = test_value
            node['ranking'] = rank_candidates(glr)

        k = tree.out_degree(current)
        depth = len(node['flows'])

        if (k < max_children
                and (max_depth is None or depth < max_depth)
                and k < len(node['ranking'])
                and node['test_value'] >= 1):
            pair, score = node['ranking'][k]
            child = tree.number_of_nodes()
            tree.add_node(child, flows=node['flows'] + (pair,), test_value=node['test_value'] - score, ranking=None)
            tree.add_edge(current, child)
            current = child
        else:
            current = _parent(tree, current)

    return tree


def leaves(tree: nx.DiGraph) -> List[int]:
    """Leaf ids, best (lowest test value) first."""
    found = [n for n in tree.nodes if tree.out_degree(n) == 0]
    return sorted(found, key=lambda n: tree.nodes[n]['test_value'])


def path_test_values(tree: nx.DiGraph, node: int) -> List[float]:
    """Test values of the nodes from the first child below the root down to ``node``."""
    values = []
    while node != ROOT:
        values.append(tree.nodes[node]['test_value'])
        node = _parent(tree, node)
    return values[::-1]


def flow_record(
    problem: BalanceProblem,
    original_flows: Sequence[FlowDescriptor],
    pair: Pair,
    test_value: float
) -> FlowRecord:
    """
    Describe one added flow.

    A pair matching a real flow keeps that flow's identity and gets a
    suggested additional flow with bounds relative to its x0; any other
    pair is a new connection.
    """
    i, j = pair
    source_node = problem.node_ids[i]
    destination_node = problem.node_ids[j]

    existing = find_flow(original_flows, i, j)
    if existing is None:
        return FlowRecord(
            flow_id=str(uuid.uuid4()),
            flow_name=NEW_FLOW_NAME,
            original_index=-1,
            source=i,
            destination=j,
            source_node=source_node,
            destination_node=destination_node,
            test_value=test_value
        )

    k = existing.column
    x0_k = problem.x0[k]
    bounds = FlowBoundsOffset(
        name=f"{problem.flow_names[k]} (additional)",
        metrologic=(problem.lower_metrologic[k] - x0_k, problem.upper_metrologic[k] - x0_k),
        technologic=(problem.lower_technologic[k] - x0_k, problem.upper_technologic[k] - x0_k),
        tolerance=float(problem.tolerance[k])
    )
    return FlowRecord(
        flow_id=problem.flow_ids[k],
        flow_name=problem.flow_names[k],
        original_index=k,
        source=i,
        destination=j,
        source_node=source_node,
        destination_node=destination_node,
        test_value=test_value,
        bounds=bounds
    )


def _leaf_result(problem: BalanceProblem, original_flows, tree: nx.DiGraph, leaf: int) -> SearchResult:
    flows = tree.nodes[leaf]['flows']
    values = path_test_values(tree, leaf)
    records = [flow_record(problem, original_flows, pair, value) for pair, value in zip(flows, values)]
    return SearchResult(flows=records, test_value=tree.nodes[leaf]['test_value'])


def tree_search(
    problem: BalanceProblem,
    max_children: int = MAX_CHILDREN,
    max_depth: Optional[int] = MAX_DEPTH,
    candidates: Candidates = 'flows',
    cancel_event=None,
    timeout: Optional[float] = None,
    alpha: float = ALPHA
) -> List[SearchResult]:
    """
    Ranked chains of hypothetical flows that explain the imbalance.

    Every leaf of the bounded search tree is reported, lowest (closest to
    consistency) test value first. The search space is at most
    max_children ** max_depth nodes. A pair already added on the path from
    the root is not offered again below it.

    Returns:
        List of SearchResult
    """
    tree = build_search_tree(problem, max_children, max_depth, candidates, cancel_event, timeout, alpha)
    original_flows = extract_flows(problem.incidence_matrix)
    return [_leaf_result(problem, original_flows, tree, leaf) for leaf in leaves(tree)]


def greedy_search(
    problem: BalanceProblem,
    candidates: Candidates = 'flows',
    cancel_event=None,
    timeout: Optional[float] = None,
    alpha: float = ALPHA
) -> List[FlowRecord]:
    """
    Greedy best path: keep adding the best-scoring unused candidate until
    the network is consistent or nothing improves the global test.

    Returns:
        Added flows in order; each record carries the global test after its addition
    """
    results = tree_search(
        problem,
        max_children=1,
        max_depth=None,
        candidates=candidates,
        cancel_event=cancel_event,
        timeout=timeout,
        alpha=alpha
    )
    return results[0].flows
