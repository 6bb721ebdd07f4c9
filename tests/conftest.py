"""
Shared networks for the test suite

- plant: 3 nodes, 7 flows process plant, all flows measured
- leak: chain in -> 0 -> 1 -> 2 -> out where 10 units bypass the metered
  0 -> 1 flow; the imbalance lies exactly along a flow between nodes 0 and 1
- bypass: same chain with the hidden connection between nodes 0 and 2,
  which is not a real flow of the matrix
"""

import numpy as np
import pytest

from flowbalance.core import BalanceProblem


# Chain network: inflow to node 0, 0 -> 1, 1 -> 2, outflow from node 2
CHAIN_A = np.array([
    [1., -1., 0., 0.],
    [0., 1., -1., 0.],
    [0., 0., 1., -1.],
])


def chain_problem(x0, **kwargs) -> BalanceProblem:
    n_flows = CHAIN_A.shape[1]
    return BalanceProblem.create(
        x0=x0,
        incidence_matrix=CHAIN_A,
        targets=np.zeros(3),
        measurability=np.ones(n_flows),
        tolerance=np.ones(n_flows),
        lower_metrologic=np.zeros(n_flows),
        upper_metrologic=np.full(n_flows, 1000.0),
        **kwargs
    )


@pytest.fixture
def plant():
    """Three-node plant with seven measured flows."""
    A = np.array([
        [1, -1, -1, 0, 0, 0, 0],
        [0, 0, 1, -1, -1, 0, 0],
        [0, 0, 0, 0, 1, -1, -1],
    ], dtype=float)
    x0 = np.array([10.005, 3.033, 6.831, 1.985, 5.093, 4.057, 0.991])
    tolerance = np.array([0.2, 0.121, 0.683, 0.04, 0.102, 0.081, 0.02])

    return {
        'x0': x0,
        'A': A,
        'b': np.zeros(3),
        'measurability': np.ones(7),
        'tolerance': tolerance,
        'lower': np.zeros(7),
        'upper': np.full(7, 10000.0),
    }


@pytest.fixture
def leak_problem():
    return chain_problem([100., 90., 100., 100.])


@pytest.fixture
def bypass_problem():
    return chain_problem([100., 90., 90., 100.])


@pytest.fixture
def balanced_problem():
    return chain_problem([100., 100., 100., 100.])
