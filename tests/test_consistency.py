"""
Consistency Test Tests

Global test:
- Exact value on a chain network with a known imbalance
- Invariance under joint scaling of x0 and tolerance
- Singular covariance handled by the pseudo-inverse
- Adding the right flow strictly decreases the score

GLR localization:
- Matrix shape, untouched cells and explicit candidate sets
"""

import numpy as np
import pytest
from scipy.stats import chi2

from flowbalance.core import BalanceInputError
from flowbalance.consistency import (
    global_test, global_test_statistic, localize, chi_squared_threshold, flow_variances
)
from flowbalance.flows import augment

from conftest import CHAIN_A


SIGMA2 = (1.0 / 1.96) ** 2


def chain_args(x0):
    return np.array(x0, dtype=float), CHAIN_A, np.ones(4), np.ones(4)


class TestGlobalTest:
    """Network-wide chi-squared consistency score."""

    def test_known_value(self):
        # r = (10, -10, 0), r_T (A A_T)^-1 r = 75
        score = global_test(*chain_args([100., 90., 100., 100.]))
        expected = 75.0 / SIGMA2 / chi2.ppf(0.95, 3)

        np.testing.assert_allclose(score, expected, rtol=1e-9)
        assert score >= 1.0

    def test_balanced_network_scores_zero(self):
        score = global_test(*chain_args([100., 100., 100., 100.]))
        assert score == pytest.approx(0.0, abs=1e-12)

    def test_small_noise_is_consistent(self):
        score = global_test(*chain_args([100., 100.3, 99.8, 100.1]))
        assert 0.0 < score < 1.0

    def test_threshold(self):
        assert chi_squared_threshold(3) == pytest.approx(7.814727903, rel=1e-8)
        assert chi_squared_threshold(3, alpha=0.01) > chi_squared_threshold(3)

    @pytest.mark.parametrize("factor", [0.01, 3.7, 1000.0])
    def test_scale_invariance(self, plant, factor):
        measurability = plant['measurability'].copy()
        measurability[1] = 0.0

        base = global_test(plant['x0'], plant['A'], measurability, plant['tolerance'])
        scaled = global_test(plant['x0'] * factor, plant['A'], measurability, plant['tolerance'] * factor)

        np.testing.assert_allclose(scaled, base, rtol=1e-6)

    def test_singular_covariance(self):
        # Ring 0 -> 1 -> 2 -> 0: rows are linearly dependent, V is singular
        A = np.array([
            [-1., 0., 1.],
            [1., -1., 0.],
            [0., 1., -1.],
        ])
        x0 = np.array([10., 11., 10.])
        V = (A * flow_variances(x0, np.ones(3), np.ones(3))) @ A.T
        assert np.linalg.matrix_rank(V) == 2

        score = global_test(x0, A, np.ones(3), np.ones(3))
        assert np.isfinite(score)
        assert score > 0.0

    def test_adding_true_flow_decreases_score(self):
        x0, A, measurability, tolerance = chain_args([100., 90., 100., 100.])
        before = global_test(x0, A, measurability, tolerance)
        after = global_test(*augment(x0, A, measurability, tolerance, [(0, 1)]))

        assert after < before
        assert after < 1.0

    def test_unmeasured_variance(self):
        variances = flow_variances(np.array([5., 20.]), np.array([1., 0.]), np.array([1.96, 1.]))
        np.testing.assert_allclose(variances, [1.0, (100. * 20.) ** 2])

    def test_non_positive_maximum_warns(self):
        with pytest.warns(UserWarning, match="unmeasured variance is not meaningful"):
            variances = flow_variances(np.array([-5., -2.]), np.array([1., 0.]), np.array([1., 1.]))
        # A negative maximum still yields a positive variance
        assert variances[1] == pytest.approx((100. * -2.) ** 2)

    def test_statistic_is_score_times_threshold(self):
        args = chain_args([100., 90., 100., 100.])
        statistic = global_test_statistic(*args)
        np.testing.assert_allclose(statistic, global_test(*args) * chi_squared_threshold(3))

    def test_invalid_alpha(self):
        with pytest.raises(BalanceInputError, match="alpha"):
            global_test(*chain_args([100., 90., 100., 100.]), alpha=1.5)

    def test_measurability_must_be_binary(self):
        x0, A, _, tolerance = chain_args([100., 90., 100., 100.])
        with pytest.raises(BalanceInputError, match="measurability"):
            global_test(x0, A, [1., 0.5, 1., 1.], tolerance)


class TestLocalization:
    """GLR localization matrix."""

    def test_all_pairs(self):
        args = chain_args([100., 90., 100., 100.])
        glr = localize(*args)

        assert glr.shape == (3, 3)
        # Only the upper triangle is evaluated
        assert np.all(np.tril(glr) == 0.0)
        assert glr[0, 1] > glr[0, 2] > glr[1, 2] > 0.0

    def test_known_scores(self):
        args = chain_args([100., 90., 100., 100.])
        threshold = chi2.ppf(0.95, 3)
        glr = localize(*args)

        # A flow between 0 and 1 explains the whole imbalance
        np.testing.assert_allclose(glr[0, 1], 75.0 / SIGMA2 / threshold, rtol=1e-4)
        # Between 0 and 2 it removes 25 of 75, between 1 and 2 it removes 25/3
        np.testing.assert_allclose(glr[0, 2], 25.0 / SIGMA2 / threshold, rtol=1e-4)
        np.testing.assert_allclose(glr[1, 2], 25.0 / 3.0 / SIGMA2 / threshold, rtol=1e-4)

    def test_explicit_candidates(self):
        args = chain_args([100., 90., 100., 100.])
        glr = localize(*args, candidates=[(1, 2, 2), (2, 2)])

        assert glr[1, 2] > 0.0
        mask = np.ones((3, 3), dtype=bool)
        mask[1, 2] = False
        assert np.all(glr[mask] == 0.0)

    def test_empty_candidates(self):
        glr = localize(*chain_args([100., 90., 100., 100.]), candidates=[])
        assert np.all(glr == 0.0)

    def test_reversed_pair(self):
        args = chain_args([100., 90., 100., 100.])
        forward = localize(*args, candidates=[(0, 1)])
        backward = localize(*args, candidates=[(1, 0)])

        np.testing.assert_allclose(backward[1, 0], forward[0, 1], rtol=1e-6)

    def test_supplied_global_test_value(self):
        args = chain_args([100., 90., 100., 100.])
        computed = localize(*args)
        supplied = localize(*args, global_test_value=global_test(*args))

        np.testing.assert_allclose(supplied, computed)

    def test_candidate_out_of_range(self):
        with pytest.raises(BalanceInputError, match="candidates"):
            localize(*chain_args([100., 90., 100., 100.]), candidates=[(0, 5)])

    def test_inputs_not_modified(self):
        x0, A, measurability, tolerance = chain_args([100., 90., 100., 100.])
        A_before = A.copy()
        localize(x0, A, measurability, tolerance)

        np.testing.assert_array_equal(A, A_before)
        assert len(x0) == 4
