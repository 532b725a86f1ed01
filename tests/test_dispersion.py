import numpy as np
import pytest
from scipy.stats import chi2

from CodonNB.dispersion import (
    DispersionEstimator,
    fit_dispersion,
    profile_likelihood_ci,
    _crossings,
)
from CodonNB.params import CodonDndsSpec
from CodonNB.utils import nb_loglik


def simulate_codons(theta, n=5000, seed=42):
    """Negative Binomial counts around Gamma-distributed expected rates."""
    rng = np.random.default_rng(seed)
    expected = rng.gamma(2.0, 0.5, size=n)
    observed = rng.negative_binomial(theta, theta / (theta + expected))
    return observed, expected


class TestCrossings:
    """Tests for grid crossing detection."""

    def test_interior_interval(self):
        inside = np.array([False, False, True, True, False, False])
        assert _crossings(inside) == (1, 4)

    def test_no_crossing_uses_grid_extremes(self):
        inside = np.array([True, True, True])
        assert _crossings(inside) == (0, 2)

    def test_open_lower_end(self):
        inside = np.array([True, True, False])
        assert _crossings(inside) == (0, 2)

    def test_open_upper_end(self):
        inside = np.array([False, True, True])
        assert _crossings(inside) == (0, 2)

    def test_first_crossing_wins(self):
        inside = np.array([False, True, False, True, False])
        assert _crossings(inside) == (0, 2)


class TestDispersionEstimator:
    """Tests for DispersionEstimator."""

    def test_fit_basic(self):
        """MLE recovers the simulated size parameter."""
        observed, expected = simulate_codons(theta=2.0)

        estimator = DispersionEstimator().fit(observed, expected)

        assert estimator.theta_ml is not None
        assert 1.0 < estimator.theta_ml < 4.0
        assert estimator.n_codons == 5000
        assert estimator.loglik == pytest.approx(
            nb_loglik(observed, expected, estimator.theta_ml)
        )

    def test_mle_is_maximum(self):
        observed, expected = simulate_codons(theta=2.0)
        result = fit_dispersion(observed, expected)

        for theta in (result.mle * 0.8, result.mle * 1.25):
            assert nb_loglik(observed, expected, theta) <= result.loglik

    def test_ci_brackets_mle(self):
        observed, expected = simulate_codons(theta=2.0)
        result = fit_dispersion(observed, expected)

        assert result.ci95_low <= result.mle <= result.ci95_high
        assert result.ci95_low < result.ci95_high

    def test_ci_bounds_lie_outside_support(self):
        """Reported bounds are the outermost points of each bracket."""
        observed, expected = simulate_codons(theta=2.0)
        result = fit_dispersion(observed, expected)
        cutoff = chi2.ppf(0.95, 1) / 2

        for bound in (result.ci95_low, result.ci95_high):
            drop = result.loglik - nb_loglik(observed, expected, bound)
            assert drop >= cutoff - 1e-6

    def test_ci_is_tight_after_refinement(self):
        observed, expected = simulate_codons(theta=2.0)
        result = fit_dispersion(observed, expected)
        assert result.ci95_high < 2 * result.mle
        assert result.ci95_low > 0.5 * result.mle

    def test_flat_likelihood_falls_back_to_search_bounds(self):
        """No crossing at all: the interval spans [0, theta_max]."""
        observed = np.zeros(50)
        expected = np.zeros(50)

        result = fit_dispersion(observed, expected)

        assert result.ci95_low == 0.0
        assert result.ci95_high == 1e4
        assert result.ci95_low <= result.mle <= result.ci95_high

    def test_mle_within_bounds(self):
        observed, expected = simulate_codons(theta=500.0, n=500)
        result = fit_dispersion(observed, expected)
        assert 0 <= result.mle <= 1000
        assert result.ci95_low <= result.mle <= result.ci95_high

    def test_custom_grid(self):
        observed, expected = simulate_codons(theta=2.0)
        spec = CodonDndsSpec(grid_bins=7, grid_iter=8)
        result = fit_dispersion(observed, expected, spec)
        assert result.ci95_low <= result.mle <= result.ci95_high

    def test_deterministic(self):
        observed, expected = simulate_codons(theta=2.0)
        first = fit_dispersion(observed, expected)
        second = fit_dispersion(observed, expected)
        assert first == second

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match="same shape"):
            DispersionEstimator().fit(np.zeros(3), np.zeros(4))

    def test_get_result_before_fit(self):
        with pytest.raises(ValueError, match="Must call fit"):
            DispersionEstimator().get_result()

    def test_repr(self):
        assert "not fitted" in repr(DispersionEstimator())


class TestProfileLikelihoodCi:
    def test_quadratic_profile(self):
        """Symmetric profile: bounds converge on θ_mle ± sqrt(2 × cutoff)."""
        cutoff = chi2.ppf(0.95, 1) / 2
        half_width = np.sqrt(2 * cutoff)

        def nll(theta):
            return 0.5 * (theta - 10.0) ** 2

        low, high = profile_likelihood_ci(nll, 10.0, 0.0, iterations=8)

        assert low <= 10.0 - half_width
        assert high >= 10.0 + half_width
        assert low == pytest.approx(10.0 - half_width, abs=0.05)
        assert high == pytest.approx(10.0 + half_width, abs=0.05)

    def test_single_round(self):
        def nll(theta):
            return 0.5 * (theta - 10.0) ** 2

        low, high = profile_likelihood_ci(nll, 10.0, 0.0, iterations=1)
        # Initial grid: 0, 1e-3, 0.0316, 1, 10, 31.6, 100, 1000, 1e4
        assert low == 1.0
        assert high == pytest.approx(10 ** 1.5)
