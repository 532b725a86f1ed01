"""
Overdispersion of the codon-level mutation rate.

Synonymous counts per codon are modelled as Negative Binomial with mean
equal to the expected rate (trinucleotide context x gene mutability) and an
unknown size parameter θ, i.e. a Poisson whose rate is Gamma distributed
around the expectation. The lower θ, the more variation of the mutation
rate across sites that the trinucleotide and gene terms do not capture.

This module estimates:
1. θ_mle: maximum likelihood estimate over a bounded interval
2. CI95: profile-likelihood interval located by iterative grid refinement

The grid search runs a fixed number of rounds and keeps the outermost
points of each bracket, so the interval is slightly conservative.
"""

import logging
from typing import Callable, Optional

import numpy as np
from scipy.optimize import minimize_scalar
from scipy.stats import chi2

from .params import CodonDndsSpec
from .utils import DispersionResult, nb_loglik

logger = logging.getLogger(__name__)


def _crossings(inside: np.ndarray) -> tuple[int, int]:
    """
    Indices bracketing the first entry into and exit from the interval.

    Returns the last grid point before the first outside->inside step and
    the first grid point after the first inside->outside step. Without a
    crossing the grid extremes are used.
    """
    enter = np.flatnonzero(~inside[:-1] & inside[1:])
    leave = np.flatnonzero(inside[:-1] & ~inside[1:])
    lo = int(enter[0]) if enter.size else 0
    hi = int(leave[0]) + 1 if leave.size else inside.size - 1
    return lo, hi


def profile_likelihood_ci(
    nll: Callable[[float], float],
    theta_ml: float,
    nll_ml: float,
    theta_max: float = 1e4,
    bins: int = 5,
    iterations: int = 5,
    level: float = 0.95,
) -> tuple[float, float]:
    """
    Confidence interval for θ by iterative profile-likelihood grid search.

    A θ is inside the interval when
        nll(θ) - nll(θ_mle) < χ²₁(level) / 2

    Round 1 evaluates a coarse log-spaced grid over [0, θ_max]; each later
    round re-grids only the two brackets around the lower and upper
    crossings found in the previous round.

    Parameters
    ----------
    nll : callable
        Negative log-likelihood as a function of θ.
    theta_ml : float
        Maximum likelihood estimate.
    nll_ml : float
        Negative log-likelihood at ``theta_ml``.
    theta_max : float
        Upper end of the search.
    bins : int
        Grid points per bracket (and in the initial log grid).
    iterations : int
        Number of grid rounds.
    level : float
        Confidence level.

    Returns
    -------
    tuple[float, float]
        (low, high) bounds.
    """
    cutoff = chi2.ppf(level, 1) / 2.0
    thetavec = np.array([])
    lo, hi = 0, 0

    for round_ in range(iterations):
        if round_ == 0:
            thetavec = np.sort(
                np.concatenate(
                    [
                        [0.0],
                        np.logspace(-3, 3, bins),
                        [theta_ml, theta_ml * 10, theta_max],
                    ]
                )
            )
        else:
            thetavec = np.sort(
                np.concatenate(
                    [
                        np.linspace(thetavec[lo], thetavec[lo + 1], bins),
                        np.linspace(thetavec[hi - 1], thetavec[hi], bins),
                    ]
                )
            )

        proflik = np.array([nll(theta) for theta in thetavec]) - nll_ml
        inside = proflik < cutoff
        lo, hi = _crossings(inside)
        logger.debug(
            "CI grid round %d: [%g, %g] (%d/%d points inside)",
            round_ + 1,
            thetavec[lo],
            thetavec[hi],
            int(inside.sum()),
            inside.size,
        )

    return float(thetavec[lo]), float(thetavec[hi])


class DispersionEstimator:
    """
    Estimate the Negative Binomial size parameter θ from codon counts.

    Parameters
    ----------
    spec : CodonDndsSpec, optional
        Specification with θ bounds and grid settings.

    Attributes
    ----------
    theta_ml : float
        Maximum likelihood estimate of θ.
    ci95 : tuple[float, float]
        Profile-likelihood interval for θ.
    loglik : float
        Log-likelihood at θ_mle.
    """

    def __init__(self, spec: Optional[CodonDndsSpec] = None):
        self.spec = spec if spec is not None else CodonDndsSpec()

        # Parameters (set after fitting)
        self.theta_ml: Optional[float] = None
        self.ci95: Optional[tuple[float, float]] = None
        self.loglik: float = -np.inf
        self.n_codons: int = 0

    def fit(self, observed: np.ndarray, expected: np.ndarray) -> "DispersionEstimator":
        """
        Fit θ by maximum likelihood and locate its CI95.

        Parameters
        ----------
        observed : np.ndarray
            Observed synonymous counts per codon.
        expected : np.ndarray
            Expected (normalized) synonymous rates per codon.

        Returns
        -------
        DispersionEstimator
            Self, for method chaining.
        """
        observed = np.asarray(observed, dtype=float)
        expected = np.asarray(expected, dtype=float)
        if observed.shape != expected.shape:
            raise ValueError("observed and expected must have the same shape")
        self.n_codons = observed.size

        def nll(theta):
            value = -nb_loglik(observed, expected, theta)
            return value if not np.isnan(value) else np.inf

        ml = minimize_scalar(nll, bounds=self.spec.theta_bounds, method="bounded")
        self.theta_ml = float(ml.x)
        self.loglik = -float(ml.fun)
        logger.debug("theta MLE %g (loglik %g)", self.theta_ml, self.loglik)

        self.ci95 = profile_likelihood_ci(
            nll,
            self.theta_ml,
            float(ml.fun),
            theta_max=self.spec.theta_max,
            bins=self.spec.grid_bins,
            iterations=self.spec.grid_iter,
            level=self.spec.ci_level,
        )
        return self

    def get_result(self) -> DispersionResult:
        """
        Package results into DispersionResult.

        Returns
        -------
        DispersionResult
            θ_mle, CI95 bounds and log-likelihood.
        """
        if self.theta_ml is None:
            raise ValueError("Must call fit() before get_result()")

        return DispersionResult(
            mle=self.theta_ml,
            ci95_low=self.ci95[0],
            ci95_high=self.ci95[1],
            loglik=self.loglik,
            n_codons=self.n_codons,
        )

    def __repr__(self) -> str:
        status = "fitted" if self.theta_ml is not None else "not fitted"
        return f"DispersionEstimator(n_codons={self.n_codons}, status={status})"


# =============================================================================
# Convenience Functions
# =============================================================================


def fit_dispersion(
    observed: np.ndarray,
    expected: np.ndarray,
    spec: Optional[CodonDndsSpec] = None,
) -> DispersionResult:
    """
    Convenience function to fit θ and return results.

    Parameters
    ----------
    observed : np.ndarray
        Observed counts per codon.
    expected : np.ndarray
        Expected rates per codon.
    spec : CodonDndsSpec, optional
        Specification.

    Returns
    -------
    DispersionResult
        Fit results.
    """
    estimator = DispersionEstimator(spec)
    estimator.fit(observed, expected)
    return estimator.get_result()
