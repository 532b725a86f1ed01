from dataclasses import dataclass, field
from typing import Optional


_DEFAULT_MIN_RECURR = 2
_DEFAULT_THETA_OPTION = "mle"
_DEFAULT_SYN_DRIVERS = ("TP53:T125T",)
_DEFAULT_THETA_BOUNDS = (0.0, 1000.0)
_DEFAULT_THETA_MAX = 1e4
_DEFAULT_GRID_BINS = 5
_DEFAULT_GRID_ITER = 5
_DEFAULT_CI_LEVEL = 0.95
_DEFAULT_CONTINUITY_CORRECTION = 0.5
_DEFAULT_PROGRESS_EVERY = 2000


def _as_tuple(value):
    if value is None:
        return None
    if isinstance(value, str):
        return (value,)
    return tuple(value)


@dataclass
class CodonDndsSpec:
    """
    Complete specification of a codon-wise dN/dS run.
    Owns *all* recognised options and numeric defaults.
    """

    # Reporting
    min_recurr: int = _DEFAULT_MIN_RECURR
    gene_list: Optional[tuple] = None
    theta_option: str = _DEFAULT_THETA_OPTION

    # Background model
    syn_drivers: tuple = field(default_factory=lambda: _DEFAULT_SYN_DRIVERS)

    # Dispersion search
    theta_bounds: tuple = _DEFAULT_THETA_BOUNDS
    theta_max: float = _DEFAULT_THETA_MAX
    grid_bins: int = _DEFAULT_GRID_BINS
    grid_iter: int = _DEFAULT_GRID_ITER
    ci_level: float = _DEFAULT_CI_LEVEL

    # Recurrence test
    continuity_correction: float = _DEFAULT_CONTINUITY_CORRECTION

    progress_every: int = _DEFAULT_PROGRESS_EVERY

    def __post_init__(self):
        self.gene_list = _as_tuple(self.gene_list)
        self.syn_drivers = _as_tuple(self.syn_drivers) or ()
        self.theta_bounds = tuple(float(b) for b in self.theta_bounds)
        if self.min_recurr < 1:
            raise ValueError("min_recurr must be >= 1")
        if len(self.theta_bounds) != 2 or self.theta_bounds[0] >= self.theta_bounds[1]:
            raise ValueError("theta_bounds must be an increasing (low, high) pair")
        if self.theta_bounds[0] < 0:
            raise ValueError("theta_bounds must be nonnegative")
        if self.theta_max < self.theta_bounds[1]:
            raise ValueError("theta_max must be >= the upper theta bound")
        if self.grid_bins < 2:
            raise ValueError("grid_bins must be >= 2")
        if self.grid_iter < 1:
            raise ValueError("grid_iter must be >= 1")
        if not 0 < self.ci_level < 1:
            raise ValueError("ci_level must lie in (0, 1)")

    @property
    def conservative(self) -> bool:
        """Anything other than "mle" selects the CI95 lower bound."""
        return self.theta_option != "mle"
