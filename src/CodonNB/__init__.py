"""
Codon-wise dN/dS with a Negative Binomial background model.

Synonymous codon counts calibrate the overdispersion of the mutation rate;
recurrently mutated codons are then tested against their expected
non-synonymous rate.
"""

from .utils import (
    # Distribution functions
    nb_logpmf,
    nb_loglik,
    nb_sf,
    # Input parsing
    build_substitution_rates,
    relative_mutability,
    # Data classes
    GeneRecord,
    CodonRateVectors,
    DispersionResult,
    CodonDndsResult,
    # Errors and warnings
    CodonDndsError,
    InvalidInput,
    ConfigurationWarning,
    EmptyResultWarning,
)

from .params import CodonDndsSpec

from .rates import (
    RateBuilder,
    build_codon_rates,
    count_synonymous,
    normalize_rates,
)

from .dispersion import (
    DispersionEstimator,
    fit_dispersion,
    profile_likelihood_ci,
)

from .recurrence import (
    RecurrenceTester,
    find_recurrent_codons,
    bh_adjust,
)

from .pipeline import (
    codon_dnds,
    restrict_genes,
)

__all__ = [
    # Classes
    "RateBuilder",
    "DispersionEstimator",
    "RecurrenceTester",
    # Convenience functions
    "codon_dnds",
    "restrict_genes",
    "build_codon_rates",
    "count_synonymous",
    "normalize_rates",
    "fit_dispersion",
    "profile_likelihood_ci",
    "find_recurrent_codons",
    "bh_adjust",
    # Data classes
    "CodonDndsSpec",
    "GeneRecord",
    "CodonRateVectors",
    "DispersionResult",
    "CodonDndsResult",
    # Errors and warnings
    "CodonDndsError",
    "InvalidInput",
    "ConfigurationWarning",
    "EmptyResultWarning",
    # Utilities
    "nb_logpmf",
    "nb_loglik",
    "nb_sf",
    "build_substitution_rates",
    "relative_mutability",
]

__version__ = "0.1.0"
