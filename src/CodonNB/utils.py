from dataclasses import dataclass, field
from typing import Optional
import numpy as np
import pandas as pd
from scipy.special import gammaln, xlogy
from scipy.stats import nbinom


# =============================================================================
# Errors and warnings
# =============================================================================


class CodonDndsError(Exception):
    """Base class for codon-wise dN/dS errors."""


class InvalidInput(CodonDndsError, ValueError):
    """Input tables or gene records do not have the expected shape."""


class ConfigurationWarning(UserWarning):
    """Requested genes are absent from the dataset."""


class EmptyResultWarning(UserWarning):
    """No codon reached the minimum recurrence."""


# =============================================================================
# Distribution functions
# =============================================================================


def nb_logpmf(x: np.ndarray, mu: np.ndarray, theta: float) -> np.ndarray:
    """
    Compute log probability mass function of the Negative Binomial
    distribution in its mean/size parameterization.

    The NB PMF is:
        P(x | μ, θ) = Γ(x + θ) / (Γ(θ) x!) × (θ / (θ + μ))^θ × (μ / (θ + μ))^x

    In log-space (for numerical stability):
        log P = lnΓ(x + θ) - lnΓ(θ) - lnΓ(x + 1)
                - θ log(1 + μ/θ) + x log μ - x log(θ + μ)

    θ = 0 and μ = 0 both collapse to a point mass at zero.

    Parameters
    ----------
    x : np.ndarray
        Observed counts.
    mu : np.ndarray
        Expected counts (mean), μ >= 0.
    theta : float
        Size parameter (θ >= 0). Larger θ means closer to Poisson.

    Returns
    -------
    np.ndarray
        Log-probabilities for each observation.
    """
    x = np.asarray(x, dtype=float)
    mu = np.asarray(mu, dtype=float)

    if theta <= 0:
        return np.where(x == 0, 0.0, -np.inf)

    with np.errstate(divide="ignore", invalid="ignore"):
        return (
            gammaln(x + theta)
            - gammaln(theta)
            - gammaln(x + 1.0)
            - theta * np.log1p(mu / theta)
            + xlogy(x, mu)
            - x * np.log(theta + mu)
        )


def nb_loglik(x: np.ndarray, mu: np.ndarray, theta: float) -> float:
    """Total NB log-likelihood of counts ``x`` given means ``mu``."""
    return float(np.sum(nb_logpmf(x, mu, theta)))


def nb_sf(q: np.ndarray, mu: np.ndarray, theta: float) -> np.ndarray:
    """
    Upper tail P(X > q) of the Negative Binomial with mean ``mu`` and size
    ``theta``. Non-integer ``q`` is floored, so ``q = k - 0.5`` gives
    P(X >= k).
    """
    q = np.asarray(q, dtype=float)
    mu = np.asarray(mu, dtype=float)

    if theta <= 0:
        return np.where(q < 0, 1.0, 0.0)

    return nbinom.sf(q, theta, theta / (theta + mu))


# =============================================================================
# Input parsing
# =============================================================================


_SELECTION_PARAMS = ("wmis", "wnon", "wspl", "t")
_REFERENCE_RATE = "TTT>TGT"
_N_SUBMODEL_PARAMS = 195
_CHANGES_PER_CODON = 9


def require_columns(table: pd.DataFrame, columns, name: str) -> None:
    """Raise InvalidInput if ``table`` lacks any of ``columns``."""
    missing = [c for c in columns if c not in table.columns]
    if missing:
        raise InvalidInput(f"{name} is missing columns: {', '.join(missing)}")


def build_substitution_rates(mle_submodel: pd.DataFrame) -> pd.Series:
    """
    Convert the fitted substitution model into absolute trinucleotide rates.

    The model table holds 191 relative trinucleotide rates, three selection
    parameters (wmis, wnon, wspl) and the global rate ``t``. The missing
    reference rate (TTT>TGT) is fixed to 1 relative to ``t``.

    Parameters
    ----------
    mle_submodel : pd.DataFrame
        Table with columns ``name`` and ``mle`` and exactly 195 rows.

    Returns
    -------
    pd.Series
        192 absolute rates indexed by trinucleotide label, sorted by label.
    """
    require_columns(mle_submodel, ("name", "mle"), "mle_submodel")
    if len(mle_submodel) != _N_SUBMODEL_PARAMS:
        raise InvalidInput(
            "Invalid input: the substitution model must contain "
            f"{_N_SUBMODEL_PARAMS} parameters (found {len(mle_submodel)}). "
            "Use the default trinucleotide substitution model."
        )

    sm = pd.Series(
        mle_submodel["mle"].to_numpy(dtype=float),
        index=mle_submodel["name"].astype(str).to_numpy(),
    )
    missing = [p for p in _SELECTION_PARAMS if p not in sm.index]
    if missing:
        raise InvalidInput(
            f"Invalid input: substitution model lacks parameters {', '.join(missing)}"
        )

    sm[_REFERENCE_RATE] = 1.0
    sm = sm * sm["t"]
    sm = sm.drop(list(_SELECTION_PARAMS))
    return sm.sort_index()


def relative_mutability(genemuts: pd.DataFrame) -> pd.Series:
    """Per-gene mutability: expected syn under the model / under the null."""
    require_columns(genemuts, ("gene_name", "exp_syn", "exp_syn_cv"), "genemuts")
    relmr = genemuts["exp_syn_cv"].to_numpy(dtype=float) / genemuts[
        "exp_syn"
    ].to_numpy(dtype=float)
    return pd.Series(relmr, index=genemuts["gene_name"].astype(str).to_numpy())


def codon_number(label: str) -> int:
    """Numeric codon position from a codon label (``"R175"`` -> 175)."""
    return int(label[1:])


def syn_codon_number(aachange: str) -> int:
    """Numeric codon position from a full change string (``"T125T"`` -> 125)."""
    return int(aachange[1:-1])


# =============================================================================
# Data classes
# =============================================================================


@dataclass
class GeneRecord:
    """
    Coding sequence of one gene annotated at the codon level.

    ``codon_rates`` holds, for every codon and every possible single
    nucleotide change (3 positions x 3 alternative bases = 9 per codon),
    the 0-based index of its trinucleotide rate in the label-sorted rate
    vector. ``codon_impact`` classifies the same changes as synonymous (1),
    missense (2) or nonsense (3).
    """

    gene_name: str
    cds_length: int
    codon_rates: np.ndarray = field(repr=False)
    codon_impact: Optional[np.ndarray] = field(default=None, repr=False)

    def __post_init__(self):
        self.codon_rates = np.asarray(self.codon_rates, dtype=int)
        if self.codon_impact is not None:
            self.codon_impact = np.asarray(self.codon_impact, dtype=int)

    @property
    def n_codons(self) -> int:
        return self.cds_length // 3

    def validate(self, n_rates: Optional[int] = None) -> None:
        """Raise InvalidInput if the record cannot be used."""
        if self.codon_impact is None:
            raise InvalidInput(
                f"Invalid input: gene {self.gene_name} lacks codon-level "
                "annotation (codon_impact)."
            )
        if self.cds_length % 3 != 0:
            raise InvalidInput(
                f"Invalid input: CDS length of {self.gene_name} is not a multiple of 3"
            )
        n_changes = self.n_codons * _CHANGES_PER_CODON
        if self.codon_rates.shape != (n_changes,) or self.codon_impact.shape != (
            n_changes,
        ):
            raise InvalidInput(
                f"Invalid input: {self.gene_name} must have {n_changes} codon "
                "rates and impacts (9 per codon)"
            )
        if n_rates is not None and self.codon_rates.size > 0:
            if self.codon_rates.min() < 0 or self.codon_rates.max() >= n_rates:
                raise InvalidInput(
                    f"Invalid input: {self.gene_name} references rates outside "
                    f"[0, {n_rates})"
                )


@dataclass
class CodonRateVectors:
    """
    Gene-contiguous per-codon vectors across all processed genes.

    ``offsets`` maps each gene to the start of its slice; the slice length
    is the gene's codon count.
    """

    observed_syn: np.ndarray
    expected_syn: np.ndarray
    expected_nonsyn: np.ndarray
    gene_order: list
    offsets: dict
    n_codons_by_gene: dict

    @property
    def n_codons(self) -> int:
        """Size of the codon universe."""
        return int(self.expected_syn.size)

    def gene_slice(self, gene: str) -> slice:
        start = self.offsets[gene]
        return slice(start, start + self.n_codons_by_gene[gene])

    def nonsyn_rates(self, gene: str) -> np.ndarray:
        """Expected non-synonymous rate per codon of ``gene``."""
        return self.expected_nonsyn[self.gene_slice(gene)]


@dataclass
class DispersionResult:
    """
    Negative binomial size parameter fitted on synonymous codon counts.
    """

    mle: float
    ci95_low: float
    ci95_high: float
    loglik: float
    n_codons: int

    def as_series(self) -> pd.Series:
        """(MLE, CI95low, CI95_high) as a labelled Series."""
        return pd.Series(
            [self.mle, self.ci95_low, self.ci95_high],
            index=["MLE", "CI95low", "CI95_high"],
        )

    def select(self, theta_option: str = "mle") -> float:
        """
        Operating theta for the recurrence test.

        "mle" returns the point estimate; any other value returns the
        conservative CI95 lower bound.
        """
        if theta_option == "mle":
            return self.mle
        return self.ci95_low


@dataclass
class CodonDndsResult:
    """
    Results of a codon-wise dN/dS run.
    """

    recurcodons: Optional[pd.DataFrame]
    recurcodons_ext: Optional[pd.DataFrame]
    theta: DispersionResult
    theta_used: float

    # Vectors used for fitting
    rates: CodonRateVectors = field(repr=False)

    @property
    def n_recurrent(self) -> int:
        """Number of reported codons."""
        if self.recurcodons is None:
            return 0
        return len(self.recurcodons)
