"""
Codon-wise dN/dS and significance of recurrently mutated codons.

Non-synonymous events are counted per codon. Codons reaching the minimum
recurrence are compared against their background non-synonymous rate with
a Negative Binomial upper tail, using the size parameter fitted on
synonymous sites, and q-values are computed over the whole codon universe.
"""

import logging
import warnings
from typing import Optional

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from .params import CodonDndsSpec
from .utils import (
    CodonRateVectors,
    EmptyResultWarning,
    InvalidInput,
    codon_number,
    nb_sf,
    require_columns,
)

logger = logging.getLogger(__name__)

NONSYNONYMOUS_IMPACTS = ("Missense", "Nonsense")

_ANNOT_COLUMNS = ("chr", "gene", "pos", "ref", "mut", "aachange", "impact")
_RECUR_COLUMNS = ["chr", "gene", "codon", "freq", "mu", "dnds", "pval", "qval"]


def bh_adjust(pvals: np.ndarray, n: Optional[int] = None) -> np.ndarray:
    """
    Benjamini-Hochberg q-values with ``n`` total tests.

    Tests that were possible but not reported are treated as p = 1: they
    rank last and are capped at 1, so they only enlarge the denominator.

    Parameters
    ----------
    pvals : np.ndarray
        Reported p-values.
    n : int, optional
        Size of the test universe (>= len(pvals)). Defaults to len(pvals).

    Returns
    -------
    np.ndarray
        q-values in the order of ``pvals``.
    """
    pvals = np.asarray(pvals, dtype=float)
    if pvals.size == 0:
        return pvals.copy()
    n = pvals.size if n is None else int(n)
    if n < pvals.size:
        raise ValueError("n must be at least the number of p-values")

    padded = np.concatenate([pvals, np.ones(n - pvals.size)])
    return multipletests(padded, method="fdr_bh")[1][: pvals.size]


def tabulate(values: pd.Series) -> str:
    """
    ``"value:count"`` pairs joined by ``|``, most frequent first.

    Ties are listed in ascending value order.
    """
    counts = values.astype(str).value_counts()
    pairs = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return "|".join(f"{value}:{count}" for value, count in pairs)


def nonsynonymous_events(annotmuts: pd.DataFrame) -> pd.DataFrame:
    """
    Missense and nonsense substitutions keyed by codon.

    Adds ``codon`` (amino-acid label, e.g. ``R175``), ``codonsub``
    (``chr:gene:codon``), ``mutaa`` and ``mutnt`` columns. Rows without a
    base change are dropped.
    """
    require_columns(annotmuts, _ANNOT_COLUMNS, "annotmuts")
    subs = annotmuts[annotmuts["impact"].isin(NONSYNONYMOUS_IMPACTS)].copy()
    subs = subs[subs["ref"].astype(str) != subs["mut"].astype(str)]

    aachange = subs["aachange"].astype(str)
    subs["chr"] = subs["chr"].astype(str)
    subs["gene"] = subs["gene"].astype(str)
    subs["codon"] = aachange.str[:-1]
    subs["codonsub"] = subs["chr"] + ":" + subs["gene"] + ":" + subs["codon"]
    subs["mutaa"] = aachange.str[-1]
    subs["mutnt"] = (
        subs["chr"]
        + "_"
        + subs["pos"].astype("int64").astype(str)
        + "_"
        + subs["ref"].astype(str)
        + ">"
        + subs["mut"].astype(str)
        + "_"
        + subs["mutaa"]
    )
    return subs


class RecurrenceTester:
    """
    Test recurrently mutated codons against the fitted background.

    Parameters
    ----------
    theta : float
        Negative Binomial size parameter to test with.
    spec : CodonDndsSpec, optional
        Specification with the recurrence threshold and continuity
        correction.

    Attributes
    ----------
    recurcodons : pd.DataFrame or None
        Recurrent codons sorted by p-value, then by decreasing frequency.
    recurcodons_ext : pd.DataFrame or None
        Same rows with the amino-acid and nucleotide breakdowns.
    """

    def __init__(self, theta: float, spec: Optional[CodonDndsSpec] = None):
        self.theta = theta
        self.spec = spec if spec is not None else CodonDndsSpec()

        # Results (set after fitting)
        self.recurcodons: Optional[pd.DataFrame] = None
        self.recurcodons_ext: Optional[pd.DataFrame] = None
        self.n_tests: int = 0
        self._fitted = False

    def fit(
        self, annotmuts: pd.DataFrame, vectors: CodonRateVectors
    ) -> "RecurrenceTester":
        """
        Count, test and annotate recurrent codons.

        Parameters
        ----------
        annotmuts : pd.DataFrame
            Annotated mutations (chr, gene, pos, ref, mut, aachange, impact).
        vectors : CodonRateVectors
            Rate vectors providing background non-synonymous rates and the
            codon universe.

        Returns
        -------
        RecurrenceTester
            Self, for method chaining.
        """
        subs = nonsynonymous_events(annotmuts)
        self.n_tests = vectors.n_codons
        self._fitted = True

        recur = (
            subs.groupby(["codonsub", "chr", "gene", "codon"], sort=True)
            .size()
            .rename("freq")
            .reset_index()
        )
        recur = recur[recur["freq"] >= self.spec.min_recurr]

        if len(recur) <= 1:
            self.recurcodons = self.recurcodons_ext = None
            warnings.warn(
                "No codon was found with the minimum recurrence requested "
                f"[min_recurr={self.spec.min_recurr}]",
                EmptyResultWarning,
                stacklevel=2,
            )
            return self

        recur = recur.reset_index(drop=True)
        recur["mu"] = [
            self._background_rate(vectors, gene, codon)
            for gene, codon in zip(recur["gene"], recur["codon"])
        ]
        freq = recur["freq"].to_numpy(dtype=float)
        mu = recur["mu"].to_numpy(dtype=float)
        with np.errstate(divide="ignore"):
            recur["dnds"] = freq / mu
        recur["pval"] = nb_sf(freq - self.spec.continuity_correction, mu, self.theta)

        recur = recur.sort_values(
            ["pval", "freq"], ascending=[True, False], kind="mergesort"
        ).reset_index(drop=True)
        recur["qval"] = bh_adjust(recur["pval"].to_numpy(), n=self.n_tests)

        self.recurcodons = recur[_RECUR_COLUMNS].copy()

        events = subs.groupby("codonsub")
        ext = recur[_RECUR_COLUMNS + ["codonsub"]].copy()
        ext["mutaa"] = [tabulate(events.get_group(k)["mutaa"]) for k in ext["codonsub"]]
        ext["mutnt"] = [tabulate(events.get_group(k)["mutnt"]) for k in ext["codonsub"]]
        self.recurcodons_ext = ext

        logger.info(
            "%d recurrent codons tested (%d with q < 0.1)",
            len(recur),
            int((recur["qval"] < 0.1).sum()),
        )
        return self

    @staticmethod
    def _background_rate(vectors: CodonRateVectors, gene: str, codon: str) -> float:
        """Expected non-synonymous rate of one codon."""
        if gene not in vectors.offsets:
            raise InvalidInput(
                f"Invalid input: mutated gene {gene} has no codon-level gene record"
            )
        rates = vectors.nonsyn_rates(gene)
        position = codon_number(codon)
        if not 1 <= position <= rates.size:
            raise InvalidInput(
                f"Invalid input: codon {codon} outside the CDS of {gene} "
                f"({rates.size} codons)"
            )
        return float(rates[position - 1])

    def get_result(self) -> tuple[Optional[pd.DataFrame], Optional[pd.DataFrame]]:
        """
        Recurrence tables.

        Returns
        -------
        tuple
            (recurcodons, recurcodons_ext); both None if fewer than two
            codons reached the threshold.
        """
        if not self._fitted:
            raise ValueError("Must call fit() before get_result()")
        return self.recurcodons, self.recurcodons_ext

    def __repr__(self) -> str:
        status = "fitted" if self._fitted else "not fitted"
        n = 0 if self.recurcodons is None else len(self.recurcodons)
        return (
            f"RecurrenceTester(theta={self.theta:g}, min_recurr="
            f"{self.spec.min_recurr}, n_recurrent={n}, status={status})"
        )


# =============================================================================
# Convenience Functions
# =============================================================================


def find_recurrent_codons(
    annotmuts: pd.DataFrame,
    vectors: CodonRateVectors,
    theta: float,
    spec: Optional[CodonDndsSpec] = None,
) -> tuple[Optional[pd.DataFrame], Optional[pd.DataFrame]]:
    """
    Convenience function to test recurrent codons.

    Parameters
    ----------
    annotmuts : pd.DataFrame
        Annotated mutations.
    vectors : CodonRateVectors
        Rate vectors from the rate builder.
    theta : float
        Negative Binomial size parameter.
    spec : CodonDndsSpec, optional
        Specification.

    Returns
    -------
    tuple
        (recurcodons, recurcodons_ext).
    """
    tester = RecurrenceTester(theta, spec)
    tester.fit(annotmuts, vectors)
    return tester.get_result()
