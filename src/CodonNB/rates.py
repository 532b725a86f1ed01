"""
Per-codon observed and expected mutation rates.

For every gene, the absolute trinucleotide rates are scaled by the gene's
relative mutability and summed over the possible single nucleotide changes
of each codon, separately for synonymous and non-synonymous (missense or
nonsense) changes. Observed synonymous mutations are counted per codon.

The resulting vectors are gene-contiguous, in the order of the gene
records, and feed the dispersion fit (synonymous) and the recurrence test
(non-synonymous).
"""

import logging
from dataclasses import replace
from typing import Optional, Sequence

import numpy as np
import pandas as pd

from .utils import (
    GeneRecord,
    CodonRateVectors,
    InvalidInput,
    require_columns,
    syn_codon_number,
)

logger = logging.getLogger(__name__)

SYNONYMOUS = 1
MISSENSE = 2
NONSENSE = 3


class RateBuilder:
    """
    Accumulate per-codon rate vectors gene by gene.

    Parameters
    ----------
    substitution_rates : pd.Series
        Absolute trinucleotide rates sorted by label (see
        :func:`build_substitution_rates`). Gene records index into it.
    relmr : pd.Series
        Relative mutability per gene name.
    progress_every : int
        Log progress every this many genes.

    Attributes
    ----------
    observed_syn, expected_syn, expected_nonsyn : np.ndarray
        Concatenated per-codon vectors (set after fitting).
    """

    def __init__(
        self,
        substitution_rates: pd.Series,
        relmr: pd.Series,
        progress_every: int = 2000,
    ):
        self.substitution_rates = substitution_rates
        self.relmr = relmr
        self.progress_every = progress_every

        self.observed_syn: Optional[np.ndarray] = None
        self.expected_syn: Optional[np.ndarray] = None
        self.expected_nonsyn: Optional[np.ndarray] = None
        self.gene_order: list = []
        self.offsets: dict = {}
        self.n_codons_by_gene: dict = {}

    def fit(
        self,
        refcds: Sequence[GeneRecord],
        syn_counts: Optional[dict] = None,
    ) -> "RateBuilder":
        """
        Build observed and expected vectors for every gene record.

        Parameters
        ----------
        refcds : sequence of GeneRecord
            Gene records in processing order.
        syn_counts : dict, optional
            gene -> {codon number (1-based) -> observed synonymous count}.

        Returns
        -------
        RateBuilder
            Self, for method chaining.
        """
        syn_counts = syn_counts if syn_counts is not None else {}
        rates = self.substitution_rates.to_numpy(dtype=float)

        for gene in refcds:
            gene.validate(n_rates=rates.size)
            if gene.gene_name not in self.relmr.index:
                raise InvalidInput(
                    f"Invalid input: gene {gene.gene_name} has no relative "
                    "mutability in the per-gene table"
                )

        total = sum(gene.n_codons for gene in refcds)
        self.observed_syn = np.zeros(total)
        self.expected_syn = np.zeros(total)
        self.expected_nonsyn = np.zeros(total)
        self.gene_order = []
        self.offsets = {}
        self.n_codons_by_gene = {}

        pos = 0
        for j, gene in enumerate(refcds, start=1):
            n = gene.n_codons
            nvec_syn, rvec_syn, rvec_ns = self._gene_vectors(
                gene, rates * self.relmr[gene.gene_name], syn_counts.get(gene.gene_name)
            )

            self.observed_syn[pos : pos + n] = nvec_syn
            self.expected_syn[pos : pos + n] = rvec_syn
            self.expected_nonsyn[pos : pos + n] = rvec_ns
            self.gene_order.append(gene.gene_name)
            self.offsets[gene.gene_name] = pos
            self.n_codons_by_gene[gene.gene_name] = n
            pos += n

            if j % self.progress_every == 0:
                logger.info("    %0.3g%% ...", round(j / len(refcds), 2) * 100)

        return self

    @staticmethod
    def _gene_vectors(
        gene: GeneRecord,
        sm_rel: np.ndarray,
        counts: Optional[dict],
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Observed syn counts, expected syn and non-syn rates of one gene."""
        n = gene.n_codons
        ind = np.repeat(np.arange(n), 9)
        change_rates = sm_rel[gene.codon_rates]

        syn = gene.codon_impact == SYNONYMOUS
        ns = np.isin(gene.codon_impact, (MISSENSE, NONSENSE))

        rvec_syn = np.bincount(ind[syn], weights=change_rates[syn], minlength=n)
        rvec_ns = np.bincount(ind[ns], weights=change_rates[ns], minlength=n)

        nvec_syn = np.zeros(n)
        if counts:
            for codon, count in counts.items():
                if not 1 <= codon <= n:
                    raise InvalidInput(
                        f"Invalid input: synonymous mutation at codon {codon} "
                        f"outside the CDS of {gene.gene_name} ({n} codons)"
                    )
                nvec_syn[codon - 1] = count

        return nvec_syn, rvec_syn, rvec_ns

    def get_result(self) -> CodonRateVectors:
        """
        Package vectors into CodonRateVectors.

        Returns
        -------
        CodonRateVectors
            Gene-contiguous observed/expected vectors.
        """
        if self.expected_syn is None:
            raise ValueError("Must call fit() before get_result()")

        return CodonRateVectors(
            observed_syn=self.observed_syn.copy(),
            expected_syn=self.expected_syn.copy(),
            expected_nonsyn=self.expected_nonsyn.copy(),
            gene_order=list(self.gene_order),
            offsets=dict(self.offsets),
            n_codons_by_gene=dict(self.n_codons_by_gene),
        )

    def __repr__(self) -> str:
        status = "fitted" if self.expected_syn is not None else "not fitted"
        return (
            f"RateBuilder(n_rates={len(self.substitution_rates)}, "
            f"n_genes={len(self.gene_order)}, status={status})"
        )


# =============================================================================
# Convenience Functions
# =============================================================================


def count_synonymous(
    annotmuts: pd.DataFrame,
    syn_drivers: Sequence[str] = (),
) -> dict:
    """
    Observed synonymous mutations per gene and codon.

    Parameters
    ----------
    annotmuts : pd.DataFrame
        Annotated mutations with columns ``gene``, ``aachange``, ``impact``.
    syn_drivers : sequence of str
        ``"gene:aachange"`` strings of known synonymous drivers to exclude.

    Returns
    -------
    dict
        gene -> {codon number -> count}.
    """
    require_columns(annotmuts, ("gene", "aachange", "impact"), "annotmuts")
    subs = annotmuts[annotmuts["impact"] == "Synonymous"]
    keys = subs["gene"].astype(str) + ":" + subs["aachange"].astype(str)
    subs = subs[~keys.isin(list(syn_drivers))]

    counts: dict = {}
    codons = subs["aachange"].astype(str).map(syn_codon_number)
    for (gene, codon), n in (
        pd.DataFrame({"gene": subs["gene"].astype(str), "codon": codons})
        .value_counts(sort=False)
        .items()
    ):
        counts.setdefault(gene, {})[int(codon)] = int(n)
    return counts


def normalize_rates(vectors: CodonRateVectors) -> CodonRateVectors:
    """
    Rescale expected synonymous rates so their total equals the observed
    total. Returns a new CodonRateVectors; non-synonymous rates are kept.
    """
    expected_total = vectors.expected_syn.sum()
    observed_total = vectors.observed_syn.sum()
    if expected_total <= 0:
        logger.warning(
            "Expected synonymous rates sum to %s; skipping global normalization",
            expected_total,
        )
        return replace(vectors, expected_syn=vectors.expected_syn.copy())

    return replace(
        vectors,
        expected_syn=vectors.expected_syn * observed_total / expected_total,
    )


def build_codon_rates(
    refcds: Sequence[GeneRecord],
    substitution_rates: pd.Series,
    relmr: pd.Series,
    syn_counts: Optional[dict] = None,
    progress_every: int = 2000,
    normalize: bool = True,
) -> CodonRateVectors:
    """
    Convenience function to build (and normalize) per-codon vectors.

    Parameters
    ----------
    refcds : sequence of GeneRecord
        Gene records in processing order.
    substitution_rates : pd.Series
        Absolute trinucleotide rates sorted by label.
    relmr : pd.Series
        Relative mutability per gene.
    syn_counts : dict, optional
        gene -> {codon -> observed synonymous count}.
    progress_every : int
        Progress logging interval in genes.
    normalize : bool
        Apply the global observed/expected correction.

    Returns
    -------
    CodonRateVectors
        Per-codon vectors.
    """
    builder = RateBuilder(substitution_rates, relmr, progress_every)
    builder.fit(refcds, syn_counts)
    vectors = builder.get_result()
    if normalize:
        vectors = normalize_rates(vectors)
    return vectors
