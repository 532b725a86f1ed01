"""
Complete codon-wise dN/dS run: rates -> dispersion -> recurrence.
"""

import logging
import warnings
from dataclasses import replace
from typing import Optional, Sequence

import pandas as pd

from .dispersion import fit_dispersion
from .params import CodonDndsSpec
from .rates import build_codon_rates, count_synonymous
from .recurrence import find_recurrent_codons
from .utils import (
    CodonDndsResult,
    ConfigurationWarning,
    GeneRecord,
    InvalidInput,
    build_substitution_rates,
    relative_mutability,
    require_columns,
)

logger = logging.getLogger(__name__)


def restrict_genes(
    annotmuts: pd.DataFrame,
    genemuts: pd.DataFrame,
    refcds: Sequence[GeneRecord],
    gene_list: Optional[Sequence[str]],
) -> tuple[pd.DataFrame, pd.DataFrame, list]:
    """
    Restrict all inputs to ``gene_list``.

    Requested genes missing from ``genemuts`` are reported with a
    ConfigurationWarning and skipped.

    Returns
    -------
    tuple
        (annotmuts, genemuts, refcds) restricted to the requested genes.
    """
    if gene_list is None:
        return annotmuts, genemuts, list(refcds)

    require_columns(genemuts, ("gene_name",), "genemuts")
    require_columns(annotmuts, ("gene",), "annotmuts")
    wanted = [str(g) for g in gene_list]
    known = set(genemuts["gene_name"].astype(str))
    nonex = [g for g in wanted if g not in known]
    if nonex:
        warnings.warn(
            "The following input gene names are not in the per-gene table and "
            f"will not be analysed: {', '.join(nonex)}.",
            ConfigurationWarning,
            stacklevel=3,
        )

    wanted = set(wanted)
    annotmuts = annotmuts[annotmuts["gene"].astype(str).isin(wanted)]
    genemuts = genemuts[genemuts["gene_name"].astype(str).isin(wanted)]
    refcds = [gene for gene in refcds if gene.gene_name in wanted]
    return annotmuts, genemuts, refcds


def codon_dnds(
    annotmuts: pd.DataFrame,
    genemuts: pd.DataFrame,
    mle_submodel: pd.DataFrame,
    refcds: Sequence[GeneRecord],
    spec: Optional[CodonDndsSpec] = None,
    **overrides,
) -> CodonDndsResult:
    """
    Estimate codon-wise dN/dS ratios and p-values against neutrality.

    Recurrent artefacts or SNP contamination can violate the null model and
    dominate the list of sites under apparent selection; suspicious
    recurrent sites usually call for better variant filtering.

    Parameters
    ----------
    annotmuts : pd.DataFrame
        Annotated substitutions with columns chr, gene, pos, ref, mut,
        aachange and impact.
    genemuts : pd.DataFrame
        Per-gene table with columns gene_name, exp_syn and exp_syn_cv.
    mle_submodel : pd.DataFrame
        Fitted substitution model (name, mle), 195 rows.
    refcds : sequence of GeneRecord
        Gene records with codon-level annotation, in processing order.
    spec : CodonDndsSpec, optional
        Run options.
    **overrides
        Fields of CodonDndsSpec overriding ``spec`` (e.g. ``min_recurr=3``).

    Returns
    -------
    CodonDndsResult
        Recurrence tables and the fitted size parameter.
    """
    if spec is None:
        spec = CodonDndsSpec(**overrides)
    elif overrides:
        spec = replace(spec, **overrides)

    # Stage 1: codon-level rates
    logger.info(
        "[1] Codon-wise negative binomial model accounting for trinucleotides "
        "and relative gene mutability..."
    )
    substitution_rates = build_substitution_rates(mle_submodel)
    if len(refcds) > 0 and refcds[0].codon_impact is None:
        raise InvalidInput(
            "Invalid input: gene records must contain codon-level annotation."
        )
    for gene in refcds:
        gene.validate(n_rates=len(substitution_rates))

    annotmuts, genemuts, refcds = restrict_genes(
        annotmuts, genemuts, refcds, spec.gene_list
    )

    relmr = relative_mutability(genemuts)
    syn_counts = count_synonymous(annotmuts, spec.syn_drivers)
    vectors = build_codon_rates(
        refcds,
        substitution_rates,
        relmr,
        syn_counts,
        progress_every=spec.progress_every,
    )

    # Stage 2: overdispersion and site-wise dN/dS
    logger.info(
        "[2] Estimating overdispersion and calculating site-wise dN/dS ratios..."
    )
    theta = fit_dispersion(vectors.observed_syn, vectors.expected_syn, spec)
    theta_used = theta.select(spec.theta_option)
    logger.info(
        "theta MLE %.4g, CI95 [%.4g, %.4g]; testing with %.4g",
        theta.mle,
        theta.ci95_low,
        theta.ci95_high,
        theta_used,
    )

    recurcodons, recurcodons_ext = find_recurrent_codons(
        annotmuts, vectors, theta_used, spec
    )

    return CodonDndsResult(
        recurcodons=recurcodons,
        recurcodons_ext=recurcodons_ext,
        theta=theta,
        theta_used=theta_used,
        rates=vectors,
    )
