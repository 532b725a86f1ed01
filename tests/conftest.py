from itertools import product

import numpy as np
import pandas as pd
import pytest

from CodonNB.utils import GeneRecord


BASES = "ACGT"
TRINUC_LABELS = [
    f"{a}{b}{c}>{a}{m}{c}"
    for a, b, c in product(BASES, repeat=3)
    for m in BASES
    if m != b
]


def make_submodel(t: float = 0.1, rate: float = 1.0) -> pd.DataFrame:
    """195-row substitution model: 191 relative rates + wmis/wnon/wspl/t."""
    labels = [label for label in TRINUC_LABELS if label != "TTT>TGT"]
    names = labels + ["wmis", "wnon", "wspl", "t"]
    mle = [rate] * len(labels) + [1.0, 1.0, 1.0, t]
    return pd.DataFrame({"name": names, "mle": mle})


def make_gene(name: str, impacts) -> GeneRecord:
    """Gene whose codons take the given 9-change impact classes."""
    impacts = np.asarray(impacts, dtype=int).reshape(-1)
    return GeneRecord(
        gene_name=name,
        cds_length=impacts.size // 3,
        codon_rates=np.zeros(impacts.size, dtype=int),
        codon_impact=impacts,
    )


def mutation(chrom, gene, pos, ref, mut, aachange, impact):
    return {
        "chr": chrom,
        "gene": gene,
        "pos": pos,
        "ref": ref,
        "mut": mut,
        "aachange": aachange,
        "impact": impact,
    }


# 5 non-synonymous and 4 synonymous changes: mu_ns = 0.5, mu_syn = 0.4 at t=0.1
CODON_5NS = [2, 2, 2, 2, 3, 1, 1, 1, 1]
# 2 non-synonymous and 7 synonymous changes
CODON_2NS = [2, 2, 1, 1, 1, 1, 1, 1, 1]


@pytest.fixture
def submodel():
    return make_submodel()


@pytest.fixture
def refcds():
    """Gene A has a single codon; gene B has four."""
    return [
        make_gene("A", CODON_5NS),
        make_gene("B", CODON_2NS * 4),
    ]


@pytest.fixture
def genemuts():
    return pd.DataFrame(
        {
            "gene_name": ["A", "B"],
            "exp_syn": [1.0, 2.0],
            "exp_syn_cv": [1.0, 2.0],
        }
    )


@pytest.fixture
def annotmuts():
    rows = (
        # Codon A:R1, five recurrent events
        [mutation("1", "A", 100, "C", "T", "R1H", "Missense")] * 3
        + [mutation("1", "A", 101, "G", "A", "R1Q", "Missense")]
        + [mutation("1", "A", 101, "G", "T", "R1*", "Nonsense")]
        # Codon B:G2, two events
        + [mutation("2", "B", 204, "G", "C", "G2A", "Missense")] * 2
        # Codon B:S4, single event
        + [mutation("2", "B", 210, "A", "G", "S4P", "Missense")]
        # Synonymous background
        + [mutation("2", "B", 203, "T", "C", "G1G", "Synonymous")]
        + [mutation("2", "B", 212, "C", "T", "S4S", "Synonymous")] * 2
        + [mutation("1", "A", 102, "C", "T", "R1R", "Synonymous")]
    )
    return pd.DataFrame(rows)
