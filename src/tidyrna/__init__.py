"""
tidyrna - Long-format RNA-seq count analysis

A pipeline over a single gene × sample table: low-abundance flagging,
TMM scaling, PCA/MDS, variable-gene selection and negative-binomial
quasi-likelihood differential testing, with every result kept as a
column of the same table.
"""

__version__ = "0.1.0"

from tidyrna.core.table import AbundanceTable
from tidyrna.core.transform import Transform
from tidyrna.quality.filtering import IdentifyAbundant
from tidyrna.stats.normalization import ScaleAbundance
from tidyrna.stats.reduction import KeepVariable, ReduceDimensions
from tidyrna.stats.differential import TestDifferentialAbundance

__all__ = [
    "AbundanceTable",
    "Transform",
    "IdentifyAbundant",
    "ScaleAbundance",
    "ReduceDimensions",
    "KeepVariable",
    "TestDifferentialAbundance",
]
