"""
Statistical stages: library-size normalization, dimensionality reduction,
variable-gene selection, design matrices and differential testing.
"""

from tidyrna.stats.design_matrix import DesignMatrix, build_design, leverage, parse_contrasts
from tidyrna.stats.differential import (
    DifferentialMethod,
    DifferentialResult,
    TestDifferentialAbundance,
    fdr_correction,
)
from tidyrna.stats.empirical_bayes import fit_f_dist, squeeze_var, trigamma_inverse
from tidyrna.stats.normalization import (
    NormalizationMethod,
    NormalizationResult,
    ScaleAbundance,
    calc_norm_factors,
)
from tidyrna.stats.reduction import (
    KeepVariable,
    ReduceDimensions,
    ReductionMethod,
    ReductionResult,
)

__all__ = [
    'DesignMatrix',
    'build_design',
    'parse_contrasts',
    'leverage',
    'DifferentialMethod',
    'DifferentialResult',
    'TestDifferentialAbundance',
    'fdr_correction',
    'trigamma_inverse',
    'fit_f_dist',
    'squeeze_var',
    'NormalizationMethod',
    'NormalizationResult',
    'ScaleAbundance',
    'calc_norm_factors',
    'ReduceDimensions',
    'KeepVariable',
    'ReductionMethod',
    'ReductionResult',
]
