"""
Quality control: identification of lowly abundant genes.
"""

from tidyrna.quality.filtering import (
    LOWLY_ABUNDANT,
    AbundanceFilterResult,
    IdentifyAbundant,
    abundant_mask,
)

__all__ = ['IdentifyAbundant', 'AbundanceFilterResult', 'LOWLY_ABUNDANT', 'abundant_mask']
