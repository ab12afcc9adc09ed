"""
Sample selection and feature pruning for composed amplicon datasets.

Components:
    SampleSelector: keep samples matching field == value predicates
    PrevalenceFilter: drop features present (count > T) in fewer than a
        fraction A of samples
"""

from taxadiff.quality.filtering import (
    PrevalenceFilter,
    PrevalenceFilterResult,
    SampleSelector,
)

__all__ = [
    'SampleSelector',
    'PrevalenceFilter',
    'PrevalenceFilterResult',
]
