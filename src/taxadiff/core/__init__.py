"""
Core data structures for amplicon differential-abundance analysis.

1. ComposedDataset: counts + taxonomy + tree + sample metadata under shared keys
2. Transform: Abstract base class for immutable dataset transformations
3. assemble_dataset / TaxonomyParser: build a ComposedDataset from raw inputs
4. Error taxonomy for fatal structural failures

Design Philosophy:
    - Immutability: All operations return new instances
    - Referential integrity: every component references the same key sets
"""

from taxadiff.core.dataset import RANKS, UNASSIGNED, ComposedDataset, tip_names
from taxadiff.core.transform import Transform
from taxadiff.core.assembly import TaxonomyParser, assemble_dataset, coerce_counts
from taxadiff.core.errors import (
    DegenerateDesign,
    EmptySelection,
    MalformedTaxonomyString,
    MissingAnnotation,
    MissingMetadata,
    MissingTreeTip,
    TaxadiffError,
)

__all__ = [
    'ComposedDataset',
    'RANKS',
    'UNASSIGNED',
    'tip_names',
    'Transform',
    'TaxonomyParser',
    'assemble_dataset',
    'coerce_counts',
    'TaxadiffError',
    'MissingAnnotation',
    'MissingTreeTip',
    'MissingMetadata',
    'MalformedTaxonomyString',
    'EmptySelection',
    'DegenerateDesign',
]
