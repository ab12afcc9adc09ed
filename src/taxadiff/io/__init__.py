"""
Input loading and output writing.

Loaders read the files exported by an amplicon workflow (biom/TSV feature
table, taxonomy TSV, Newick tree, sample metadata); writers persist result
tables, the chart and the run summary.
"""

from taxadiff.io.loaders import (
    load_feature_table,
    load_metadata,
    load_taxonomy,
    load_tree,
    sniff_delimiter,
)
from taxadiff.io.writers import write_analysis_outputs, write_table

__all__ = [
    'load_feature_table',
    'load_taxonomy',
    'load_tree',
    'load_metadata',
    'sniff_delimiter',
    'write_table',
    'write_analysis_outputs',
]
