"""
taxadiff - Differential abundance analysis for amplicon sequencing data

Assembles a feature table, taxonomy, phylogeny and sample metadata into one
consistent dataset, filters low-evidence features, fits a negative-binomial
GLM per feature and reports taxa enriched or depleted between two groups.
"""

__version__ = "0.1.0"

from taxadiff.core.dataset import ComposedDataset
from taxadiff.core.transform import Transform
from taxadiff.core.assembly import assemble_dataset

__all__ = [
    "ComposedDataset",
    "Transform",
    "assemble_dataset",
]
