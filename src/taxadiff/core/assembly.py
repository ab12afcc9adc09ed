"""
Relational assembly of feature table, taxonomy, tree and sample metadata.

Turns the four loosely-coupled exports of an amplicon workflow into one
ComposedDataset keyed by feature and by sample:

    1. Split each taxonomy string into the seven ranks (Kingdom..Species),
       right-padding unresolved ranks with an explicit "Unassigned" marker
    2. Set the classifier confidence aside as provenance
    3. Re-key everything on the shared feature/sample identifiers
    4. Enforce referential integrity (every counted feature annotated and
       placed in the tree, every counted sample described by metadata)

Missing-metadata policy:
    strict (default): a counted sample without a metadata row is fatal
        (MissingMetadata).
    lenient: such samples are dropped and a warning is logged.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Union

import numpy as np
import pandas as pd

from taxadiff.core.dataset import RANKS, UNASSIGNED, ComposedDataset, tip_names
from taxadiff.core.errors import (
    EmptySelection,
    MalformedTaxonomyString,
    MissingAnnotation,
    MissingMetadata,
    MissingTreeTip,
    format_keys,
)

if TYPE_CHECKING:
    from skbio import TreeNode

logger = logging.getLogger(__name__)

__all__ = ['TaxonomyParser', 'assemble_dataset', 'coerce_counts']


# Greengenes/GTDB style "p__" and SILVA 132 style "D_1__"
_RANK_PREFIX = re.compile(r"^(?:[A-Za-z]|D_\d+)__")


@dataclass(frozen=True)
class TaxonomyParser:
    """
    Split delimited taxonomy strings into the fixed rank hierarchy.

    Attributes:
        delimiter: Rank separator in the classifier output
        unassigned: Marker for ranks the classifier did not resolve
        strip_rank_prefixes: Remove "k__"/"p__"/"D_0__" style prefixes

    Examples:
        >>> parser = TaxonomyParser()
        >>> parser.split("d__Bacteria; p__Firmicutes; c__Bacilli")
        ['Bacteria', 'Firmicutes', 'Bacilli', 'Unassigned', 'Unassigned', 'Unassigned', 'Unassigned']
    """

    delimiter: str = ";"
    unassigned: str = UNASSIGNED
    strip_rank_prefixes: bool = True

    def split(self, taxon: Optional[str]) -> list[str]:
        """
        Split one taxonomy string into exactly len(RANKS) fields.

        Raises:
            MalformedTaxonomyString: If the string has more segments than ranks
        """
        if taxon is None or (isinstance(taxon, float) and np.isnan(taxon)):
            return [self.unassigned] * len(RANKS)

        segments = [s.strip() for s in str(taxon).split(self.delimiter)]
        # A trailing delimiter ("...; g__Bacillus;") is not an extra rank
        while segments and segments[-1] == "":
            segments.pop()

        if len(segments) > len(RANKS):
            raise MalformedTaxonomyString(
                f"Taxonomy string has {len(segments)} ranks, at most {len(RANKS)} allowed: {taxon!r}"
            )

        fields = []
        for segment in segments:
            if self.strip_rank_prefixes:
                segment = _RANK_PREFIX.sub("", segment).strip()
            fields.append(segment if segment else self.unassigned)

        fields.extend([self.unassigned] * (len(RANKS) - len(fields)))
        return fields

    def parse(self, taxa: pd.Series) -> pd.DataFrame:
        """Split a Series of taxonomy strings into a rank table (same index)."""
        rows = []
        for feature_id, taxon in taxa.items():
            try:
                rows.append(self.split(taxon))
            except MalformedTaxonomyString as e:
                raise MalformedTaxonomyString(f"Feature {feature_id}: {e}") from None
        return pd.DataFrame(rows, index=taxa.index, columns=RANKS, dtype=object)


def coerce_counts(table: pd.DataFrame) -> np.ndarray:
    """
    Convert a feature table to a non-negative int64 matrix.

    Exports often store counts as floats (biom); integral floats are
    accepted, anything else is rejected.

    Raises:
        ValueError: On missing, non-numeric, fractional or negative values
    """
    try:
        values = table.to_numpy(dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Feature table contains non-numeric values: {e}") from e

    if np.isnan(values).any():
        raise ValueError("Feature table contains missing values")
    if (values < 0).any():
        raise ValueError("Feature table contains negative counts")
    if not np.all(np.equal(np.floor(values), values)):
        raise ValueError("Feature table contains non-integer counts")

    return values.astype(np.int64)


def _taxon_column(taxonomy: Union[pd.DataFrame, pd.Series]) -> tuple[pd.Series, Optional[pd.Series]]:
    if isinstance(taxonomy, pd.Series):
        return taxonomy, None
    if "Taxon" not in taxonomy.columns:
        raise ValueError(f"taxonomy table needs a 'Taxon' column, got {list(taxonomy.columns)}")
    confidence = None
    if "Confidence" in taxonomy.columns:
        confidence = pd.to_numeric(taxonomy["Confidence"], errors="coerce")
    return taxonomy["Taxon"], confidence


def assemble_dataset(
    feature_table: pd.DataFrame,
    taxonomy: Union[pd.DataFrame, pd.Series],
    sample_metadata: pd.DataFrame,
    tree: Optional[TreeNode] = None,
    strict_metadata: bool = True,
    parser: Optional[TaxonomyParser] = None,
) -> ComposedDataset:
    """
    Merge the raw inputs into one consistent ComposedDataset.

    Args:
        feature_table: Counts, features (rows) × samples (columns)
        taxonomy: Feature-indexed table with a 'Taxon' column (and optional
            'Confidence'), or a Series of taxonomy strings
        sample_metadata: Sample-indexed metadata table
        tree: Phylogeny whose tips include every feature key, or None
        strict_metadata: If True, samples without metadata are fatal;
            otherwise they are dropped with a warning
        parser: Taxonomy splitting rules (default TaxonomyParser())

    Returns:
        ComposedDataset over the counted features and described samples.
        Orphan taxonomy rows, orphan metadata rows and orphan tree tips are
        dropped.

    Raises:
        MissingAnnotation: A counted feature has no taxonomy row
        MissingTreeTip: A counted feature is not a tree tip
        MissingMetadata: A counted sample has no metadata (strict mode)
        MalformedTaxonomyString: A taxonomy string has too many ranks
        EmptySelection: Lenient mode dropped every sample
        ValueError: Duplicated keys or invalid counts
    """
    parser = parser or TaxonomyParser()

    feature_table = feature_table.copy()
    feature_table.index = feature_table.index.astype(str)
    feature_table.columns = feature_table.columns.astype(str)
    if feature_table.index.has_duplicates:
        dups = feature_table.index[feature_table.index.duplicated()]
        raise ValueError(f"Duplicated feature keys in feature table: {format_keys(dups)}")
    if feature_table.columns.has_duplicates:
        dups = feature_table.columns[feature_table.columns.duplicated()]
        raise ValueError(f"Duplicated sample keys in feature table: {format_keys(dups)}")

    taxa, confidence = _taxon_column(taxonomy)
    taxa = taxa.copy()
    taxa.index = taxa.index.astype(str)
    if taxa.index.has_duplicates:
        raise ValueError(f"Duplicated feature keys in taxonomy: {format_keys(taxa.index[taxa.index.duplicated()])}")

    metadata = sample_metadata.copy()
    metadata.index = metadata.index.astype(str)
    if metadata.index.has_duplicates:
        raise ValueError(f"Duplicated sample keys in metadata: {format_keys(metadata.index[metadata.index.duplicated()])}")

    # --- Features: taxonomy coverage ---
    feature_ids = pd.Index(feature_table.index, name="feature_id")
    missing_taxa = feature_ids.difference(taxa.index, sort=False)
    if len(missing_taxa):
        raise MissingAnnotation(
            f"{len(missing_taxa)} feature(s) in the count table have no taxonomy: {format_keys(missing_taxa)}"
        )
    n_orphan_taxa = len(taxa.index.difference(feature_ids))
    if n_orphan_taxa:
        logger.info(f"Ignoring {n_orphan_taxa} taxonomy rows with no counts")

    # --- Samples: metadata coverage ---
    sample_ids = pd.Index(feature_table.columns, name="sample_id")
    missing_samples = sample_ids.difference(metadata.index, sort=False)
    if len(missing_samples):
        if strict_metadata:
            raise MissingMetadata(
                f"{len(missing_samples)} sample(s) in the count table have no metadata: "
                f"{format_keys(missing_samples)}"
            )
        logger.warning(
            f"Dropping {len(missing_samples)} sample(s) without metadata: {format_keys(missing_samples)}"
        )
        sample_ids = sample_ids.difference(missing_samples, sort=False)
        if len(sample_ids) == 0:
            raise EmptySelection("No sample in the count table has metadata")
        feature_table = feature_table.loc[:, sample_ids]

    # --- Tree: tip coverage ---
    if tree is not None:
        tips = tip_names(tree)
        missing_tips = [f for f in feature_ids if f not in tips]
        if missing_tips:
            raise MissingTreeTip(
                f"{len(missing_tips)} feature(s) in the count table are absent from the tree: "
                f"{format_keys(missing_tips)}"
            )
        if len(tips) > len(feature_ids):
            logger.info(f"Shearing {len(tips) - len(feature_ids)} tree tips with no counts")
            tree = tree.shear(list(feature_ids))

    rank_table = parser.parse(taxa.loc[feature_ids])
    rank_table.index = feature_ids

    if confidence is not None:
        confidence = confidence.copy()
        confidence.index = confidence.index.astype(str)
        confidence = confidence.loc[feature_ids]
        confidence.index = feature_ids
        confidence.name = "Confidence"

    metadata = metadata.loc[sample_ids]
    metadata.index = sample_ids

    dataset = ComposedDataset(
        counts=coerce_counts(feature_table),
        feature_ids=feature_ids,
        sample_ids=sample_ids,
        sample_metadata=metadata,
        taxonomy=rank_table,
        tree=tree,
        taxonomy_confidence=confidence,
    )

    logger.info(
        f"Assembled dataset: {dataset.n_features} features × {dataset.n_samples} samples "
        f"(tree {'attached' if tree is not None else 'absent'})"
    )
    return dataset
