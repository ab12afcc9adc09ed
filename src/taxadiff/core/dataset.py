"""
Core data structure for amplicon differential-abundance analysis.

ComposedDataset unifies the four inputs of a microbiome comparison under one
feature-key space and one sample-key space:

    - counts: non-negative integer abundance matrix (features × samples)
    - taxonomy: rank hierarchy per feature (Kingdom ... Species)
    - tree: phylogeny whose tips are exactly the feature keys
    - sample_metadata: categorical/continuous fields per sample

Biological Context:
    An ASV/OTU table on its own is just numbers. The taxonomy tells us what
    each row *is*, the tree where it sits, and the sample metadata which
    condition each column belongs to. Filtering any one of these without the
    others silently corrupts the analysis (a taxon label pointing at a row
    that no longer exists, a tree tip with no counts), so all four are kept
    in lock-step.

Engineering Design:
    - Immutable: select_samples/select_features return new instances
    - Validated: the constructor enforces every key-set invariant
    - The tree is sheared on feature selection so its tips always equal
      the feature keys

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from taxadiff.core.dataset import ComposedDataset, RANKS
    >>>
    >>> feature_ids = pd.Index(["ASV1", "ASV2"], name="feature_id")
    >>> sample_ids = pd.Index(["S1", "S2"], name="sample_id")
    >>> taxonomy = pd.DataFrame(
    ...     [["Bacteria"] + ["Unassigned"] * 6] * 2,
    ...     index=feature_ids, columns=RANKS,
    ... )
    >>> dataset = ComposedDataset(
    ...     counts=np.array([[10, 0], [3, 7]]),
    ...     feature_ids=feature_ids,
    ...     sample_ids=sample_ids,
    ...     sample_metadata=pd.DataFrame({"Source": ["Agr", "Agr"]}, index=sample_ids),
    ...     taxonomy=taxonomy,
    ... )
    >>> agr = dataset.select_samples(dataset.sample_metadata["Source"] == "Agr")
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import numpy as np
import pandas as pd

from taxadiff.core.errors import EmptySelection, MissingAnnotation, MissingTreeTip, format_keys

if TYPE_CHECKING:
    from skbio import TreeNode

__all__ = ['ComposedDataset', 'RANKS', 'UNASSIGNED', 'tip_names']


RANKS = ["Kingdom", "Phylum", "Class", "Order", "Family", "Genus", "Species"]

UNASSIGNED = "Unassigned"


def tip_names(tree: TreeNode) -> set[str]:
    """Names of all tips, including a tree pruned down to a single node."""
    return {tip.name for tip in tree.tips(include_self=True)}


class ComposedDataset:
    """
    Immutable container for counts + taxonomy + phylogeny + sample metadata.

    Attributes:
        counts: Abundance matrix (features × samples), non-negative integers
        feature_ids: Row identifiers (ASV/OTU keys)
        sample_ids: Column identifiers (sample keys)
        sample_metadata: Per-sample fields, indexed by sample_ids
        taxonomy: Rank table indexed by feature_ids, columns == RANKS
        tree: Phylogeny with tips == feature_ids, or None
        taxonomy_confidence: Classifier confidence per feature (provenance only)

    Key Invariants:
        - counts.shape == (len(feature_ids), len(sample_ids))
        - taxonomy.index equals feature_ids
        - sample_metadata.index equals sample_ids
        - tip names of tree == set(feature_ids) when a tree is attached
        - counts >= 0
    """

    def __init__(
        self,
        counts: np.ndarray,
        feature_ids: pd.Index,
        sample_ids: pd.Index,
        sample_metadata: pd.DataFrame,
        taxonomy: pd.DataFrame,
        tree: Optional[TreeNode] = None,
        taxonomy_confidence: Optional[pd.Series] = None,
    ):
        """
        Initialize ComposedDataset with validation.

        Raises:
            TypeError: If components have the wrong types
            ValueError: If shapes are inconsistent, keys are duplicated,
                or counts are negative/non-integer
            MissingAnnotation: If taxonomy rows don't match the features
            MissingTreeTip: If tree tips don't match the features
        """
        if not isinstance(counts, np.ndarray):
            raise TypeError(f"counts must be np.ndarray, got {type(counts)}")
        if not isinstance(feature_ids, pd.Index):
            raise TypeError(f"feature_ids must be pd.Index, got {type(feature_ids)}")
        if not isinstance(sample_ids, pd.Index):
            raise TypeError(f"sample_ids must be pd.Index, got {type(sample_ids)}")
        if not isinstance(sample_metadata, pd.DataFrame):
            raise TypeError(f"sample_metadata must be pd.DataFrame, got {type(sample_metadata)}")
        if not isinstance(taxonomy, pd.DataFrame):
            raise TypeError(f"taxonomy must be pd.DataFrame, got {type(taxonomy)}")

        if counts.ndim != 2:
            raise ValueError(f"counts must be 2D, got shape {counts.shape}")

        n_features, n_samples = counts.shape

        if len(feature_ids) != n_features:
            raise ValueError(
                f"feature_ids length ({len(feature_ids)}) must match counts rows ({n_features})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match counts columns ({n_samples})"
            )
        if feature_ids.has_duplicates:
            raise ValueError(f"Duplicated feature keys: {format_keys(feature_ids[feature_ids.duplicated()])}")
        if sample_ids.has_duplicates:
            raise ValueError(f"Duplicated sample keys: {format_keys(sample_ids[sample_ids.duplicated()])}")

        if not np.issubdtype(counts.dtype, np.integer):
            raise ValueError(f"counts must be an integer matrix, got dtype {counts.dtype}")
        if counts.size and counts.min() < 0:
            raise ValueError("counts must be non-negative")

        if not sample_metadata.index.equals(sample_ids):
            raise ValueError(
                "sample_metadata.index must match sample_ids exactly. "
                f"Got {len(sample_metadata.index)} metadata rows for {len(sample_ids)} samples."
            )

        if list(taxonomy.columns) != RANKS:
            raise ValueError(f"taxonomy columns must be {RANKS}, got {list(taxonomy.columns)}")
        if not taxonomy.index.equals(feature_ids):
            missing = feature_ids.difference(taxonomy.index)
            if len(missing):
                raise MissingAnnotation(f"Features without taxonomy: {format_keys(missing)}")
            raise ValueError("taxonomy.index must match feature_ids exactly (same keys, same order)")

        if tree is not None:
            tips = tip_names(tree)
            missing = [f for f in feature_ids if f not in tips]
            if missing:
                raise MissingTreeTip(f"Features absent from tree: {format_keys(missing)}")
            extra = tips - set(feature_ids)
            if extra:
                raise ValueError(f"Tree has tips that are not features: {format_keys(sorted(extra))}")

        if taxonomy_confidence is not None and not taxonomy_confidence.index.equals(feature_ids):
            raise ValueError("taxonomy_confidence.index must match feature_ids exactly")

        # Store as private attributes (immutability by convention)
        self._counts = counts
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._sample_metadata = sample_metadata
        self._taxonomy = taxonomy
        self._tree = tree
        self._taxonomy_confidence = taxonomy_confidence

    @property
    def counts(self) -> np.ndarray:
        """Abundance matrix (features × samples)."""
        return self._counts

    @property
    def feature_ids(self) -> pd.Index:
        """Row identifiers (ASV/OTU keys)."""
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        """Column identifiers (sample keys)."""
        return self._sample_ids

    @property
    def sample_metadata(self) -> pd.DataFrame:
        """Per-sample metadata fields."""
        return self._sample_metadata

    @property
    def taxonomy(self) -> pd.DataFrame:
        """Rank hierarchy per feature."""
        return self._taxonomy

    @property
    def tree(self) -> Optional[TreeNode]:
        """Phylogeny over the feature keys (pass-through, no statistic uses it)."""
        return self._tree

    @property
    def taxonomy_confidence(self) -> Optional[pd.Series]:
        """Classifier confidence per feature, if it was supplied."""
        return self._taxonomy_confidence

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions (n_features, n_samples)."""
        return self._counts.shape

    @property
    def n_features(self) -> int:
        return self._counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self._counts.shape[1]

    def counts_frame(self) -> pd.DataFrame:
        """Counts as a labelled DataFrame (features × samples)."""
        return pd.DataFrame(self._counts, index=self._feature_ids, columns=self._sample_ids)

    def select_samples(self, mask: np.ndarray | pd.Series) -> ComposedDataset:
        """
        Subset by samples (columns), narrowing counts and metadata together.

        Args:
            mask: Boolean array/Series over samples. A Series is aligned on
                sample_ids when its index matches, otherwise used positionally.

        Raises:
            ValueError: If mask length doesn't match n_samples
            EmptySelection: If the mask selects no samples
        """
        mask = self._as_mask(mask, self._sample_ids, "n_samples")
        if not mask.any():
            raise EmptySelection("Sample selection matched no samples")

        kept = self._sample_ids[mask]
        return ComposedDataset(
            counts=self._counts[:, mask],
            feature_ids=self._feature_ids,
            sample_ids=kept,
            sample_metadata=self._sample_metadata.loc[kept],
            taxonomy=self._taxonomy,
            tree=self._tree,
            taxonomy_confidence=self._taxonomy_confidence,
        )

    def select_features(self, mask: np.ndarray | pd.Series) -> ComposedDataset:
        """
        Subset by features (rows); taxonomy and tree are narrowed to match.

        Args:
            mask: Boolean array/Series over features

        Raises:
            ValueError: If mask length doesn't match n_features
            EmptySelection: If the mask selects no features

        Examples:
            >>> abundant = dataset.select_features(dataset.counts.sum(axis=1) > 100)
            >>> assert set(abundant.taxonomy.index) == set(abundant.feature_ids)
        """
        mask = self._as_mask(mask, self._feature_ids, "n_features")
        if not mask.any():
            raise EmptySelection("Feature selection retained no features")

        kept = self._feature_ids[mask]
        tree = self._tree
        if tree is not None and len(kept) < self.n_features:
            tree = tree.shear(list(kept))

        confidence = self._taxonomy_confidence
        if confidence is not None:
            confidence = confidence.loc[kept]

        return ComposedDataset(
            counts=self._counts[mask, :],
            feature_ids=kept,
            sample_ids=self._sample_ids,
            sample_metadata=self._sample_metadata,
            taxonomy=self._taxonomy.loc[kept],
            tree=tree,
            taxonomy_confidence=confidence,
        )

    @staticmethod
    def _as_mask(mask: np.ndarray | pd.Series, index: pd.Index, what: str) -> np.ndarray:
        if isinstance(mask, pd.Series):
            # Align on keys when the Series is keyed like the axis
            if len(mask) == len(index) and mask.index.isin(index).all():
                mask = mask.reindex(index)
            mask = mask.fillna(False).to_numpy()
        mask = np.asarray(mask, dtype=bool)
        if len(mask) != len(index):
            raise ValueError(f"mask length ({len(mask)}) must match {what} ({len(index)})")
        return mask

    def __repr__(self) -> str:
        """String representation for debugging."""
        tree = "attached" if self._tree is not None else "none"
        return (
            f"ComposedDataset({self.n_features} features × {self.n_samples} samples)\n"
            f"  Features: {self.feature_ids[0]}...{self.feature_ids[-1]}\n"
            f"  Samples: {self.sample_ids[0]}...{self.sample_ids[-1]}\n"
            f"  Metadata columns: {list(self.sample_metadata.columns)}\n"
            f"  Tree: {tree}"
        )

    def __str__(self) -> str:
        return self.__repr__()
