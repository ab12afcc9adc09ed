"""
Sample selection and low-evidence feature pruning for ComposedDataset.

Implements the Transform interface for composable pipelines:

    SampleSelector   - keep samples matching a conjunction of field == value
    PrevalenceFilter - keep features with count > T in at least a fraction A
                       of the current samples

Both narrow counts, taxonomy, tree and metadata together (through
ComposedDataset.select_*), so the key-set invariants hold after every step.

Examples:
    >>> selector = SampleSelector({"Source": "Agr", "EnvFeature": "Pot"})
    >>> prevalence = PrevalenceFilter(count_threshold=5, prevalence=0.5)
    >>> working = prevalence.apply(selector.apply(dataset))
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Set

import numpy as np

from taxadiff.core.dataset import ComposedDataset
from taxadiff.core.errors import EmptySelection, MissingMetadata
from taxadiff.core.transform import Transform

logger = logging.getLogger(__name__)

__all__ = ['SampleSelector', 'PrevalenceFilter', 'PrevalenceFilterResult']


class SampleSelector(Transform):
    """
    Keep samples whose metadata matches every (field, value) predicate.

    Values are compared as strings so that "1" from a command line matches a
    numeric metadata column holding 1. An empty predicate set keeps every
    sample. Applying the same selector twice gives the same dataset as
    applying it once.

    Raises (from apply):
        MissingMetadata: A predicate names a field absent from the metadata
        EmptySelection: No sample satisfies the conjunction
    """

    def __init__(self, predicates: Optional[Mapping[str, Any]] = None):
        predicates = dict(predicates or {})
        super().__init__(name="SampleSelector", params={"predicates": predicates})
        self.predicates = predicates

    def compute_mask(self, dataset: ComposedDataset) -> np.ndarray:
        """Boolean mask over dataset.sample_ids for the predicate conjunction."""
        metadata = dataset.sample_metadata
        missing = [f for f in self.predicates if f not in metadata.columns]
        if missing:
            raise MissingMetadata(
                f"Selection fields not found in sample metadata: {missing}. "
                f"Available: {list(metadata.columns)}"
            )

        mask = np.ones(dataset.n_samples, dtype=bool)
        for field_name, value in self.predicates.items():
            column = metadata[field_name]
            matches = column.notna() & (column.astype(str) == str(value))
            mask &= matches.to_numpy()
        return mask

    def apply(self, dataset: ComposedDataset) -> ComposedDataset:
        self._check(dataset)
        if not self.predicates:
            return dataset

        mask = self.compute_mask(dataset)
        if not mask.any():
            raise EmptySelection(f"No samples match {self.predicates}")

        logger.info(
            f"Sample selection {self.predicates}: kept {int(mask.sum())}/{dataset.n_samples} samples"
        )
        return dataset.select_samples(mask)


@dataclass
class PrevalenceFilterResult:
    """Features passing/failing the prevalence rule, with provenance."""
    passed_features: Set[str]
    failed_features: Set[str]
    min_samples: int
    n_samples: int
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_passed(self) -> int:
        return len(self.passed_features)

    @property
    def n_failed(self) -> int:
        return len(self.failed_features)

    @property
    def pass_rate(self) -> float:
        total = self.n_passed + self.n_failed
        return self.n_passed / total if total > 0 else 0.0


class PrevalenceFilter(Transform):
    """
    Drop features seen above a count threshold in too few samples.

    A feature is kept when

        count(samples where counts > count_threshold) >= prevalence * n_samples

    evaluated on raw counts of the current sample subset (normalization is
    irrelevant here; this is an evidence heuristic, not a test). With the
    defaults, [6, 6, 0, 0] is kept (2 >= 2) and [6, 0, 0, 0] is dropped.

    Params:
        count_threshold: Strict lower bound on a count to call the feature
            present in a sample (default 5).
        prevalence: Required fraction of samples in which it is present
            (default 0.5).
    """

    def __init__(self, count_threshold: float = 5, prevalence: float = 0.5):
        if count_threshold < 0:
            raise ValueError(f"count_threshold must be >= 0, got {count_threshold}")
        if not (0 < prevalence <= 1):
            raise ValueError(f"prevalence must be in (0, 1], got {prevalence}")
        super().__init__(
            name="PrevalenceFilter",
            params={"count_threshold": count_threshold, "prevalence": prevalence},
        )
        self.count_threshold = count_threshold
        self.prevalence = prevalence

    def min_samples(self, n_samples: int) -> int:
        """Smallest integer sample count satisfying >= prevalence * n_samples."""
        # Guard against 0.3 * 10 == 3.0000000000000004
        return int(math.ceil(self.prevalence * n_samples - 1e-9))

    def compute_keep_mask(self, dataset: ComposedDataset) -> np.ndarray:
        present = (dataset.counts > self.count_threshold).sum(axis=1)
        return present >= self.min_samples(dataset.n_samples)

    def apply(self, dataset: ComposedDataset) -> ComposedDataset:
        self._check(dataset)
        logger.info(
            f"Applying PrevalenceFilter: count > {self.count_threshold} in >= "
            f"{self.min_samples(dataset.n_samples)}/{dataset.n_samples} samples"
        )
        keep_mask = self.compute_keep_mask(dataset)
        n_kept = int(keep_mask.sum())

        if n_kept == 0:
            raise EmptySelection(
                f"Prevalence filter removed all {dataset.n_features} features "
                f"(count_threshold={self.count_threshold}, prevalence={self.prevalence})"
            )

        logger.info(
            f"Filtering complete: Kept {n_kept}/{dataset.n_features} features "
            f"({100 * n_kept / dataset.n_features:.1f}%), Removed {dataset.n_features - n_kept}"
        )
        return dataset.select_features(keep_mask)

    def get_passing_features(self, dataset: ComposedDataset) -> PrevalenceFilterResult:
        """Evaluate the rule without narrowing the dataset."""
        keep_mask = self.compute_keep_mask(dataset)
        feature_ids = dataset.feature_ids
        return PrevalenceFilterResult(
            passed_features=set(feature_ids[keep_mask]),
            failed_features=set(feature_ids[~keep_mask]),
            min_samples=self.min_samples(dataset.n_samples),
            n_samples=dataset.n_samples,
            parameters=dict(self.params),
        )
