"""
Base transformation framework for immutable dataset operations.

Every narrowing step of the pipeline (sample selection, prevalence pruning)
is a Transform: a pure function from one ComposedDataset snapshot to the
next. The input dataset is never modified, so an analyst can keep the
assembled dataset around and re-filter it with different parameters.

Examples:
    >>> from taxadiff.core.transform import Transform
    >>>
    >>> class DropSingletons(Transform):
    ...     def __init__(self):
    ...         super().__init__(name="DropSingletons", params={})
    ...
    ...     def apply(self, dataset):
    ...         return dataset.select_features(dataset.counts.sum(axis=1) > 1)
    >>>
    >>> narrowed = DropSingletons().apply(dataset)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any

from taxadiff.core.errors import EmptySelection

if TYPE_CHECKING:
    from taxadiff.core.dataset import ComposedDataset

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for all dataset transformations.

    Attributes:
        name: Human-readable transformation name (e.g., "PrevalenceFilter")
        params: Parameters used for this transformation (JSON-serializable,
            recorded in the run summary)
        timestamp: When this transform instance was created
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, dataset: ComposedDataset) -> ComposedDataset:
        """
        Execute transformation and return a new dataset.

        Must never modify the input. Narrowing must go through
        ComposedDataset.select_samples/select_features so that counts,
        taxonomy, tree and metadata stay consistent.
        """

    def validate(self, dataset: ComposedDataset) -> list[str]:
        """
        Check preconditions before applying transformation.

        apply() runs this through _check, which raises on any error.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if dataset.n_features == 0:
            errors.append("Dataset has no features")
        if dataset.n_samples == 0:
            errors.append("Dataset has no samples")

        return errors

    def _check(self, dataset: ComposedDataset) -> None:
        errors = self.validate(dataset)
        if errors:
            raise EmptySelection(f"{self.name}: " + "; ".join(errors))

    def __repr__(self) -> str:
        """
        String representation for logging.

        Returns:
            String like "PrevalenceFilter(count_threshold=5, prevalence=0.5)"
        """
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"
