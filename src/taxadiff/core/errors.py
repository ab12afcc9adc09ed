"""
Error taxonomy for differential-abundance runs.

Structural errors abort a run: every downstream stage relies on the
feature/sample key invariants of ComposedDataset, so there is no partial
recovery. Per-feature numerical failures are NOT exceptions; they surface
as NaN rows (with an ``issue`` string) in the result table.
"""

from __future__ import annotations

from typing import Iterable

__all__ = [
    'TaxadiffError',
    'MissingAnnotation',
    'MissingTreeTip',
    'MissingMetadata',
    'MalformedTaxonomyString',
    'EmptySelection',
    'DegenerateDesign',
    'format_keys',
]


def format_keys(keys: Iterable, limit: int = 10) -> str:
    """Render offending keys for an error message: first ``limit`` plus a total."""
    keys = list(keys)
    shown = ", ".join(str(k) for k in keys[:limit])
    if len(keys) > limit:
        shown += f", ... ({len(keys)} total)"
    return shown


class TaxadiffError(Exception):
    """Base class for fatal pipeline errors."""


class MissingAnnotation(TaxadiffError, KeyError):
    """A feature in the count table has no taxonomy row."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep messages readable
        return str(self.args[0]) if self.args else ""


class MissingTreeTip(MissingAnnotation):
    """A feature in the count table is not a tip of the phylogenetic tree."""


class MissingMetadata(TaxadiffError, KeyError):
    """A sample (or a referenced metadata field) is absent from the metadata."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class MalformedTaxonomyString(TaxadiffError, ValueError):
    """A taxonomy string splits into more ranks than the hierarchy allows."""


class EmptySelection(TaxadiffError, ValueError):
    """A sample predicate conjunction matched no samples."""


class DegenerateDesign(TaxadiffError, ValueError):
    """The design factor cannot support a two-level comparison."""
