"""
Annotation and presentation of significant differential-abundance results.

Cognitive operation: "Which taxa are enriched or depleted, and how strongly?"

    annotate_results      -> significant rows + rank fields (Kingdom..Species)
    compute_display_order -> category labels ordered by an aggregate of a
                             value field (default: max log2FC, descending)
    build_chart_series    -> points (x = Family, y = log2FC, color = Phylum)
                             plus reference lines at +/- the LFC threshold
    plot_fold_change_chart-> seaborn strip chart of a ChartSeries

Display order is computed explicitly and applied only when drawing; the
result rows themselves are never reordered or re-typed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from taxadiff.core.dataset import RANKS, ComposedDataset
from taxadiff.core.errors import MissingAnnotation, format_keys
from taxadiff.viz.core import Figure
from taxadiff.viz.styles import PALETTES, Palette

logger = logging.getLogger(__name__)

__all__ = [
    'annotate_results',
    'compute_display_order',
    'ChartSeries',
    'build_chart_series',
    'plot_fold_change_chart',
]

Aggregator = Union[str, Callable[[pd.Series], float]]


def annotate_results(
    results: pd.DataFrame,
    taxonomy: Union[pd.DataFrame, ComposedDataset],
) -> pd.DataFrame:
    """
    Left-join result rows with their rank fields by feature key.

    Args:
        results: Table with a ``feature_id`` column.
        taxonomy: Rank table indexed by feature key, or the dataset the
            results were computed from.

    Returns:
        ``results`` with RANKS columns appended, row order unchanged.

    Raises:
        MissingAnnotation: A result row's feature has no taxonomy row
    """
    if isinstance(taxonomy, ComposedDataset):
        taxonomy = taxonomy.taxonomy

    feature_ids = results["feature_id"].astype(str)
    missing = feature_ids[~feature_ids.isin(taxonomy.index)]
    if len(missing):
        raise MissingAnnotation(
            f"{len(missing)} result feature(s) have no taxonomy: {format_keys(missing)}"
        )

    ranks = taxonomy.loc[feature_ids, RANKS].reset_index(drop=True)
    annotated = pd.concat([results.reset_index(drop=True), ranks], axis=1)
    annotated.index = results.index
    return annotated


def compute_display_order(
    rows: pd.DataFrame,
    group_field: str,
    value_field: str,
    aggregator: Aggregator = "max",
) -> list[str]:
    """
    Order the categories of ``group_field`` by an aggregate of ``value_field``.

    Categories are sorted by the aggregate, descending; ties keep the order
    in which categories first appear in ``rows``, and categories whose
    aggregate is NaN come last. Pure function: ``rows`` is not modified.

    Examples:
        >>> rows = pd.DataFrame({"Family": ["A", "B", "A"], "log2FoldChange": [1.5, 3.0, -2.0]})
        >>> compute_display_order(rows, "Family", "log2FoldChange")
        ['B', 'A']
    """
    if rows.empty:
        return []

    grouped = rows.groupby(group_field, sort=False)[value_field]
    if isinstance(aggregator, str):
        summary = grouped.agg(aggregator)
    else:
        summary = grouped.apply(aggregator)

    summary = summary.sort_values(ascending=False, kind="stable", na_position="last")
    return [str(label) for label in summary.index]


@dataclass(frozen=True)
class ChartSeries:
    """Data series for the per-taxon fold-change chart.

    Attributes:
        points: One row per significant feature: feature_id, x_field,
            y_field, color_field
        x_field / y_field / color_field: Column roles
        x_order: Display order of x categories
        color_order: Display order of color categories
        reference_lines: Horizontal reference y values
    """

    points: pd.DataFrame
    x_field: str
    y_field: str
    color_field: str
    x_order: list[str]
    color_order: list[str]
    reference_lines: tuple[float, ...]

    def to_dataframe(self) -> pd.DataFrame:
        """Points with their display ranks, for export."""
        out = self.points.copy()
        out[f"{self.x_field}_rank"] = out[self.x_field].map({c: i for i, c in enumerate(self.x_order)})
        out[f"{self.color_field}_rank"] = out[self.color_field].map(
            {c: i for i, c in enumerate(self.color_order)}
        )
        return out


def build_chart_series(
    annotated: pd.DataFrame,
    x_field: str = "Family",
    y_field: str = "log2FoldChange",
    color_field: str = "Phylum",
    lfc_threshold: float = 1.0,
    aggregator: Aggregator = "max",
) -> ChartSeries:
    """
    Points and category orders for the fold-change chart.

    Both the x and color categories are ordered by ``aggregator`` of
    ``y_field`` among their member rows, descending.
    """
    for column in ("feature_id", x_field, y_field, color_field):
        if column not in annotated.columns:
            raise KeyError(f"Column {column!r} not in annotated results")

    points = annotated[["feature_id", x_field, y_field, color_field]].copy()
    points[x_field] = points[x_field].astype(str)
    points[color_field] = points[color_field].astype(str)

    return ChartSeries(
        points=points.reset_index(drop=True),
        x_field=x_field,
        y_field=y_field,
        color_field=color_field,
        x_order=compute_display_order(points, x_field, y_field, aggregator),
        color_order=compute_display_order(points, color_field, y_field, aggregator),
        reference_lines=(-float(lfc_threshold), float(lfc_threshold)),
    )


def plot_fold_change_chart(
    series: ChartSeries,
    palette: Optional[Palette] = None,
    title: Optional[str] = None,
    figsize: Optional[tuple[float, float]] = None,
) -> Figure:
    """
    Strip chart of log2 fold change per taxon, colored by a parent rank.

    Parameters
    ----------
    series : ChartSeries
        Output of build_chart_series.
    palette : Palette, optional
        Colors; defaults to PALETTES["default"].
    title : str, optional
        Axes title.
    figsize : tuple, optional
        Defaults to a width that grows with the number of x categories.

    Returns
    -------
    Figure
    """
    palette = palette or PALETTES["default"]
    if figsize is None:
        figsize = (max(6.0, 0.35 * len(series.x_order) + 3.0), 5.0)

    fig, ax = plt.subplots(figsize=figsize)

    if not series.points.empty:
        sns.stripplot(
            data=series.points,
            x=series.x_field,
            y=series.y_field,
            hue=series.color_field,
            order=series.x_order,
            hue_order=series.color_order,
            palette=palette.for_categories(series.color_order),
            jitter=False,
            size=6,
            ax=ax,
        )
        ax.tick_params(axis="x", labelrotation=90)
        ax.legend(title=series.color_field, bbox_to_anchor=(1.02, 1), loc="upper left")
    else:
        ax.text(0.5, 0.5, "No significant features", ha="center", va="center", transform=ax.transAxes)

    for y in series.reference_lines:
        ax.axhline(y, color=palette.reference, linestyle="--", linewidth=1.0, zorder=0)
    ax.axhline(0.0, color=palette.neutral, linewidth=0.8, zorder=0)

    ax.set_xlabel(series.x_field)
    ax.set_ylabel(series.y_field)
    if title:
        ax.set_title(title)

    logger.debug(f"Fold-change chart: {len(series.points)} points, {len(series.x_order)} {series.x_field} categories")

    return Figure(
        fig=fig,
        title=title or f"{series.y_field} by {series.x_field}",
        description=(
            f"{series.y_field} of significant features per {series.x_field}, colored by "
            f"{series.color_field}; dashed lines at {list(series.reference_lines)}"
        ),
        metadata={
            "n_points": int(len(series.points)),
            "x_order": list(series.x_order),
            "color_order": list(series.color_order),
        },
    )
