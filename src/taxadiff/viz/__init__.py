"""
Visualization for differential-abundance results.

Usage:
    from taxadiff.viz import annotate_results, build_chart_series, plot_fold_change_chart

    annotated = annotate_results(significant, dataset)
    series = build_chart_series(annotated)
    fig = plot_fold_change_chart(series)
    fig.save("fold_changes.png")
"""

from taxadiff.viz.core import Figure
from taxadiff.viz.styles import PALETTES, Palette, configure_style
from taxadiff.viz.differential import (
    ChartSeries,
    annotate_results,
    build_chart_series,
    compute_display_order,
    plot_fold_change_chart,
)

__all__ = [
    'Figure',
    'Palette',
    'PALETTES',
    'configure_style',
    'ChartSeries',
    'annotate_results',
    'build_chart_series',
    'compute_display_order',
    'plot_fold_change_chart',
]
