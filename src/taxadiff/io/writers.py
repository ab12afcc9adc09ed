"""
Writers for differential-abundance run outputs.

Output directory layout:
    results.csv        every tested feature: statistics + rank fields
    significant.csv    rows passing the significance gate
    chart_points.csv   chart series with display ranks
    fold_changes.png   per-taxon fold-change chart
    run_summary.json   parameters, size factors, stage counts, result counts

Tables are written atomically so an interrupted run never leaves a
partially written file that looks complete. NaN statistics are written as
"NA" to keep not-available distinct from zero.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Dict

import pandas as pd

from taxadiff.utils.fileio import atomic_write_json, atomic_write_text

if TYPE_CHECKING:
    from taxadiff.pipeline import AnalysisResult

logger = logging.getLogger(__name__)

__all__ = ['write_table', 'write_analysis_outputs']

NA_REP = "NA"


def write_table(table: pd.DataFrame, path: Path) -> Path:
    """Write a result table as CSV (no index, NaN as "NA")."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_text(path, table.to_csv(index=False, na_rep=NA_REP))
    return path


def write_analysis_outputs(
    result: AnalysisResult,
    output_dir: Path,
    save_chart: bool = True,
) -> Dict[str, Path]:
    """
    Write every output of a run into ``output_dir``.

    Returns:
        Mapping of output name to written path.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    written = {
        "results": write_table(result.results, output_dir / "results.csv"),
        "significant": write_table(result.significant, output_dir / "significant.csv"),
        "chart_points": write_table(result.chart.to_dataframe(), output_dir / "chart_points.csv"),
    }

    if save_chart:
        from taxadiff.viz.differential import plot_fold_change_chart

        fig = plot_fold_change_chart(result.chart, title=result.differential.contrast.name)
        try:
            written["chart"] = fig.save(output_dir / "fold_changes.png")
        finally:
            fig.close()

    summary_path = output_dir / "run_summary.json"
    atomic_write_json(summary_path, result.summary())
    written["summary"] = summary_path

    for name, path in written.items():
        logger.info(f"Wrote {name} to {path}")
    return written
