"""
End-to-end differential-abundance pipeline.

    assemble -> select samples -> prevalence filter -> NB GLM fit
             -> Wald test -> FDR -> significance gate -> annotate/present

``analyze`` runs on an already assembled ComposedDataset and is pure: the
input dataset is never modified and every stage result is kept on the
returned AnalysisResult. ``run_analysis`` adds the file-based ends:
loading/assembly from ``config.inputs`` and writing outputs to
``config.output``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

from taxadiff.config import AnalysisConfig
from taxadiff.core.assembly import assemble_dataset
from taxadiff.core.dataset import ComposedDataset
from taxadiff.quality.filtering import PrevalenceFilter, SampleSelector
from taxadiff.stats.differential import DifferentialResult, filter_significant, wald_test
from taxadiff.stats.nbglm import FitResult, fit_nb_glm
from taxadiff.viz.differential import ChartSeries, annotate_results, build_chart_series

logger = logging.getLogger(__name__)

__all__ = ['AnalysisResult', 'analyze', 'load_dataset', 'run_analysis']


@dataclass
class AnalysisResult:
    """Every stage output of one run.

    Attributes:
        config: Configuration the run used
        assembled: Dataset as assembled from the inputs
        working: Dataset after sample selection and prevalence filtering
        fit: Per-feature NB GLM fit on ``working``
        differential: Contrast statistics for every working feature
        results: Full result table with rank fields
        significant: Rows passing the significance gate, with rank fields
        chart: Chart series built from ``significant``
        stages: (features, samples) after each narrowing stage
    """
    config: AnalysisConfig
    assembled: ComposedDataset
    working: ComposedDataset
    fit: FitResult
    differential: DifferentialResult
    results: pd.DataFrame
    significant: pd.DataFrame
    chart: ChartSeries
    stages: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def summary(self) -> Dict[str, Any]:
        """JSON-serializable run summary."""
        from taxadiff import __version__

        sf = self.fit.size_factors
        dispersions = self.fit.dispersions
        return {
            "taxadiff_version": __version__,
            "created_at": datetime.now().isoformat(),
            "parameters": self.config.to_dict(),
            "stages": self.stages,
            "design": {
                "factor": self.fit.design.factor,
                "levels": self.fit.design.level_counts,
                "coefficients": self.fit.design.col_names,
            },
            "contrast": self.differential.contrast.name,
            "size_factors": {
                "method": sf.method.value,
                "n_reference_features": sf.n_reference_features,
                "values": dict(zip(self.fit.sample_ids, sf.size_factors.tolist())),
            },
            "dispersion": {
                "trend_type": dispersions.trend_type,
                "trend_coefficients": list(dispersions.trend_coefficients)
                if dispersions.trend_coefficients else None,
                "prior_variance": dispersions.prior_variance,
                "n_outliers": int(dispersions.outliers.sum()),
            },
            "cooks_cutoff": self.differential.cooks_cutoff,
            "results": self.differential.summary(
                alpha=self.config.significance.alpha,
                lfc_threshold=self.config.significance.lfc_threshold,
            ),
        }


def _shape(dataset: ComposedDataset) -> Dict[str, int]:
    return {"n_features": dataset.n_features, "n_samples": dataset.n_samples}


def analyze(dataset: ComposedDataset, config: AnalysisConfig) -> AnalysisResult:
    """
    Run filtering, model fitting, testing and presentation on a dataset.

    Raises:
        ValueError: No contrast configured
        MissingMetadata / EmptySelection / DegenerateDesign: see stages
    """
    config.model.require()
    stages = {"assembled": _shape(dataset)}

    selected = SampleSelector(config.filter.select).apply(dataset)
    stages["selected"] = _shape(selected)

    prevalence = PrevalenceFilter(
        count_threshold=config.filter.count_threshold,
        prevalence=config.filter.prevalence,
    )
    working = prevalence.apply(selected)
    stages["filtered"] = _shape(working)

    fit = fit_nb_glm(
        working,
        config.model.design,
        size_factor_method=config.model.size_factor_method,
        n_jobs=config.model.n_jobs,
    )
    differential = wald_test(fit, config.model.contrast, cooks_cutoff=config.model.cooks_cutoff)

    results = annotate_results(differential.to_dataframe(), working)
    significant = filter_significant(
        results,
        alpha=config.significance.alpha,
        lfc_threshold=config.significance.lfc_threshold,
    )
    chart = build_chart_series(significant, lfc_threshold=config.significance.lfc_threshold)

    logger.info(
        f"{config.model.contrast.name}: {len(significant)}/{len(results)} features significant "
        f"(padj < {config.significance.alpha}, |log2FC| >= {config.significance.lfc_threshold})"
    )

    return AnalysisResult(
        config=config,
        assembled=dataset,
        working=working,
        fit=fit,
        differential=differential,
        results=results,
        significant=significant,
        chart=chart,
        stages=stages,
    )


def load_dataset(config: AnalysisConfig) -> ComposedDataset:
    """Load the configured input files and assemble them."""
    from taxadiff.io.loaders import load_feature_table, load_metadata, load_taxonomy, load_tree

    config.inputs.require()
    paths = config.inputs

    tree = load_tree(paths.tree) if paths.tree is not None else None
    return assemble_dataset(
        feature_table=load_feature_table(paths.feature_table),
        taxonomy=load_taxonomy(paths.taxonomy),
        sample_metadata=load_metadata(paths.metadata),
        tree=tree,
        strict_metadata=config.strict_metadata,
        parser=config.taxonomy.parser(),
    )


def run_analysis(config: AnalysisConfig, output_dir: Optional[Path] = None) -> AnalysisResult:
    """
    Load, analyze and (if an output directory is configured) write results.

    Args:
        config: Full configuration, including input paths.
        output_dir: Overrides ``config.output``.
    """
    from taxadiff.io.writers import write_analysis_outputs

    dataset = load_dataset(config)
    result = analyze(dataset, config)

    output_dir = output_dir or config.output
    if output_dir is not None:
        write_analysis_outputs(result, Path(output_dir))
    return result
