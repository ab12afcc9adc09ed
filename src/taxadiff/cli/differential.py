"""
CLI for two-group differential abundance of amplicon features.

Assembles feature table, taxonomy, tree and sample metadata, restricts to
the selected samples, drops low-prevalence features, fits a negative
binomial GLM per feature and tests one contrast (Wald, BH-adjusted).

Usage:
    taxadiff differential \\
        --feature-table exported/feature-table.biom \\
        --taxonomy exported/taxonomy.tsv \\
        --tree exported/tree.nwk \\
        --metadata sample-metadata.tsv \\
        --select Source=Agr --select EnvFeature=Pot \\
        --contrast Description Rhizosphere Bulk \\
        --output results/rhizosphere_vs_bulk

    taxadiff differential --config analysis.yaml --alpha 0.05

Options given on the command line override the config file; options given
in neither take their defaults.
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime
from pathlib import Path

from taxadiff.cli._validators import (
    _cooks_cutoff,
    _field_equals_value,
    _fraction,
    _non_negative_float,
    _nonzero_int,
    _probability,
)


def setup_parser(subparsers: argparse._SubParsersAction) -> None:
    """Add the differential subcommand to the parser."""
    parser = subparsers.add_parser(
        "differential",
        help="Two-group differential abundance (negative-binomial Wald test)",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML or JSON analysis config; command-line options override it",
    )

    # Input files
    inputs = parser.add_argument_group("inputs")
    inputs.add_argument("--feature-table", type=Path, default=None,
                        help="Feature table (.biom, or TSV features × samples)")
    inputs.add_argument("--taxonomy", type=Path, default=None,
                        help="Taxonomy TSV (Feature ID, Taxon, Confidence)")
    inputs.add_argument("--tree", type=Path, default=None,
                        help="Newick tree whose tips are the feature IDs (optional)")
    inputs.add_argument("--metadata", "-m", type=Path, default=None,
                        help="Sample metadata TSV, first column = sample ID")
    parser.add_argument("--output", "-o", type=Path, default=None,
                        help="Output directory for results")

    # Filtering
    filtering = parser.add_argument_group("filtering")
    filtering.add_argument(
        "--select",
        type=_field_equals_value,
        action="append",
        default=None,
        metavar="FIELD=VALUE",
        help="Keep samples whose metadata FIELD equals VALUE (repeatable, AND-ed)",
    )
    filtering.add_argument("--count-threshold", type=_non_negative_float, default=None,
                           help="A feature is present in a sample when count > this (default: 5)")
    filtering.add_argument("--prevalence", type=_fraction, default=None,
                           help="Required fraction of samples where present (default: 0.5)")
    filtering.add_argument("--lenient-metadata", action="store_true", default=None,
                           help="Drop samples without metadata instead of failing")

    # Model
    model = parser.add_argument_group("model")
    model.add_argument("--design", type=str, default=None,
                       help="Design formula with one factor, e.g. '~ Description' "
                            "(default: ~ <contrast factor>)")
    model.add_argument("--contrast", nargs=3, metavar=("FACTOR", "NUMERATOR", "DENOMINATOR"),
                       default=None, help="Levels to compare: log2(NUMERATOR / DENOMINATOR)")
    model.add_argument("--size-factors", choices=["ratio", "poscounts"], default=None,
                       help="Size factor estimator (default: ratio)")
    model.add_argument("--cooks-cutoff", type=_cooks_cutoff, default=None,
                       help="Count outlier cutoff: off (default), auto, or a number")
    model.add_argument("--n-jobs", type=_nonzero_int, default=None,
                       help="Parallel workers for per-feature fits (default: 1, -1 = all cores)")

    # Significance
    significance = parser.add_argument_group("significance")
    significance.add_argument("--alpha", type=_probability, default=None,
                              help="Adjusted p-value threshold (default: 0.01)")
    significance.add_argument("--lfc-threshold", type=_non_negative_float, default=None,
                              help="Minimum |log2 fold change| (default: 1.0)")

    # Output
    parser.add_argument("--no-plot", action="store_true",
                        help="Skip the fold-change chart")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Warnings only")

    parser.set_defaults(func=run_differential)


def build_config(args: argparse.Namespace):
    """Merge config file and explicit command-line options into an AnalysisConfig."""
    from taxadiff.config import AnalysisConfig, load_config, merge_overrides

    base = load_config(args.config) if args.config is not None else {}

    overrides = {
        "inputs.feature_table": args.feature_table,
        "inputs.taxonomy": args.taxonomy,
        "inputs.tree": args.tree,
        "inputs.metadata": args.metadata,
        "output": args.output,
        "filter.select": dict(args.select) if args.select else None,
        "filter.count_threshold": args.count_threshold,
        "filter.prevalence": args.prevalence,
        "model.design": args.design,
        "model.contrast": list(args.contrast) if args.contrast else None,
        "model.size_factor_method": args.size_factors,
        "model.cooks_cutoff": args.cooks_cutoff,
        "model.n_jobs": args.n_jobs,
        "significance.alpha": args.alpha,
        "significance.lfc_threshold": args.lfc_threshold,
        "strict_metadata": False if args.lenient_metadata else None,
    }
    return AnalysisConfig.from_dict(merge_overrides(base, overrides))


def run_differential(args: argparse.Namespace) -> int:
    """Execute the differential abundance analysis."""
    from taxadiff.core.errors import TaxadiffError
    from taxadiff.io.writers import write_analysis_outputs
    from taxadiff.pipeline import analyze, load_dataset

    level = logging.DEBUG if args.verbose else logging.WARNING if args.quiet else logging.INFO
    logging.basicConfig(level=level, format='%(asctime)s - %(levelname)s - %(message)s')
    logger = logging.getLogger(__name__)

    try:
        config = build_config(args)
        config.inputs.require()
        config.model.require()

        print("=" * 70)
        print("  Differential Abundance Analysis")
        print("=" * 70)
        print(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        print(f"Contrast: {config.model.contrast.name}")
        print()

        dataset = load_dataset(config)
        result = analyze(dataset, config)

        if config.output is not None:
            write_analysis_outputs(result, config.output, save_chart=not args.no_plot)
    except (TaxadiffError, ValueError, FileNotFoundError) as e:
        logger.debug("Analysis failed", exc_info=True)
        print(f"Error: {e}")
        return 1

    summary = result.differential.summary(
        alpha=config.significance.alpha,
        lfc_threshold=config.significance.lfc_threshold,
    )
    print()
    print(f"Samples: {result.working.n_samples}  Features tested: {summary['n_tested']}"
          f"  Not available: {summary['n_not_available']}")
    print(f"Significant (padj < {config.significance.alpha}, |log2FC| >= "
          f"{config.significance.lfc_threshold}): {summary['n_significant']} "
          f"({summary['n_up']} up, {summary['n_down']} down)")
    if config.output is not None:
        print(f"Results written to {config.output}")
    else:
        print("No --output given; nothing written")

    return 0
