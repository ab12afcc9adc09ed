"""
Pytest configuration and shared fixtures.

Provides synthetic amplicon inputs (feature table, taxonomy, tree, sample
metadata) and assembled datasets for all test suites.
"""

import io

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest
from skbio import TreeNode

from taxadiff.config import AnalysisConfig
from taxadiff.core.assembly import assemble_dataset


def star_tree(feature_ids) -> TreeNode:
    """Star phylogeny whose tips are the given feature keys."""
    newick = "(" + ",".join(f"{fid}:0.1" for fid in feature_ids) + ");"
    return TreeNode.read(io.StringIO(newick), convert_underscores=False)


def taxonomy_table(taxa: dict) -> pd.DataFrame:
    """QIIME-style taxonomy frame (Taxon, Confidence) indexed by feature key."""
    df = pd.DataFrame({
        "Taxon": list(taxa.values()),
        "Confidence": [0.95] * len(taxa),
    }, index=pd.Index(list(taxa.keys()), name="Feature ID"))
    return df


def build_inputs(counts: dict, metadata: pd.DataFrame, taxa: dict = None):
    """
    Raw inputs for assemble_dataset.

    Args:
        counts: feature key -> counts per metadata row (in metadata order)
        metadata: sample metadata indexed by sample key
        taxa: feature key -> taxonomy string (defaults to a generic string)

    Returns:
        (feature_table, taxonomy, metadata, tree)
    """
    feature_table = pd.DataFrame.from_dict(counts, orient="index", columns=metadata.index)
    if taxa is None:
        taxa = {fid: "d__Bacteria; p__Firmicutes; c__Bacilli" for fid in counts}
    return feature_table, taxonomy_table(taxa), metadata, star_tree(list(counts))


# Group-mean ratios of these patterns stay within 10%
FLAT_PATTERNS = [
    (1.0, 1.3, 1.1, 1.2),
    (1.2, 0.9, 1.0, 1.1),
    (1.0, 1.1, 1.25, 0.95),
    (0.9, 1.2, 1.0, 1.15),
]

FAMILIES = [
    ("Firmicutes", "Bacillaceae"),
    ("Actinobacteriota", "Streptomycetaceae"),
    ("Bacteroidota", "Chitinophagaceae"),
    ("Proteobacteria", "Sphingomonadaceae"),
]


def scenario_counts() -> dict:
    """
    Twenty features over R1, R2 (Rhizosphere), B1, B2 (Bulk) and two
    'Nat' samples N1, N2 that the sample selection removes.

    F01 is strongly enriched in Rhizosphere; F02 is near-identical across
    groups; F03..F20 are flat with replicate noise.
    """
    counts = {
        "F01": [100, 120, 5, 4, 30, 30],
        "F02": [50, 52, 48, 51, 50, 50],
    }
    for k in range(18):
        base = 40 + 15 * k
        pattern = FLAT_PATTERNS[k % len(FLAT_PATTERNS)]
        counts[f"F{k + 3:02d}"] = [int(round(base * p)) for p in pattern] + [base, base]
    return counts


def scenario_taxa(feature_ids) -> dict:
    taxa = {}
    for i, fid in enumerate(feature_ids):
        if fid == "F01":
            taxa[fid] = (
                "d__Bacteria; p__Proteobacteria; c__Alphaproteobacteria; "
                "o__Rhizobiales; f__Rhizobiaceae; g__Rhizobium"
            )
            continue
        phylum, family = FAMILIES[i % len(FAMILIES)]
        taxa[fid] = f"d__Bacteria; p__{phylum}; c__; o__; f__{family}"
    return taxa


@pytest.fixture
def scenario_metadata():
    return pd.DataFrame({
        "Description": ["Rhizosphere", "Rhizosphere", "Bulk", "Bulk", "Rhizosphere", "Bulk"],
        "Source": ["Agr", "Agr", "Agr", "Agr", "Nat", "Nat"],
        "EnvFeature": ["Pot"] * 6,
    }, index=pd.Index(["R1", "R2", "B1", "B2", "N1", "N2"], name="sample_id"))


@pytest.fixture
def scenario_inputs(scenario_metadata):
    counts = scenario_counts()
    return build_inputs(counts, scenario_metadata, scenario_taxa(list(counts)))


@pytest.fixture
def scenario_dataset(scenario_inputs):
    feature_table, taxonomy, metadata, tree = scenario_inputs
    return assemble_dataset(feature_table, taxonomy, metadata, tree=tree)


@pytest.fixture
def scenario_config():
    return AnalysisConfig.from_dict({
        "filter": {"select": {"Source": "Agr", "EnvFeature": "Pot"}},
        "model": {"contrast": ["Description", "Rhizosphere", "Bulk"]},
    })


@pytest.fixture
def three_vs_three_dataset():
    """Six samples, three per group, with one strongly enriched feature."""
    rng = np.random.RandomState(7)
    sample_ids = pd.Index([f"S{i}" for i in range(1, 7)], name="sample_id")
    metadata = pd.DataFrame({"Group": ["A", "A", "A", "B", "B", "B"]}, index=sample_ids)
    counts = {"UP": [200, 240, 220, 20, 25, 22]}
    for k in range(14):
        mean = 60 + 20 * k
        counts[f"ASV_{k:02d}"] = rng.negative_binomial(20, 20 / (20 + mean), size=6).tolist()
    feature_table, taxonomy, metadata, tree = build_inputs(counts, metadata)
    return assemble_dataset(feature_table, taxonomy, metadata, tree=tree)


@pytest.fixture
def exported_files(tmp_path, scenario_inputs):
    """Scenario inputs written the way an amplicon workflow exports them."""
    feature_table, taxonomy, metadata, tree = scenario_inputs

    table_path = tmp_path / "feature-table.tsv"
    body = feature_table.to_csv(sep="\t", index_label="#OTU ID")
    table_path.write_text("# Constructed from biom file\n" + body)

    taxonomy_path = tmp_path / "taxonomy.tsv"
    taxonomy.to_csv(taxonomy_path, sep="\t")

    metadata_path = tmp_path / "sample-metadata.tsv"
    header = "sample-id\t" + "\t".join(metadata.columns) + "\n"
    types = "#q2:types\t" + "\t".join(["categorical"] * len(metadata.columns)) + "\n"
    rows = "".join(
        f"{sid}\t" + "\t".join(str(v) for v in row) + "\n"
        for sid, row in zip(metadata.index, metadata.itertuples(index=False))
    )
    metadata_path.write_text(header + types + rows)

    tree_path = tmp_path / "tree.nwk"
    tree.write(str(tree_path), format="newick")

    return {
        "feature_table": table_path,
        "taxonomy": taxonomy_path,
        "metadata": metadata_path,
        "tree": tree_path,
    }
