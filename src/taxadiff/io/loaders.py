"""
Loaders for exported amplicon-workflow files.

The upstream workflow stores its results in artifact containers; these
loaders read the plain files those artifacts export to:

    feature-table.biom / feature-table.tsv   counts, features × samples
    taxonomy.tsv                             Feature ID, Taxon, Confidence
    tree.nwk                                 rooted/unrooted Newick tree
    sample-metadata.tsv                      sample key + metadata fields

A ``biom convert --to-tsv`` export starts with "# Constructed from biom file"
and has "#OTU ID" as its first header cell; both are handled. Metadata may
carry a QIIME "#q2:types" directive row, which is dropped.

Examples:
    >>> from taxadiff.io.loaders import load_feature_table, load_taxonomy
    >>> counts = load_feature_table("exported/feature-table.biom")
    >>> taxonomy = load_taxonomy("exported/taxonomy.tsv")
    >>> taxonomy.columns.tolist()
    ['Taxon', 'Confidence']
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

import pandas as pd

from taxadiff.core.assembly import coerce_counts

if TYPE_CHECKING:
    from skbio import TreeNode

logger = logging.getLogger(__name__)

__all__ = [
    'sniff_delimiter',
    'load_feature_table',
    'load_taxonomy',
    'load_tree',
    'load_metadata',
]

PathLike = Union[str, Path]

_BIOM_COMMENT = "# Constructed from biom file"
_Q2_TYPES = "#q2:types"


def sniff_delimiter(path: PathLike, sample_size: int = 8192) -> str:
    """
    Auto-detect delimiter from file content.

    Uses Python's csv.Sniffer with a first-line count fallback. Comment
    lines starting with "# " are skipped.

    Raises:
        ValueError: If delimiter cannot be determined
    """
    with open(path, 'r', encoding='utf-8', errors='ignore') as f:
        sample = f.read(sample_size)

    lines = [ln for ln in sample.splitlines() if not ln.startswith("# ")]
    sample = "\n".join(lines)

    try:
        dialect = csv.Sniffer().sniff(sample, delimiters='\t,;')
        return dialect.delimiter
    except csv.Error:
        pass

    first_line = lines[0] if lines else ""
    counts = {
        '\t': first_line.count('\t'),
        ',': first_line.count(','),
        ';': first_line.count(';'),
    }

    if max(counts.values()) == 0:
        raise ValueError(f"Could not detect delimiter in {path}")

    return max(counts, key=counts.get)


def _delimiter_for(path: Path) -> str:
    # Taxon strings contain ";" so extensions win over sniffing
    suffix = path.suffix.lower()
    if suffix in (".tsv", ".txt"):
        return "\t"
    if suffix == ".csv":
        return ","
    return sniff_delimiter(path)


def load_feature_table(path: PathLike) -> pd.DataFrame:
    """
    Load a feature table as an integer features × samples DataFrame.

    ``.biom`` files (JSON or HDF5) are read with biom-format; anything else is
    read as delimited text with feature keys in the first column.

    Raises:
        FileNotFoundError: Missing file
        ValueError: Non-numeric, fractional or negative counts
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Feature table not found: {path}")

    if path.suffix.lower() == ".biom":
        from biom import load_table

        table = load_table(str(path))
        df = table.to_dataframe(dense=True)
    else:
        sep = _delimiter_for(path)
        with open(path, 'r', encoding='utf-8') as f:
            first = f.readline()
        skiprows = 1 if first.startswith(_BIOM_COMMENT) else 0
        df = pd.read_csv(path, sep=sep, skiprows=skiprows, dtype=str)
        df = df.set_index(df.columns[0])

    df.index = df.index.astype(str)
    df.index.name = "feature_id"
    df.columns = df.columns.astype(str)

    counts = pd.DataFrame(coerce_counts(df), index=df.index, columns=df.columns)
    logger.info(f"Loaded feature table {path.name}: {counts.shape[0]} features × {counts.shape[1]} samples")
    return counts


def load_taxonomy(path: PathLike) -> pd.DataFrame:
    """
    Load a classifier taxonomy table indexed by feature key.

    Expects "Feature ID" (or first column), "Taxon" and optionally
    "Confidence"; a missing Confidence column is filled with NaN.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Taxonomy not found: {path}")

    df = pd.read_csv(path, sep=_delimiter_for(path), dtype=str)
    df = df[~df.iloc[:, 0].astype(str).str.startswith("#")]
    df = df.set_index(df.columns[0])
    df.index = df.index.astype(str)
    df.index.name = "feature_id"

    if "Taxon" not in df.columns:
        raise ValueError(f"{path} has no 'Taxon' column: {list(df.columns)}")
    if "Confidence" in df.columns:
        df["Confidence"] = pd.to_numeric(df["Confidence"], errors="coerce")
    else:
        df["Confidence"] = float("nan")

    logger.info(f"Loaded taxonomy {path.name}: {len(df)} features")
    return df[["Taxon", "Confidence"]]


def load_tree(path: PathLike) -> TreeNode:
    """Load a Newick tree; every tip must carry a name."""
    from skbio import TreeNode

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Tree not found: {path}")

    tree = TreeNode.read(str(path), format="newick", convert_underscores=False)
    for tip in tree.tips():
        if tip.name is None:
            raise ValueError(f"Tip without name encountered in {path}")
    logger.info(f"Loaded tree {path.name}: {tree.count(tips=True)} tips")
    return tree


def load_metadata(path: PathLike, index_col: Optional[str] = None) -> pd.DataFrame:
    """
    Load sample metadata; first column (or ``index_col``) is the sample key.

    Raises:
        ValueError: Duplicated sample keys
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Metadata not found: {path}")

    df = pd.read_csv(path, sep=_delimiter_for(path), dtype=str, keep_default_na=True)
    if len(df) and str(df.iloc[0, 0]).startswith(_Q2_TYPES):
        df = df.iloc[1:]

    df = df.set_index(index_col or df.columns[0])
    df.index = df.index.astype(str)
    df.index.name = "sample_id"

    if df.index.has_duplicates:
        dups = df.index[df.index.duplicated()].unique().tolist()
        raise ValueError(f"Duplicated sample keys in {path}: {dups[:10]}")

    # Numeric-looking columns back to numbers; categorical fields stay str
    for column in df.columns:
        converted = pd.to_numeric(df[column], errors="coerce")
        if converted.notna().sum() == df[column].notna().sum():
            df[column] = converted

    logger.info(f"Loaded metadata {path.name}: {len(df)} samples, {len(df.columns)} fields")
    return df
