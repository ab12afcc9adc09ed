"""
Consistent visual styles for differential-abundance charts.

Domain Conventions
------------------
- Enriched (positive log2FC) = Teal (#0d9488), Depleted = Orange (#f97316)
- Effect-size reference lines = Gray dashed
- Phylum colors from a qualitative, colorblind-safe palette, assigned in
  display order so the same ordering always yields the same colors
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

import matplotlib.pyplot as plt
import seaborn as sns


@dataclass(frozen=True)
class Palette:
    """
    Color palette for differential-abundance charts.

    Attributes
    ----------
    reference : str
        Color for effect-size reference lines
    neutral : str
        Color for the zero-change line
    categorical : str
        Seaborn palette name for taxon categories
    """
    reference: str = "#6b7280"   # Gray-500
    neutral: str = "#94a3b8"     # Slate-400
    categorical: str = "tab20"

    def for_categories(self, categories: list[str]) -> dict[str, str]:
        """Map category labels (in display order) to colors."""
        colors = sns.color_palette(self.categorical, max(len(categories), 1)).as_hex()
        return {cat: colors[i % len(colors)] for i, cat in enumerate(categories)}


PALETTES = {
    "default": Palette(),
    "colorblind": Palette(
        reference="#999999",
        neutral="#bbbbbb",
        categorical="colorblind",
    ),
    "print": Palette(
        reference="#808080",
        neutral="#b3b3b3",
        categorical="Greys",
    ),
}


def configure_style(
    style: Literal["paper", "presentation", "notebook"] = "paper",
    palette: str | Palette = "default",
    font_scale: float = 1.0
) -> Palette:
    """
    Configure matplotlib and seaborn for consistent visualization style.

    Parameters
    ----------
    style : {"paper", "presentation", "notebook"}
        Target medium; sets the seaborn context and base font sizes.
    palette : str or Palette
        Color palette name or Palette instance.
    font_scale : float
        Multiplier for all font sizes.

    Returns
    -------
    Palette
        The configured color palette.
    """
    if isinstance(palette, str):
        palette = PALETTES.get(palette, PALETTES["default"])

    base_params = {
        "figure.facecolor": "white",
        "axes.facecolor": "white",
        "axes.edgecolor": "#333333",
        "axes.labelcolor": "#333333",
        "text.color": "#333333",
        "xtick.color": "#333333",
        "ytick.color": "#333333",
        "axes.spines.top": False,
        "axes.spines.right": False,
        "legend.frameon": False,
    }

    context, base_size, dpi = {
        "paper": ("paper", 10, 300),
        "presentation": ("talk", 14, 150),
        "notebook": ("notebook", 11, 100),
    }[style]

    style_params = {
        "font.size": base_size * font_scale,
        "axes.titlesize": (base_size + 1) * font_scale,
        "axes.labelsize": base_size * font_scale,
        "xtick.labelsize": (base_size - 1) * font_scale,
        "ytick.labelsize": (base_size - 1) * font_scale,
        "legend.fontsize": (base_size - 1) * font_scale,
        "figure.dpi": dpi,
        "savefig.dpi": dpi,
    }

    sns.set_theme(style="whitegrid", context=context, font_scale=font_scale)
    plt.rcParams.update({**base_params, **style_params})

    return palette
