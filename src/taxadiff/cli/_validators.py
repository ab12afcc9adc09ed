"""Shared argparse type validators for CLI parameter bounds checking.

These validators produce clear error messages when users pass invalid
values (e.g., ``--alpha 2.0``, ``--prevalence 0``). They are intended to
be used as the ``type=`` argument in ``add_argument()``.
"""

from __future__ import annotations

import argparse


def _nonzero_int(value: str) -> int:
    """argparse type for joblib worker counts (any non-zero integer)."""
    ivalue = int(value)
    if ivalue == 0:
        raise argparse.ArgumentTypeError(f"{value} is not a valid job count (use -1 for all cores)")
    return ivalue


def _probability(value: str) -> float:
    """argparse type for values in the open interval (0, 1)."""
    fvalue = float(value)
    if not (0 < fvalue < 1):
        raise argparse.ArgumentTypeError(
            f"{value} is not a valid probability (must be in (0, 1))"
        )
    return fvalue


def _fraction(value: str) -> float:
    """argparse type for fractions in the half-open interval (0, 1]."""
    fvalue = float(value)
    if not (0 < fvalue <= 1):
        raise argparse.ArgumentTypeError(
            f"{value} is not a valid fraction (must be in (0, 1])"
        )
    return fvalue


def _non_negative_float(value: str) -> float:
    """argparse type for floats >= 0."""
    fvalue = float(value)
    if fvalue < 0:
        raise argparse.ArgumentTypeError(f"{value} is not a non-negative number")
    return fvalue


def _cooks_cutoff(value: str) -> bool | float:
    """argparse type for --cooks-cutoff: off/false, on/true/auto, or a positive number."""
    lowered = value.strip().lower()
    if lowered in ("off", "false", "no", "none"):
        return False
    if lowered in ("on", "true", "yes", "auto"):
        return True
    try:
        fvalue = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"{value} is not a valid Cook's cutoff (off, auto, or a positive number)"
        ) from None
    if fvalue <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive Cook's cutoff")
    return fvalue


def _field_equals_value(value: str) -> tuple[str, str]:
    """argparse type for FIELD=VALUE selection predicates."""
    field_name, sep, field_value = value.partition("=")
    if not sep or not field_name.strip():
        raise argparse.ArgumentTypeError(f"{value!r} is not of the form FIELD=VALUE")
    return field_name.strip(), field_value.strip()
