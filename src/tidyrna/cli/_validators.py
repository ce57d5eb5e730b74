"""Shared argparse type validators for CLI parameter bounds checking.

These validators produce clear error messages when users pass invalid
values (e.g., ``--fdr 2.0``, ``--top -5``).  They are intended to be used
as the ``type=`` argument in ``add_argument()``.
"""

from __future__ import annotations

import argparse


def _positive_int(value: str) -> int:
    """argparse type for positive integers (> 0)."""
    ivalue = int(value)
    if ivalue <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return ivalue


def _probability(value: str) -> float:
    """argparse type for FDR thresholds in the half-open interval (0, 1]."""
    fvalue = float(value)
    if not (0 < fvalue <= 1):
        raise argparse.ArgumentTypeError(
            f"{value} is not a valid threshold (must be in (0, 1])"
        )
    return fvalue


def _non_negative_float(value: str) -> float:
    """argparse type for count thresholds (>= 0)."""
    fvalue = float(value)
    if fvalue < 0:
        raise argparse.ArgumentTypeError(f"{value} is not a non-negative number")
    return fvalue


def _jobs(value: str) -> int:
    """argparse type for joblib ``n_jobs``: positive, or -1 for all cores."""
    ivalue = int(value)
    if ivalue == 0 or ivalue < -1:
        raise argparse.ArgumentTypeError(f"{value} is not a valid job count (positive or -1)")
    return ivalue
