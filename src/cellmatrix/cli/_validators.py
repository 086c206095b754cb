"""Shared argparse type validators for CLI parameter bounds checking.

These validators produce clear error messages when users pass invalid
values (e.g., ``--max-mito-percent 150``, ``--n-pcs 0``). They are
intended to be used as the ``type=`` argument in ``add_argument()``.
"""

from __future__ import annotations

import argparse


def _positive_int(value: str) -> int:
    """argparse type for positive integers (> 0)."""
    ivalue = int(value)
    if ivalue <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive integer")
    return ivalue


def _non_negative_int(value: str) -> int:
    """argparse type for integers >= 0."""
    ivalue = int(value)
    if ivalue < 0:
        raise argparse.ArgumentTypeError(f"{value} is not a non-negative integer")
    return ivalue


def _non_negative_float(value: str) -> float:
    """argparse type for floats >= 0."""
    fvalue = float(value)
    if fvalue < 0:
        raise argparse.ArgumentTypeError(f"{value} is not a non-negative number")
    return fvalue


def _positive_float(value: str) -> float:
    """argparse type for positive floats (> 0)."""
    fvalue = float(value)
    if fvalue <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive float")
    return fvalue


def _percentage(value: str) -> float:
    """argparse type for percentages in the closed interval [0, 100]."""
    fvalue = float(value)
    if not (0 <= fvalue <= 100):
        raise argparse.ArgumentTypeError(
            f"{value} is not a valid percentage (must be in [0, 100])"
        )
    return fvalue


def _n_jobs(value: str) -> int:
    """argparse type for joblib n_jobs (non-zero integer, -1 = all CPUs)."""
    ivalue = int(value)
    if ivalue == 0:
        raise argparse.ArgumentTypeError("n_jobs must be non-zero (-1 for all CPUs)")
    return ivalue
