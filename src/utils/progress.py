"""
Mastery rollup and analytics helpers.

Provides:
- Means over assessed values (unassessed values never enter the denominator)
- Summary statistics (mean, median, min, max)
- Mastery histograms for the intake summary
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Tuple

import numpy as np


def mean_or_zero(values: Iterable[float]) -> float:
    """
    Arithmetic mean, or 0.0 for an empty input.

    Example:
        >>> mean_or_zero([0.5, 1.0])
        0.75
        >>> mean_or_zero([])
        0.0
    """
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return 0.0
    return float(arr.mean())


def clamp01(value: float) -> float:
    """Clamp a value into [0, 1]."""
    return float(np.clip(value, 0.0, 1.0))


def mastery_histogram(mastery: Dict[str, float], bins: int = 5) -> List[Tuple[str, int]]:
    """
    Build histogram of mastery values (0-1) in equal-width bins.

    Args:
        mastery: Dict mapping skill keys to mastery (0-1)
        bins: Number of bins

    Returns:
        List of (bin_label, count) tuples for every bin, lowest first

    Example:
        >>> mastery_histogram({"css_layout": 0.85, "js_async": 0.3}, bins=5)
        [('0.0-0.2', 0), ('0.2-0.4', 1), ('0.4-0.6', 0), ('0.6-0.8', 0), ('0.8-1.0', 1)]
    """
    counts, edges = np.histogram(
        np.clip(np.asarray(list(mastery.values()), dtype=float), 0.0, 1.0),
        bins=bins,
        range=(0.0, 1.0),
    )
    return [
        (f"{edges[i]:.1f}-{edges[i + 1]:.1f}", int(counts[i]))
        for i in range(len(counts))
    ]


def mastery_summary(mastery: Dict[str, float]) -> Dict[str, float]:
    """
    Calculate summary statistics for mastery values.

    Args:
        mastery: Dict mapping skill keys to mastery (0-1)

    Returns:
        Dict with mean, median, min, max, std_dev and count
    """
    if not mastery:
        return {
            "mean": 0.0,
            "median": 0.0,
            "min": 0.0,
            "max": 0.0,
            "std_dev": 0.0,
            "count": 0,
        }

    values = np.asarray(list(mastery.values()), dtype=float)
    return {
        "mean": round(float(values.mean()), 3),
        "median": round(float(np.median(values)), 3),
        "min": round(float(values.min()), 3),
        "max": round(float(values.max()), 3),
        "std_dev": round(float(values.std()), 3),
        "count": int(values.size),
    }
