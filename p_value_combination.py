"""
Multiple-testing adjustment and harmonic-mean p-value combination.

adjust_pvalues is the single Benjamini-Hochberg implementation used by every
testing stage. harmonic_mean_pvalue merges the per-method enrichment p-values
of one gene set (Wilson 2019, "The harmonic mean p-value for combining
dependent tests", PNAS 116(4)).
"""

from typing import Iterable, Optional
import numpy as np
import pandas as pd
from scipy.special import digamma
from scipy.stats import landau
from statsmodels.stats.multitest import multipletests

from analysis_config import HMP_TESTS_COMBINED


def adjust_pvalues(pvalues) -> np.ndarray:
    """
    Benjamini-Hochberg FDR over one family of tests.

    NaN entries are left as NaN and do not count towards the family size.
    Accepts any 1-d array-like; returns a float ndarray in the input order.
    """
    p = np.asarray(pvalues, dtype=float)
    adjusted = np.full(p.shape, np.nan)
    valid = ~np.isnan(p)
    if valid.any():
        adjusted[valid] = multipletests(p[valid], method="fdr_bh")[1]
    return adjusted


# Scale of the limiting Landau law of the mean of n_tests inverse p-values
LANDAU_SCALE = np.pi / 2.0


def _landau_location(n_tests: int) -> float:
    # scipy's landau(loc, scale) is the alpha = 1, beta = 1 stable law in
    # Nolan's S0 form, the parameterization this location is stated in
    return float(np.log(n_tests) + 1.0 + digamma(1.0) - np.log(2.0 / np.pi))


def harmonic_mean_pvalue(
    pvalues: Iterable[Optional[float]], n_tests: int = HMP_TESTS_COMBINED
) -> float:
    """
    Combine up to n_tests p-values into one harmonic-mean p-value.

    Missing values (None/NaN) are skipped. Each present p-value gets weight
    1/n_tests, so the weights only sum to 1 when all n_tests are present.
    The asymptotic Landau-tail p-value is floored at the weighted harmonic
    mean of the inputs (the tail approximation is only accurate for small
    p-values) and capped at 1.

    Returns:
        Combined p-value, or NaN when no p-value is present

    Raises:
        ValueError: More than n_tests p-values, or values outside [0, 1]
    """
    p = np.array(
        [v for v in pvalues if v is not None and not np.isnan(v)], dtype=float
    )
    if p.size == 0:
        return float("nan")
    if p.size > n_tests:
        raise ValueError(f"Got {p.size} p-values but n_tests is {n_tests}")
    if ((p < 0) | (p > 1)).any():
        raise ValueError(f"p-values must lie in [0, 1], got {p.tolist()}")
    if (p == 0).any():
        return 0.0

    weights = np.full(p.size, 1.0 / n_tests)
    weight_sum = weights.sum()
    hmp = weight_sum / np.sum(weights / p)

    tail = weight_sum * landau.sf(
        weight_sum / hmp, loc=_landau_location(n_tests), scale=LANDAU_SCALE
    )
    return float(min(1.0, max(tail, hmp)))


def combine_method_pvalues(
    table: pd.DataFrame, pvalue_columns, n_tests: int = HMP_TESTS_COMBINED
) -> pd.Series:
    """Row-wise harmonic-mean p-value over the given columns."""
    return table[list(pvalue_columns)].apply(
        lambda row: harmonic_mean_pvalue(row.values, n_tests=n_tests), axis=1
    )
