"""
Low-expression gene filter.

A gene is kept when at least half of all samples (and never fewer than two)
exceed a CPM threshold derived from the smallest library:

    threshold = cpm_numerator / (min library size in millions)

so the cut-off corresponds to roughly `cpm_numerator` reads in the shallowest
library.
"""

from dataclasses import dataclass
import logging
import numpy as np
import pandas as pd

from count_matrix import CountMatrix

logger = logging.getLogger(__name__)

MIN_SAMPLES_ABOVE_THRESHOLD = 2


@dataclass(frozen=True)
class FilterResult:
    """Filtered matrix plus the mask and threshold that produced it."""

    matrix: CountMatrix
    keep: pd.Series  # gene_id -> bool, over the unfiltered genes
    cpm_threshold: float

    @property
    def n_kept(self) -> int:
        return int(self.keep.sum())

    @property
    def n_dropped(self) -> int:
        return int((~self.keep).sum())


def cpm_threshold(lib_sizes: pd.Series, cpm_numerator: float = 10.0) -> float:
    """CPM equivalent of `cpm_numerator` reads in the smallest library."""
    return cpm_numerator / (float(lib_sizes.min()) / 1e6)


def expression_keep_mask(
    cpm_values: pd.DataFrame, threshold: float
) -> pd.Series:
    """
    Boolean keep-mask over genes.

    Keep iff the number of samples with CPM > threshold is at least half the
    samples and at least MIN_SAMPLES_ABOVE_THRESHOLD.
    """
    n_samples = cpm_values.shape[1]
    n_above = (cpm_values > threshold).sum(axis=1)
    required = max(n_samples / 2.0, MIN_SAMPLES_ABOVE_THRESHOLD)
    return n_above >= required


def filter_low_expression(
    matrix: CountMatrix,
    cpm_numerator: float = 10.0,
    recompute_library_sizes: bool = False,
) -> FilterResult:
    """
    Drop low-expression genes.

    Args:
        matrix: Unfiltered count matrix (left untouched)
        cpm_numerator: Read count the threshold corresponds to in the smallest library
        recompute_library_sizes: Recompute library sizes from the kept genes only.
            By default the original library sizes are kept.

    Returns:
        FilterResult with a new CountMatrix
    """
    threshold = cpm_threshold(matrix.lib_sizes, cpm_numerator)
    keep = expression_keep_mask(matrix.cpm(), threshold)
    filtered = matrix.subset_genes(keep, recompute_library_sizes=recompute_library_sizes)

    logger.info(
        f"Low-expression filter (CPM > {threshold:.3f} in >= "
        f"{max(int(np.ceil(matrix.n_samples / 2)), MIN_SAMPLES_ABOVE_THRESHOLD)} samples): "
        f"kept {int(keep.sum())} of {matrix.n_genes} genes"
    )
    return FilterResult(matrix=filtered, keep=keep, cpm_threshold=threshold)
