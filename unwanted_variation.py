"""
Unwanted-variation estimation from negative-control genes (RUVg).

Negative controls are the genes least associated with genotype in a
preliminary, unadjusted DE run (highest p-values). Their centered
log-expression is assumed to carry only technical/batch variation; its
leading principal axes are the per-sample nuisance factors W.

W is appended to the DE design as numeric covariates. The W-corrected counts
are returned for exploratory plots only.

Reference: Risso, Ngai, Speed & Dudoit (2014) "Normalization of RNA-seq data
using factor analysis of control genes or samples", Nat Biotechnol 32(9).
"""

from dataclasses import dataclass
from typing import List
import logging
import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from count_matrix import CountMatrix
from de_analysis import DETestResult
from pipeline_errors import AnalysisInputError

logger = logging.getLogger(__name__)

STAGE = "unwanted_variation"


@dataclass(frozen=True)
class RUVResult:
    """Estimated nuisance factors and the diagnostic corrected counts."""

    factors: pd.DataFrame  # samples x k, columns W1..Wk
    normalized_counts: pd.DataFrame  # genes x samples, exploratory only
    control_genes: List[str]
    alpha: pd.DataFrame  # k x genes loadings


def factor_names(k: int) -> List[str]:
    # used verbatim as terms of the dispersion formula ("~genotype + W1")
    return [f"W{i + 1}" for i in range(k)]


def select_negative_controls(
    result: DETestResult, n_controls: int, n_filtered_genes: int
) -> List[str]:
    """
    The n_controls genes with the highest p-values in an unadjusted DE run.

    Raises:
        AnalysisInputError: n_controls exceeds the number of filtered genes
            (or is not positive)
    """
    if n_controls < 1:
        raise AnalysisInputError(
            f"Negative-control set size must be positive, got {n_controls}", stage=STAGE
        )
    if n_controls > n_filtered_genes:
        raise AnalysisInputError(
            f"Negative-control set size {n_controls} exceeds the "
            f"{n_filtered_genes} genes left after filtering",
            stage=STAGE,
        )
    ranked = result.table["PValue"].sort_values(ascending=False, kind="mergesort")
    return list(ranked.index[:n_controls])


def estimate_unwanted_variation(
    matrix: CountMatrix, control_genes: List[str], k: int = 1
) -> RUVResult:
    """
    RUVg on log(count + 1).

    Args:
        matrix: Filtered count matrix
        control_genes: Negative-control gene ids (must be in the matrix)
        k: Number of nuisance factors

    Returns:
        RUVResult

    Raises:
        AnalysisInputError: Unknown control genes or k too large for the data
    """
    unknown = [g for g in control_genes if g not in matrix.counts.index]
    if unknown:
        raise AnalysisInputError(
            "Negative-control gene is not in the filtered matrix",
            stage=STAGE,
            gene_id=unknown[0],
        )
    if k >= matrix.n_samples or k > len(control_genes):
        raise AnalysisInputError(
            f"Cannot estimate {k} factors from {matrix.n_samples} samples and "
            f"{len(control_genes)} control genes",
            stage=STAGE,
        )

    log_counts = np.log(matrix.counts.T.astype(float) + 1.0)  # samples x genes
    centered = log_counts - log_counts.mean(axis=0)

    pca = PCA(n_components=k, svd_solver="full")
    scores = pca.fit_transform(centered[control_genes].values)
    W = scores / pca.singular_values_  # left singular vectors

    alpha = np.linalg.lstsq(W, centered.values, rcond=None)[0]  # k x genes
    corrected = log_counts.values - W @ alpha
    normalized = np.maximum(np.round(np.exp(corrected) - 1.0), 0.0).astype(np.int64)

    names = factor_names(k)
    factors = pd.DataFrame(W, index=matrix.sample_names, columns=names)
    explained = ", ".join(f"{v:.1%}" for v in pca.explained_variance_ratio_)
    logger.info(
        f"RUVg: {k} factor(s) from {len(control_genes)} control genes "
        f"(control variance explained: {explained})"
    )
    return RUVResult(
        factors=factors,
        normalized_counts=pd.DataFrame(
            normalized.T, index=matrix.gene_ids, columns=matrix.sample_names
        ),
        control_genes=list(control_genes),
        alpha=pd.DataFrame(alpha, index=names, columns=matrix.gene_ids),
    )
