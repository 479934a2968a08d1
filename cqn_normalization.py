"""
GC-content / gene-length bias normalization (conditional quantile normalization).

For every sample, the median log2 reads-per-million is modelled as a smooth
function of GC content and log2 gene length (natural cubic regression splines,
median quantile regression). Residuals from these fits are quantile-normalized
across samples. The per-gene, per-sample systematic bias is

    bias = y - y_normalized            (log2 scale)

and the negative-binomial GLM consumes it as an offset (natural log scale):

    glm_offset = ln(2) * (bias + log2(effective library size / 1e6))

Counts themselves are never modified.

Reference: Hansen, Irizarry & Wu (2012) "Removing technical variability in
RNA-seq data using conditional quantile normalization", Biostatistics 13(2).
"""

from dataclasses import dataclass
import logging
import warnings
import numpy as np
import pandas as pd
from patsy import dmatrix
from statsmodels.regression.quantile_regression import QuantReg
from statsmodels.tools.sm_exceptions import ConvergenceWarning, IterationLimitWarning

from count_matrix import CountMatrix
from gene_annotation import GeneAnnotation
from pipeline_errors import NormalizationError

logger = logging.getLogger(__name__)

STAGE = "cqn_normalization"

# Genes whose mean log2 RPM is below this quantile do not enter the spline fits
FIT_MIN_QUANTILE = 0.05

# QuantReg convergence tolerance; a non-converged sample is refitted once with
# RETRY_ITER_FACTOR times the iterations and the looser tolerance
P_TOL = 1e-6
RETRY_P_TOL = 1e-5
RETRY_ITER_FACTOR = 4


@dataclass(frozen=True)
class CQNResult:
    """Outputs of the GC/length normalization (all genes x samples)."""

    y: pd.DataFrame  # observed log2 RPM
    y_normalized: pd.DataFrame  # bias-corrected log2 RPM, for diagnostics
    bias: pd.DataFrame  # y - y_normalized (log2)
    glm_offset: pd.DataFrame  # natural-log GLM offset
    gc_fits: pd.DataFrame  # fitted systematic effect per gene and sample (log2)


def quantile_normalize(values: pd.DataFrame) -> pd.DataFrame:
    """Give every column the same distribution (the mean of the sorted columns)."""
    sorted_means = np.sort(values.values, axis=0).mean(axis=1)
    ranks = values.rank(axis=0, method="first").astype(int).values - 1
    return pd.DataFrame(sorted_means[ranks], index=values.index, columns=values.columns)


def spline_basis(gc_content: np.ndarray, log_length: np.ndarray, df: int) -> pd.DataFrame:
    """Intercept + centered natural cubic spline bases for GC and log2 length."""
    return dmatrix(
        f"cr(gc, df={df}, constraints='center') + cr(loglen, df={df}, constraints='center')",
        {"gc": gc_content, "loglen": log_length},
        return_type="dataframe",
    )


def _quantreg(y: np.ndarray, basis: np.ndarray, sample: str, max_iter: int, p_tol: float):
    """Median regression fit; returns (fit, converged)."""
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            fit = QuantReg(y, basis).fit(q=0.5, max_iter=max_iter, p_tol=p_tol)
        except (np.linalg.LinAlgError, ValueError) as e:
            raise NormalizationError(
                f"Quantile regression failed: {e}", stage=STAGE, sample=sample
            ) from e
    converged = not any(
        issubclass(w.category, (IterationLimitWarning, ConvergenceWarning)) for w in caught
    )
    return fit, converged


def _fit_sample(
    y: np.ndarray, basis: np.ndarray, sample: str, max_iter: int
) -> np.ndarray:
    fit, converged = _quantreg(y, basis, sample, max_iter, P_TOL)
    if not converged:
        retry_iter = max_iter * RETRY_ITER_FACTOR
        logger.debug(
            f"CQN: sample {sample} did not converge in {max_iter} iterations; "
            f"retrying with {retry_iter} and p_tol={RETRY_P_TOL}"
        )
        fit, converged = _quantreg(y, basis, sample, retry_iter, RETRY_P_TOL)
    if not converged:
        raise NormalizationError(
            f"Quantile regression did not converge in {max_iter * RETRY_ITER_FACTOR} iterations",
            stage=STAGE,
            sample=sample,
        )
    if not np.all(np.isfinite(fit.params)):
        raise NormalizationError(
            "Quantile regression produced non-finite coefficients",
            stage=STAGE,
            sample=sample,
        )
    return np.asarray(fit.params)


def cqn_normalize(
    matrix: CountMatrix,
    annotation: GeneAnnotation,
    spline_df: int = 4,
    max_iter: int = 5000,
) -> CQNResult:
    """
    Fit GC/length bias per sample and derive the GLM offset.

    Args:
        matrix: Filtered count matrix
        annotation: Supplies gc_content and length for every gene in the matrix
        spline_df: Degrees of freedom of each spline
        max_iter: Iteration limit of each quantile regression (one retry with
            RETRY_ITER_FACTOR times as many before failing)

    Returns:
        CQNResult

    Raises:
        NormalizationError: Too few samples or genes, missing covariates, or a
            fit that fails or does not converge
    """
    if matrix.n_samples < 2:
        raise NormalizationError(
            f"Need at least 2 samples, got {matrix.n_samples}", stage=STAGE
        )

    missing = matrix.gene_ids.difference(annotation.genes.index)
    if len(missing):
        raise NormalizationError(
            "Gene has no GC/length annotation", stage=STAGE, gene_id=str(missing[0])
        )

    covariates = annotation.genes.loc[matrix.gene_ids, ["gc_content", "length"]]
    gc = covariates["gc_content"].values.astype(float)
    log_length = np.log2(covariates["length"].values.astype(float))

    lib_millions = matrix.effective_lib_sizes() / 1e6
    y = np.log2(matrix.counts + 1.0) - np.log2(lib_millions)

    fit_genes = (y.mean(axis=1) > y.mean(axis=1).quantile(FIT_MIN_QUANTILE)).values
    basis = spline_basis(gc, log_length, spline_df)
    if fit_genes.sum() <= basis.shape[1] * 2:
        raise NormalizationError(
            f"Only {int(fit_genes.sum())} genes available for a "
            f"{basis.shape[1]}-parameter spline fit",
            stage=STAGE,
        )

    fitted = {}
    for sample in matrix.sample_names:
        params = _fit_sample(
            y[sample].values[fit_genes], basis.values[fit_genes], sample, max_iter
        )
        fitted[sample] = basis.values @ params
    gc_fits = pd.DataFrame(fitted, index=matrix.gene_ids)

    residuals = y - gc_fits
    y_normalized = quantile_normalize(residuals).add(gc_fits.mean(axis=1), axis=0)
    bias = y - y_normalized
    glm_offset = np.log(2.0) * bias.add(np.log2(lib_millions), axis=1)

    logger.info(
        f"CQN: fitted {matrix.n_samples} samples on {int(fit_genes.sum())} genes; "
        f"bias range {bias.values.min():.2f} to {bias.values.max():.2f} (log2)"
    )
    return CQNResult(
        y=y, y_normalized=y_normalized, bias=bias, glm_offset=glm_offset, gc_fits=gc_fits
    )
