"""
Differential expression analysis for the genotype effect.

Dispersions come from PyDESeq2 (gene-wise estimates shrunk towards the
mean-dispersion trend by empirical Bayes). With those dispersions fixed, each
gene gets a negative-binomial GLM fit (statsmodels) under the full design and
under the design without the genotype coefficient; the likelihood-ratio
statistic is the deviance difference. The GLM offset is the GC/length offset
when one is attached to the count matrix, else log effective library size.

Designs without extra covariates can use the exact conditional test instead.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple
import logging
import numpy as np
import pandas as pd
import statsmodels.api as sm
from pydeseq2.dds import DeseqDataSet
from scipy import stats

from analysis_config import SIGNIFICANCE_THRESHOLD
from count_matrix import CountMatrix, ave_log_cpm
from p_value_combination import adjust_pvalues
from pipeline_errors import AnalysisInputError, ModelFitError
from sample_metadata import SampleMetadata

logger = logging.getLogger(__name__)

STAGE = "differential_expression"

INTERCEPT = "Intercept"

# Prior count added to group means when computing exact-test fold changes
EXACT_TEST_PRIOR_COUNT = 0.125

GLM_MAX_ITER = 100


@dataclass(frozen=True)
class DesignSpecification:
    """
    Samples x covariates model matrix with one coefficient of interest.

    Row order is the sample order of the count matrix it is used with.
    """

    matrix: pd.DataFrame
    coefficient: str

    def __post_init__(self):
        if self.coefficient not in self.matrix.columns:
            raise AnalysisInputError(
                f"Coefficient '{self.coefficient}' is not a design column", stage=STAGE
            )
        rank = np.linalg.matrix_rank(self.matrix.values.astype(float))
        if rank < self.matrix.shape[1]:
            raise AnalysisInputError(
                f"Design matrix is not full rank (rank {rank}, "
                f"{self.matrix.shape[1]} columns: {', '.join(self.matrix.columns)})",
                stage=STAGE,
            )

    @property
    def sample_names(self) -> List[str]:
        return list(self.matrix.index)

    @property
    def covariate_columns(self) -> List[str]:
        """Columns other than the intercept and the coefficient of interest."""
        return [c for c in self.matrix.columns if c not in (INTERCEPT, self.coefficient)]

    @property
    def df_residual(self) -> int:
        return self.matrix.shape[0] - self.matrix.shape[1]

    def reduced(self) -> pd.DataFrame:
        """Design without the coefficient of interest (the null model)."""
        return self.matrix.drop(columns=[self.coefficient])

    def check_samples(self, sample_names) -> None:
        if list(sample_names) != self.sample_names:
            raise AnalysisInputError(
                "Design rows do not match count matrix columns in order",
                stage=STAGE,
                details={"design": self.sample_names, "counts": list(sample_names)},
            )

    def with_covariates(self, covariates: pd.DataFrame) -> "DesignSpecification":
        """New design with extra numeric covariate columns appended."""
        extra = covariates.reindex(self.matrix.index)
        if extra.isna().any().any():
            raise AnalysisInputError(
                "Covariates are missing for some design samples", stage=STAGE
            )
        return DesignSpecification(
            matrix=pd.concat([self.matrix, extra.astype(float)], axis=1),
            coefficient=self.coefficient,
        )


def build_design(
    metadata: SampleMetadata,
    reference: str = "WT",
    test: str = "het",
    covariates: Optional[pd.DataFrame] = None,
) -> DesignSpecification:
    """
    Intercept + genotype indicator (test vs reference) [+ covariates].

    The genotype coefficient is positive when expression is higher in the
    test genotype.
    """
    genotypes = metadata.genotypes()
    unexpected = sorted({g for g in genotypes.values()} - {reference, test})
    if unexpected:
        raise AnalysisInputError(
            f"Genotypes {unexpected} are neither '{test}' nor '{reference}'", stage=STAGE
        )
    for level in (reference, test):
        if level not in genotypes.values():
            raise AnalysisInputError(f"No samples with genotype '{level}'", stage=STAGE)

    coefficient = f"genotype_{test}"
    matrix = pd.DataFrame(
        {
            INTERCEPT: 1.0,
            coefficient: [1.0 if genotypes[s] == test else 0.0 for s in metadata.sample_names],
        },
        index=pd.Index(metadata.sample_names, name="sample_name"),
    )
    design = DesignSpecification(matrix=matrix, coefficient=coefficient)
    if covariates is not None:
        design = design.with_covariates(covariates)
    return design


@dataclass(frozen=True)
class DETestResult:
    """
    Per-gene results of one test run (index = gene_id).

    Columns: logFC (log2, test - reference), logCPM, PValue, FDR, significant.
    """

    table: pd.DataFrame
    method: str
    coefficient: str
    comparison: Tuple[str, str]  # (test, reference)

    @property
    def n_significant(self) -> int:
        return int(self.table["significant"].sum())

    def significant_genes(self) -> pd.DataFrame:
        return self.table[self.table["significant"]].sort_values("PValue").copy()

    def top(self, n: int) -> pd.DataFrame:
        return self.table.sort_values("PValue").head(n).copy()

    def gene(self, gene_id: str) -> pd.Series:
        """Result row for one gene, looked up by stable gene id."""
        if gene_id not in self.table.index:
            raise KeyError(f"Gene {gene_id} was not tested")
        return self.table.loc[gene_id]


def make_result_table(
    gene_ids, log_fc, log_cpm, pvalues
) -> pd.DataFrame:
    """Assemble a DE table; FDR is computed across all genes of the run."""
    table = pd.DataFrame(
        {
            "logFC": np.asarray(log_fc, dtype=float),
            "logCPM": np.asarray(log_cpm, dtype=float),
            "PValue": np.asarray(pvalues, dtype=float),
        },
        index=pd.Index(gene_ids, name="gene_id"),
    )
    table["FDR"] = adjust_pvalues(table["PValue"].values)
    table["significant"] = table["FDR"] < SIGNIFICANCE_THRESHOLD
    return table


@dataclass(frozen=True)
class DEFit:
    """A DE test result together with the model quantities reused downstream."""

    result: DETestResult
    dispersions: pd.Series  # gene_id -> NB dispersion
    null_means: pd.DataFrame  # genes x samples fitted means without the genotype term
    design: DesignSpecification


class DEAnalysisEngine:
    """Negative-binomial differential expression for the genotype contrast."""

    def __init__(self, reference: str = "WT", test: str = "het"):
        self.reference = reference
        self.test = test

    def estimate_dispersions(
        self,
        matrix: CountMatrix,
        metadata: SampleMetadata,
        design: DesignSpecification,
    ) -> pd.Series:
        """
        Empirical-Bayes shrunken (MAP) dispersions from PyDESeq2.

        PyDESeq2 normalizes with median-of-ratios size factors only; the
        GC/length offset enters the per-gene GLMs afterwards, so the
        dispersions are not conditioned on it.

        Args:
            matrix: Filtered counts (genes x samples)
            metadata: Supplies the genotype factor
            design: Extra covariate columns enter the formula as numeric terms

        Returns:
            gene_id -> dispersion

        Raises:
            ModelFitError if PyDESeq2 fails or returns no dispersions
        """
        covariates = design.covariate_columns
        obs = pd.DataFrame(
            {
                "genotype": pd.Categorical(
                    [metadata[s].genotype for s in matrix.sample_names],
                    categories=[self.reference, self.test],
                )
            },
            index=matrix.sample_names,
        )
        for column in covariates:
            obs[column] = design.matrix.loc[matrix.sample_names, column].values.astype(float)
        formula = "~" + " + ".join(["genotype"] + covariates)

        try:
            dds = DeseqDataSet(
                counts=matrix.counts.T,  # samples x genes, integers
                metadata=obs,
                design=formula,
                refit_cooks=False,
                quiet=True,
            )
            dds.deseq2()
            values = np.asarray(dds.var["dispersions"], dtype=float)
        except (ValueError, RuntimeError, TypeError, KeyError, np.linalg.LinAlgError) as e:
            logger.error(f"Dispersion estimation failed: {str(e)}", exc_info=True)
            raise ModelFitError(
                f"PyDESeq2 dispersion estimation failed: {e}",
                stage=STAGE,
                details={"design": formula},
            ) from e

        dispersions = pd.Series(values, index=matrix.gene_ids)
        bad = dispersions[~np.isfinite(dispersions) | (dispersions < 0)]
        if not bad.empty:
            raise ModelFitError(
                "Non-finite dispersion estimate", stage=STAGE, gene_id=str(bad.index[0])
            )
        return dispersions

    @staticmethod
    def _fit_glm(
        y: np.ndarray, X: np.ndarray, offset: np.ndarray, dispersion: float, gene_id: str
    ):
        family = sm.families.NegativeBinomial(alpha=max(dispersion, 1e-8))
        try:
            fit = sm.GLM(y, X, family=family, offset=offset).fit(maxiter=GLM_MAX_ITER)
        except (ValueError, np.linalg.LinAlgError) as e:
            raise ModelFitError(f"GLM fit failed: {e}", stage=STAGE, gene_id=gene_id) from e
        if not getattr(fit, "converged", True) or not np.all(np.isfinite(fit.params)):
            raise ModelFitError(
                f"GLM did not converge in {GLM_MAX_ITER} iterations",
                stage=STAGE,
                gene_id=gene_id,
            )
        return fit

    def run_lrt(
        self,
        matrix: CountMatrix,
        design: DesignSpecification,
        dispersions: pd.Series,
    ) -> Tuple[DETestResult, pd.DataFrame]:
        """
        Likelihood-ratio test of the coefficient of interest, gene by gene.

        Returns:
            (DETestResult, genes x samples fitted means of the null model)
        """
        design.check_samples(matrix.sample_names)
        X_full = design.matrix.values.astype(float)
        X_null = design.reduced().values.astype(float)
        coef_index = list(design.matrix.columns).index(design.coefficient)
        counts = matrix.counts.values.astype(float)
        offsets = matrix.glm_offset().values
        disp = dispersions.reindex(matrix.gene_ids).values

        n_genes = matrix.n_genes
        coefs = np.empty(n_genes)
        pvalues = np.empty(n_genes)
        null_means = np.empty(counts.shape)

        for i, gene_id in enumerate(matrix.gene_ids):
            full = self._fit_glm(counts[i], X_full, offsets[i], disp[i], gene_id)
            null = self._fit_glm(counts[i], X_null, offsets[i], disp[i], gene_id)
            lr_stat = max(null.deviance - full.deviance, 0.0)
            coefs[i] = full.params[coef_index]
            pvalues[i] = stats.chi2.sf(lr_stat, df=1)
            null_means[i] = null.mu

        table = make_result_table(
            matrix.gene_ids, coefs / np.log(2.0), ave_log_cpm(matrix).values, pvalues
        )
        result = DETestResult(
            table=table,
            method="lrt",
            coefficient=design.coefficient,
            comparison=(self.test, self.reference),
        )
        null_df = pd.DataFrame(null_means, index=matrix.gene_ids, columns=matrix.sample_names)
        return result, null_df

    def run_exact_test(
        self,
        matrix: CountMatrix,
        design: DesignSpecification,
        dispersions: pd.Series,
    ) -> Tuple[DETestResult, pd.DataFrame]:
        """
        Exact conditional negative-binomial test between the two genotypes.

        Counts are first mapped to a common library size (geometric mean of
        the effective library sizes). Given the total over both groups, the
        test-group total is beta-binomial with shapes n_test/phi and
        n_ref/phi; the two-sided p-value doubles the smaller tail.

        Returns:
            (DETestResult, genes x samples means under a single-group model)
        """
        design.check_samples(matrix.sample_names)
        if design.covariate_columns:
            raise AnalysisInputError(
                "The exact test only supports intercept + genotype designs; "
                f"found covariates {design.covariate_columns}",
                stage=STAGE,
            )
        is_test = design.matrix[design.coefficient].values == 1.0
        lib = matrix.effective_lib_sizes().values
        common_lib = float(np.exp(np.log(lib).mean()))
        counts = matrix.counts.values.astype(float)
        disp = dispersions.reindex(matrix.gene_ids).values

        pseudo = np.empty(counts.shape)
        for group in (is_test, ~is_test):
            abundance = counts[:, group].sum(axis=1) / lib[group].sum()
            pseudo[:, group] = equalize_library_sizes(
                counts[:, group], abundance, lib[group], common_lib, disp
            )

        n_test = int(is_test.sum())
        n_ref = int((~is_test).sum())
        sum_test = np.round(pseudo[:, is_test].sum(axis=1)).astype(np.int64)
        sum_ref = np.round(pseudo[:, ~is_test].sum(axis=1)).astype(np.int64)
        pvalues = np.array(
            [
                exact_test_pvalue(a, b, n_test, n_ref, phi)
                for a, b, phi in zip(sum_test, sum_ref, disp)
            ]
        )
        log_fc = np.log2(
            (pseudo[:, is_test].mean(axis=1) + EXACT_TEST_PRIOR_COUNT)
            / (pseudo[:, ~is_test].mean(axis=1) + EXACT_TEST_PRIOR_COUNT)
        )

        table = make_result_table(matrix.gene_ids, log_fc, ave_log_cpm(matrix).values, pvalues)
        result = DETestResult(
            table=table,
            method="exact",
            coefficient=design.coefficient,
            comparison=(self.test, self.reference),
        )
        abundance = counts.sum(axis=1) / lib.sum()
        null_df = pd.DataFrame(
            np.outer(abundance, lib), index=matrix.gene_ids, columns=matrix.sample_names
        )
        return result, null_df

    def run(
        self,
        matrix: CountMatrix,
        metadata: SampleMetadata,
        design: DesignSpecification,
        method: str = "lrt",
    ) -> DEFit:
        """
        Main entry point: estimate dispersions, then test the genotype coefficient.

        Args:
            matrix: Filtered count matrix, optionally with a GLM offset attached
            metadata: Sample metadata (genotype factor for PyDESeq2)
            design: Model design (intercept + genotype [+ nuisance factors])
            method: "lrt" or "exact"

        Returns:
            DEFit

        Raises:
            ModelFitError on any failed gene fit; AnalysisInputError on bad inputs
        """
        if method not in ("lrt", "exact"):
            raise AnalysisInputError(f"Unknown DE test method '{method}'", stage=STAGE)
        design.check_samples(matrix.sample_names)
        logger.info(
            f"DE ({method}): {matrix.n_genes} genes, design columns "
            f"{list(design.matrix.columns)}, offset={'cqn' if matrix.offset is not None else 'library size'}"
        )
        dispersions = self.estimate_dispersions(matrix, metadata, design)

        if method == "lrt":
            result, null_means = self.run_lrt(matrix, design, dispersions)
        else:
            result, null_means = self.run_exact_test(matrix, design, dispersions)

        logger.info(
            f"DE ({method}): {result.n_significant} genes with FDR < {SIGNIFICANCE_THRESHOLD}"
        )
        return DEFit(result=result, dispersions=dispersions, null_means=null_means, design=design)


def equalize_library_sizes(
    counts: np.ndarray,
    abundance: np.ndarray,
    lib_sizes: np.ndarray,
    common_lib: float,
    dispersions: np.ndarray,
) -> np.ndarray:
    """
    Quantile-to-quantile map counts to a common library size.

    Averages a normal and a gamma approximation of the negative-binomial
    quantile mapping. Output pseudo-counts are non-negative reals.
    """
    phi = np.maximum(dispersions, 1e-8)[:, None]
    mu_in = np.maximum(abundance[:, None] * lib_sizes[None, :], 1e-10)
    mu_out = np.maximum(abundance[:, None] * common_lib, 1e-10)
    var_in = mu_in + phi * mu_in ** 2
    var_out = mu_out + phi * mu_out ** 2

    normal = mu_out + (counts - mu_in) / np.sqrt(var_in) * np.sqrt(var_out)

    shape_in = mu_in ** 2 / var_in
    shape_out = mu_out ** 2 / var_out
    scale_in = var_in / mu_in
    scale_out = var_out / mu_out
    upper = counts > mu_in
    lower_p = stats.gamma.logcdf(counts, shape_in, scale=scale_in)
    upper_p = stats.gamma.logsf(counts, shape_in, scale=scale_in)
    gamma_lower = stats.gamma.ppf(np.exp(lower_p), shape_out, scale=scale_out)
    gamma_upper = stats.gamma.isf(np.exp(upper_p), shape_out, scale=scale_out)
    gamma_q = np.where(upper, gamma_upper, gamma_lower)
    gamma_q = np.where(np.isfinite(gamma_q), gamma_q, normal)

    return np.maximum((normal + gamma_q) / 2.0, 0.0)


def exact_test_pvalue(
    sum_test: int, sum_ref: int, n_test: int, n_ref: int, dispersion: float
) -> float:
    """Two-sided (doubled smaller tail) exact NB test given the group totals."""
    total = sum_test + sum_ref
    if total == 0:
        return 1.0
    if dispersion <= 1e-8:
        dist = stats.binom(total, n_test / (n_test + n_ref))
    else:
        dist = stats.betabinom(total, n_test / dispersion, n_ref / dispersion)
    lower = dist.cdf(sum_test)
    upper = dist.sf(sum_test - 1)
    return float(min(1.0, 2.0 * min(lower, upper)))
