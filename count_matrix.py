"""
Gene-level count matrix assembly.

Aggregates per-sample transcript-level pseudo-alignment estimates (kallisto
abundance.tsv or salmon quant.sf) into a genes x samples integer matrix and
attaches library sizes and normalization factors.

Canonical orientation in this module is genes x samples (gene ids as index,
sample names as columns). pydeseq2 expects samples x genes, so callers that
hand counts to pydeseq2 transpose explicitly.
"""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Optional
import logging
import numpy as np
import pandas as pd
from pydeseq2.preprocessing import deseq2_norm

from gene_annotation import GeneAnnotation
from pipeline_errors import AnalysisInputError
from sample_metadata import SampleMetadata

logger = logging.getLogger(__name__)

STAGE = "count_matrix"

# Quantifier output column conventions: (transcript id column, estimated count column)
QUANT_FORMATS = {
    "kallisto": ("target_id", "est_counts"),
    "salmon": ("Name", "NumReads"),
}


@dataclass(frozen=True)
class CountMatrix:
    """
    Genes x samples integer counts with per-sample scaling.

    offset, when present, is a genes x samples natural-log offset for the
    negative-binomial GLM. It replaces log(effective library size) in the
    linear predictor and is never applied to the counts themselves.
    """

    counts: pd.DataFrame
    lib_sizes: pd.Series
    norm_factors: pd.Series
    offset: Optional[pd.DataFrame] = None

    def __post_init__(self):
        if list(self.lib_sizes.index) != list(self.counts.columns):
            raise AnalysisInputError(
                "Library sizes are not aligned with count matrix columns", stage=STAGE
            )
        if list(self.norm_factors.index) != list(self.counts.columns):
            raise AnalysisInputError(
                "Normalization factors are not aligned with count matrix columns",
                stage=STAGE,
            )
        if (self.counts.values < 0).any():
            raise AnalysisInputError("Counts must be non-negative", stage=STAGE)
        if self.offset is not None and (
            list(self.offset.index) != list(self.counts.index)
            or list(self.offset.columns) != list(self.counts.columns)
        ):
            raise AnalysisInputError(
                "Offset matrix is not aligned with the count matrix", stage=STAGE
            )

    @property
    def gene_ids(self):
        return self.counts.index

    @property
    def sample_names(self):
        return self.counts.columns

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    def effective_lib_sizes(self) -> pd.Series:
        return self.lib_sizes * self.norm_factors

    def cpm(self, log: bool = False, prior_count: float = 2.0) -> pd.DataFrame:
        return cpm(self.counts, self.effective_lib_sizes(), log=log, prior_count=prior_count)

    def subset_genes(self, keep, recompute_library_sizes: bool = False) -> "CountMatrix":
        """New matrix restricted to genes where keep is True."""
        keep = pd.Series(keep, index=self.counts.index).astype(bool)
        counts = self.counts.loc[keep]
        lib_sizes = counts.sum(axis=0).astype(float) if recompute_library_sizes else self.lib_sizes
        offset = self.offset.loc[keep] if self.offset is not None else None
        return replace(self, counts=counts, lib_sizes=lib_sizes, offset=offset)

    def with_offset(self, offset: pd.DataFrame) -> "CountMatrix":
        return replace(self, offset=offset)

    def glm_offset(self) -> pd.DataFrame:
        """Offset matrix for the GLM: explicit offset, else log effective library size."""
        if self.offset is not None:
            return self.offset
        log_lib = np.log(self.effective_lib_sizes().values)
        return pd.DataFrame(
            np.tile(log_lib, (self.n_genes, 1)),
            index=self.counts.index,
            columns=self.counts.columns,
        )

    def gene_counts(self, gene_id: str) -> pd.Series:
        """Counts for one gene, looked up by stable gene id."""
        if gene_id not in self.counts.index:
            raise KeyError(f"Gene {gene_id} is not in the count matrix")
        return self.counts.loc[gene_id]


def cpm(
    counts: pd.DataFrame, lib_sizes: pd.Series, log: bool = False, prior_count: float = 2.0
) -> pd.DataFrame:
    """
    Counts per million (genes x samples).

    With log=True, returns log2 CPM with prior_count added to each count
    (scaled by relative library size) and 2 * prior_count added to library sizes.
    """
    lib = lib_sizes.reindex(counts.columns).astype(float)
    if log:
        scaled_prior = prior_count * lib / lib.mean()
        adjusted_lib = lib + 2.0 * scaled_prior
        return np.log2((counts + scaled_prior) / adjusted_lib * 1e6)
    return counts / lib * 1e6


def ave_log_cpm(matrix: CountMatrix, prior_count: float = 2.0) -> pd.Series:
    """Average log2 CPM per gene (log of the mean, with a library-scaled prior)."""
    lib = matrix.effective_lib_sizes()
    scaled_prior = prior_count * lib / lib.mean()
    values = (matrix.counts + scaled_prior) / (lib + 2.0 * scaled_prior) * 1e6
    return np.log2(values.mean(axis=1))


def compute_norm_factors(counts: pd.DataFrame) -> pd.Series:
    """
    Per-sample normalization factors from pydeseq2 median-of-ratios size factors.

    Converted to the "norm factor" convention (effective library size =
    library size x factor) and rescaled to geometric mean 1.
    """
    expressed = counts.loc[(counts > 0).all(axis=1)]
    if expressed.empty:
        raise AnalysisInputError(
            "No gene has non-zero counts in every sample; cannot compute size factors",
            stage=STAGE,
        )
    _, size_factors = deseq2_norm(expressed.T)
    size_factors = pd.Series(np.asarray(size_factors, dtype=float), index=counts.columns)
    lib_sizes = counts.sum(axis=0).astype(float)
    factors = size_factors / lib_sizes
    return factors / np.exp(np.log(factors).mean())


def make_count_matrix(counts: pd.DataFrame) -> CountMatrix:
    """Wrap a genes x samples integer frame with library sizes and norm factors."""
    counts = counts.astype(np.int64)
    lib_sizes = counts.sum(axis=0).astype(float)
    zero_libs = lib_sizes[lib_sizes <= 0]
    if not zero_libs.empty:
        raise AnalysisInputError(
            "Sample has an empty library", stage=STAGE, sample=str(zero_libs.index[0])
        )
    return CountMatrix(
        counts=counts,
        lib_sizes=lib_sizes,
        norm_factors=compute_norm_factors(counts),
    )


def read_transcript_counts(path) -> pd.Series:
    """
    Read one quantifier output file into transcript_id -> estimated count.

    Raises:
        AnalysisInputError: File missing or columns not recognized
    """
    path = Path(path)
    if not path.exists():
        raise AnalysisInputError(f"Quantification file not found: {path}", stage=STAGE)
    df = pd.read_csv(path, sep="\t")
    for tool, (id_col, count_col) in QUANT_FORMATS.items():
        if id_col in df.columns and count_col in df.columns:
            series = pd.Series(
                pd.to_numeric(df[count_col], errors="coerce").values,
                index=df[id_col].astype(str),
            )
            if series.isna().any():
                bad = series[series.isna()].index[0]
                raise AnalysisInputError(
                    f"Non-numeric count for transcript {bad} in {path.name}",
                    stage=STAGE,
                )
            return series
    raise AnalysisInputError(
        f"Unrecognized quantification format in {path.name}. "
        f"Expected columns {list(QUANT_FORMATS.values())}",
        stage=STAGE,
    )


def _strip_version(ids: pd.Index) -> pd.Index:
    return ids.str.replace(r"\.\d+$", "", regex=True)


def aggregate_to_genes(tx_counts: pd.Series, tx2gene: pd.Series, sample: str) -> pd.Series:
    """Sum transcript estimates per gene. Transcript version suffixes are ignored when needed."""
    known = tx_counts.index.isin(tx2gene.index)
    if not known.all():
        stripped = tx_counts.copy()
        stripped.index = _strip_version(tx_counts.index)
        if stripped.index.isin(tx2gene.index).sum() > known.sum():
            tx_counts = stripped.groupby(level=0).sum()
            known = tx_counts.index.isin(tx2gene.index)

    n_unknown = int((~known).sum())
    if n_unknown:
        logger.warning(
            f"{sample}: {n_unknown} transcripts not in annotation were ignored "
            f"({tx_counts[~known].sum():.0f} estimated fragments)"
        )
    tx_counts = tx_counts[known]
    gene_counts = tx_counts.groupby(tx2gene.reindex(tx_counts.index).values).sum()
    gene_counts.name = sample
    return gene_counts


def assemble_count_matrix(
    sample_files: Dict[str, Path],
    annotation: GeneAnnotation,
    metadata: SampleMetadata,
) -> CountMatrix:
    """
    Build the gene-level count matrix for all samples in the metadata.

    Args:
        sample_files: sample_name -> quantifier output path
        annotation: Provides the transcript -> gene map
        metadata: Defines which samples are used and their column order

    Returns:
        CountMatrix with columns in metadata order and rows in annotation gene order

    Raises:
        AnalysisInputError: A metadata sample has no file, or a file's sample is
            not in the metadata
    """
    extra = sorted(set(sample_files) - set(metadata.sample_names))
    if extra:
        raise AnalysisInputError(
            "Quantification file has no matching sample in the metadata",
            stage=STAGE,
            sample=extra[0],
        )

    columns = []
    for sample in metadata.sample_names:
        if sample not in sample_files:
            raise AnalysisInputError(
                "No quantification file for sample", stage=STAGE, sample=sample
            )
        tx_counts = read_transcript_counts(sample_files[sample])
        columns.append(aggregate_to_genes(tx_counts, annotation.tx2gene, sample))

    counts = pd.concat(columns, axis=1).reindex(annotation.genes.index).fillna(0.0)
    counts = counts.round().astype(np.int64)
    counts.index.name = "gene_id"

    matrix = make_count_matrix(counts)
    logger.info(
        f"Count matrix: {matrix.n_genes} genes x {matrix.n_samples} samples, "
        f"library sizes {matrix.lib_sizes.min():.0f}-{matrix.lib_sizes.max():.0f}"
    )
    return matrix
