"""
Tests for count_matrix.py

Tests cover:
- CountMatrix invariants and helpers
- Quantifier output parsing (kallisto, salmon)
- Transcript -> gene aggregation
- assemble_count_matrix() sample checks
"""

import numpy as np
import pandas as pd
import pytest

from count_matrix import (
    aggregate_to_genes,
    assemble_count_matrix,
    cpm,
    make_count_matrix,
    read_transcript_counts,
)
from gene_annotation import build_gene_annotation
from pipeline_errors import AnalysisInputError
from sample_metadata import parse_sample_table


def _write_kallisto(path, ids, counts):
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(
        {
            "target_id": ids,
            "length": [1000] * len(ids),
            "eff_length": [820.0] * len(ids),
            "est_counts": counts,
            "tpm": [1.0] * len(ids),
        }
    ).to_csv(path, sep="\t", index=False)


# ============================================================================
# CountMatrix
# ============================================================================


def test_make_count_matrix(small_counts_df):
    """Library sizes are column sums; norm factors have geometric mean 1."""
    matrix = make_count_matrix(small_counts_df)
    assert matrix.n_genes == 50
    assert matrix.n_samples == 6
    pd.testing.assert_series_equal(
        matrix.lib_sizes, small_counts_df.sum(axis=0).astype(float)
    )
    assert np.exp(np.log(matrix.norm_factors).mean()) == pytest.approx(1.0)
    assert matrix.offset is None


def test_negative_counts_rejected(small_counts_df):
    """Counts must be non-negative."""
    small_counts_df.iloc[10, 0] = -1
    with pytest.raises(AnalysisInputError, match="non-negative"):
        make_count_matrix(small_counts_df)


def test_empty_library_rejected(small_counts_df):
    """A sample with no reads names the sample."""
    small_counts_df["S3"] = 0
    with pytest.raises(AnalysisInputError) as excinfo:
        make_count_matrix(small_counts_df)
    assert excinfo.value.sample == "S3"


def test_cpm_sums_to_million(small_matrix):
    """Plain CPM columns sum to one million over raw library sizes."""
    values = cpm(small_matrix.counts, small_matrix.lib_sizes)
    np.testing.assert_allclose(values.sum(axis=0).values, 1e6)


def test_glm_offset_defaults_to_log_library_size(small_matrix):
    """Without an explicit offset every gene gets log effective library size."""
    offset = small_matrix.glm_offset()
    assert offset.shape == small_matrix.counts.shape
    np.testing.assert_allclose(
        offset.iloc[0].values, np.log(small_matrix.effective_lib_sizes().values)
    )


def test_subset_keeps_library_sizes(small_matrix):
    """Subsetting keeps original library sizes unless asked to recompute."""
    keep = [True] * 25 + [False] * 25
    kept = small_matrix.subset_genes(keep)
    assert kept.n_genes == 25
    pd.testing.assert_series_equal(kept.lib_sizes, small_matrix.lib_sizes)
    recomputed = small_matrix.subset_genes(keep, recompute_library_sizes=True)
    assert (recomputed.lib_sizes <= small_matrix.lib_sizes).all()


def test_gene_counts_unknown_gene(small_matrix):
    """Looking up an untested gene raises KeyError."""
    with pytest.raises(KeyError):
        small_matrix.gene_counts("ENSDARG99999999999")


# ============================================================================
# Quantifier Output
# ============================================================================


def test_read_kallisto(tmp_path):
    """kallisto abundance.tsv uses target_id/est_counts."""
    path = tmp_path / "abundance.tsv"
    _write_kallisto(path, ["T1", "T2"], [10.4, 3.0])
    counts = read_transcript_counts(path)
    assert counts.to_dict() == {"T1": 10.4, "T2": 3.0}


def test_read_salmon(tmp_path):
    """salmon quant.sf uses Name/NumReads."""
    path = tmp_path / "quant.sf"
    pd.DataFrame(
        {"Name": ["T1"], "Length": [1000], "EffectiveLength": [800.0], "TPM": [5.0], "NumReads": [7.0]}
    ).to_csv(path, sep="\t", index=False)
    assert read_transcript_counts(path)["T1"] == 7.0


def test_read_unrecognized_format(tmp_path):
    """Unknown column layouts are rejected."""
    path = tmp_path / "counts.tsv"
    pd.DataFrame({"id": ["T1"], "count": [1]}).to_csv(path, sep="\t", index=False)
    with pytest.raises(AnalysisInputError, match="Unrecognized"):
        read_transcript_counts(path)


def test_aggregate_strips_versions_and_ignores_unknown():
    """Versioned transcript ids are matched; unannotated transcripts are dropped."""
    tx2gene = pd.Series({"T1": "G1", "T2": "G1", "T3": "G2"})
    tx_counts = pd.Series({"T1.2": 5.0, "T2.1": 6.0, "T3.1": 1.0, "ERCC-00002": 50.0})
    genes = aggregate_to_genes(tx_counts, tx2gene, "S1")
    assert genes.to_dict() == {"G1": 11.0, "G2": 1.0}
    assert genes.name == "S1"


# ============================================================================
# assemble_count_matrix()
# ============================================================================


def _project(tmp_path, transcript_table_df):
    annotation = build_gene_annotation(transcript_table_df)
    metadata = parse_sample_table(
        pd.DataFrame(
            {"sample_name": ["A", "B"], "sex": ["F", "M"], "genotype": ["WT", "het"]}
        )
    )
    files = {}
    for sample, counts in [("A", [100, 50, 30, 10]), ("B", [80, 70, 20, 15])]:
        path = tmp_path / sample / "abundance.tsv"
        _write_kallisto(path, ["T1", "T2", "T3", "T4"], counts)
        files[sample] = path
    return annotation, metadata, files


def test_assemble_count_matrix(tmp_path, transcript_table_df):
    """Columns follow metadata order; rows follow annotation gene order."""
    annotation, metadata, files = _project(tmp_path, transcript_table_df)
    matrix = assemble_count_matrix(files, annotation, metadata)
    assert list(matrix.sample_names) == ["A", "B"]
    assert list(matrix.gene_ids) == ["G1", "G2", "G3"]
    assert matrix.counts.loc["G1", "A"] == 150
    assert matrix.counts.dtypes.eq(np.int64).all()


def test_assemble_missing_sample_file(tmp_path, transcript_table_df):
    """A metadata sample without quantifier output is fatal."""
    annotation, metadata, files = _project(tmp_path, transcript_table_df)
    del files["B"]
    with pytest.raises(AnalysisInputError) as excinfo:
        assemble_count_matrix(files, annotation, metadata)
    assert excinfo.value.sample == "B"


def test_assemble_extra_sample_file(tmp_path, transcript_table_df):
    """Quantifier output for a sample not in the metadata is fatal."""
    annotation, metadata, files = _project(tmp_path, transcript_table_df)
    files["C"] = files["A"]
    with pytest.raises(AnalysisInputError) as excinfo:
        assemble_count_matrix(files, annotation, metadata)
    assert excinfo.value.sample == "C"
