"""
Tests for expression_filter.py

Tests cover:
- The CPM threshold derived from the smallest library
- The keep rule (half the samples, at least two)
- filter_low_expression() on small and demo data
"""

import pandas as pd
import pytest

from expression_filter import cpm_threshold, expression_keep_mask, filter_low_expression


def test_threshold_from_smallest_library():
    """threshold = numerator / (min library size in millions)."""
    lib_sizes = pd.Series({"A": 20e6, "B": 25e6, "C": 40e6})
    assert cpm_threshold(lib_sizes, 10.0) == pytest.approx(0.5)


def test_keep_mask_half_of_samples():
    """A gene needs CPM above threshold in at least half of the samples."""
    cpm_values = pd.DataFrame(
        [[5, 5, 5, 0, 0, 0], [5, 5, 0, 0, 0, 0], [0, 0, 0, 0, 0, 0]],
        index=["g1", "g2", "g3"],
        columns=list("ABCDEF"),
    )
    keep = expression_keep_mask(cpm_values, threshold=1.0)
    assert keep.tolist() == [True, False, False]


def test_keep_mask_minimum_two_samples():
    """With few samples, two samples above threshold are still required."""
    cpm_values = pd.DataFrame([[5, 0, 0]], index=["g1"], columns=list("ABC"))
    assert not expression_keep_mask(cpm_values, threshold=1.0).iloc[0]


def test_threshold_is_strict():
    """CPM equal to the threshold does not count."""
    cpm_values = pd.DataFrame([[1.0, 1.0]], index=["g1"], columns=["A", "B"])
    assert not expression_keep_mask(cpm_values, threshold=1.0).iloc[0]


def test_filter_drops_unexpressed_and_sparse_genes(small_matrix):
    """Zero genes and genes expressed in only two of six samples are dropped."""
    result = filter_low_expression(small_matrix, cpm_numerator=10.0)
    dropped = set(result.keep.index[~result.keep])
    assert set(small_matrix.gene_ids[:8]) <= dropped
    assert result.n_kept + result.n_dropped == small_matrix.n_genes
    assert result.matrix.n_genes == result.n_kept
    assert list(result.matrix.gene_ids) == list(result.keep.index[result.keep])


def test_filter_keeps_library_sizes_by_default(small_matrix):
    """Library sizes are carried over from the unfiltered matrix."""
    result = filter_low_expression(small_matrix)
    pd.testing.assert_series_equal(result.matrix.lib_sizes, small_matrix.lib_sizes)


def test_filter_recompute_library_sizes(small_matrix):
    """Optionally library sizes are recomputed from the kept genes."""
    result = filter_low_expression(small_matrix, recompute_library_sizes=True)
    pd.testing.assert_series_equal(
        result.matrix.lib_sizes, result.matrix.counts.sum(axis=0).astype(float)
    )


def test_filter_does_not_modify_input(small_matrix):
    """The unfiltered matrix is left untouched."""
    before = small_matrix.counts.copy()
    filter_low_expression(small_matrix)
    pd.testing.assert_frame_equal(small_matrix.counts, before)


def test_filter_is_idempotent(small_matrix):
    """Filtering an already filtered matrix keeps every gene."""
    once = filter_low_expression(small_matrix)
    twice = filter_low_expression(once.matrix)
    assert twice.n_dropped == 0


def test_filter_demo_keeps_engineered_gene(demo_matrix, demo_dataset):
    """The engineered gene is well above the threshold."""
    result = filter_low_expression(demo_matrix)
    assert bool(result.keep[demo_dataset.engineered_gene])
    assert result.n_kept > 300
