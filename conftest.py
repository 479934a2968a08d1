"""
Pytest configuration and fixtures for the sorl1 RNA-seq workflow tests.
"""

from pathlib import Path
from unittest.mock import MagicMock
import gseapy
import numpy as np
import pandas as pd
import pytest
from scipy import stats

from analysis_config import AnalysisConfig, GeneSetCollectionConfig
from count_matrix import make_count_matrix
from de_analysis import make_result_table
from demo_data import demo_inputs, load_demo_dataset
from pathway_enrichment import GeneSet
from pipeline import PipelineContext, run_analysis_stages


# ============================================================================
# Demo Data Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def demo_dataset():
    """Simulated 12-fish experiment (6 WT, 6 het) with one engineered 2x gene."""
    return load_demo_dataset()


@pytest.fixture(scope="session")
def demo_parsed(demo_dataset):
    """(SampleMetadata, GeneAnnotation, unfiltered CountMatrix) of the demo."""
    return demo_inputs(demo_dataset)


@pytest.fixture
def demo_metadata(demo_parsed):
    return demo_parsed[0]


@pytest.fixture
def demo_annotation(demo_parsed):
    return demo_parsed[1]


@pytest.fixture
def demo_matrix(demo_parsed):
    return demo_parsed[2]


@pytest.fixture(scope="session")
def demo_gene_sets(demo_dataset):
    """Demo collection as GeneSet objects (gene id namespace)."""
    return [GeneSet(name=n, genes=frozenset(g)) for n, g in demo_dataset.gene_sets.items()]


def make_config(tmp_path: Path, **overrides) -> AnalysisConfig:
    """AnalysisConfig pointing into tmp_path, with fast enrichment settings."""
    values = dict(
        metadata_path=tmp_path / "samples.csv",
        annotation_path=tmp_path / "annotation.tsv",
        quant_dir=tmp_path / "quant",
        output_dir=tmp_path / "results",
        prerank_permutations=100,
        n_negative_controls=300,
        collections=[GeneSetCollectionConfig(name="demo", path=tmp_path / "demo.gmt")],
    )
    values.update(overrides)
    return AnalysisConfig(**values)


@pytest.fixture
def analysis_config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def config_factory(tmp_path):
    """Build configs rooted in tmp_path: config_factory(variant="ruv", ...)."""
    return lambda **overrides: make_config(tmp_path, **overrides)


# ============================================================================
# Small Synthetic Data Fixtures
# ============================================================================


@pytest.fixture
def small_counts_df():
    """
    Small genes x samples count matrix.
    Shape: (50 genes, 6 samples), first 3 samples WT, last 3 het.
    """
    rng = np.random.default_rng(7)
    data = rng.negative_binomial(n=10, p=0.05, size=(50, 6))
    data[:5] = 0  # unexpressed genes
    data[5:8, :] = [[0, 0, 0, 0, 400, 500]] * 3  # expressed in two samples only
    samples = [f"S{i + 1}" for i in range(6)]
    genes = [f"ENSDARG{i:011d}" for i in range(50)]
    df = pd.DataFrame(data, index=genes, columns=samples)
    df.index.name = "gene_id"
    return df


@pytest.fixture
def small_matrix(small_counts_df):
    return make_count_matrix(small_counts_df)


@pytest.fixture
def sample_sheet_df():
    """Sample sheet with spreadsheet-style headers."""
    return pd.DataFrame(
        {
            "Fish_ID": ["F1", "F2", "F3", "F4"],
            "Sample": ["S1", "S2", "S3", "S4"],
            "Sex": ["female", "M", "F", "male"],
            "Genotype": ["WT", "+/+", "het", "W1818*/+"],
            "Group": ["WT_F", "WT_M", "het_F", "het_M"],
            "Lane": ["L1", "L1", "L2", "L2"],
        }
    )


@pytest.fixture
def transcript_table_df():
    """Transcript-level annotation: three genes, one with two transcripts."""
    return pd.DataFrame(
        {
            "gene_id": ["G1", "G1", "G2", "G3"],
            "transcript_id": ["T1", "T2", "T3", "T4"],
            "gene_name": ["sorl1", "sorl1", "appa", "psen1"],
            "chromosome": ["15", "15", "1", "17"],
            "strand": ["+", "+", "-", "+"],
            "description": ["sortilin-related receptor", "", "amyloid beta precursor protein a", "presenilin 1"],
            "transcript_type": ["protein_coding"] * 4,
            "gc_content": [40.0, 50.0, 45.0, 38.0],
            "length": [1000, 3000, 2000, 1500],
            "entrez_ids": ["1001", "1001", "2002;2003", None],
        }
    )


@pytest.fixture
def de_table_df():
    """
    DE result table for ranking and plotting tests.
    Contains 100 genes, the first 10 strongly up in het.
    """
    rng = np.random.default_rng(42)
    n_genes = 100
    genes = [f"ENSDARG{i:011d}" for i in range(n_genes)]
    pvalues = rng.uniform(0, 1, n_genes)
    log_fc = rng.normal(0, 0.3, n_genes)
    pvalues[:10] = rng.uniform(1e-8, 1e-4, 10)
    log_fc[:10] = rng.uniform(1.0, 2.0, 10)
    return make_result_table(genes, log_fc, rng.uniform(2, 10, n_genes), pvalues)


# ============================================================================
# External API Mocking Fixtures
# ============================================================================


def _fake_prerank(rnk, gene_sets, **kwargs):
    """Deterministic stand-in for gseapy.prerank with the same res2d layout."""
    ranking = pd.Series(rnk).astype(float)
    spread = ranking.std(ddof=1) or 1.0
    rows = []
    for name, members in gene_sets.items():
        values = ranking.reindex([g for g in members if g in ranking.index])
        if len(values) < kwargs.get("min_size", 1):
            continue
        z = values.mean() * np.sqrt(len(values)) / spread
        direction = values.sort_values(ascending=bool(z < 0))
        rows.append(
            {
                "Name": "prerank",
                "Term": name,
                "ES": float(np.tanh(z / 4)),
                "NES": float(z / 2),
                "NOM p-val": float(max(2 * stats.norm.sf(abs(z)), 1e-4)),
                "FDR q-val": 0.5,
                "FWER p-val": 0.5,
                "Lead_genes": ";".join(direction.index[:3]),
            }
        )
    result = MagicMock()
    result.res2d = pd.DataFrame(rows)
    return result


@pytest.fixture
def mock_gseapy(monkeypatch):
    """Mock gseapy module for enrichment analysis testing; read_gmt stays real."""
    mock_gp = MagicMock()
    mock_gp.prerank = MagicMock(side_effect=_fake_prerank)
    mock_gp.read_gmt = MagicMock(side_effect=gseapy.read_gmt)
    monkeypatch.setattr("pathway_enrichment.gp", mock_gp)
    return mock_gp


@pytest.fixture(scope="session")
def demo_context(demo_parsed, demo_gene_sets, tmp_path_factory):
    """
    Finished base-variant run on the demo data (LRT, mocked prerank).
    Session scoped: the per-gene GLM fits are the slow part of the suite.
    """
    metadata, annotation, raw_matrix = demo_parsed
    config = make_config(tmp_path_factory.mktemp("demo"))
    ctx = PipelineContext(
        config=config,
        metadata=metadata,
        annotation=annotation,
        raw_matrix=raw_matrix,
        gene_sets={"demo": demo_gene_sets},
    )
    with pytest.MonkeyPatch.context() as mp:
        mock_gp = MagicMock()
        mock_gp.prerank = MagicMock(side_effect=_fake_prerank)
        mp.setattr("pathway_enrichment.gp", mock_gp)
        return run_analysis_stages(ctx)
