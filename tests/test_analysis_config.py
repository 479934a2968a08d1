"""
Tests for analysis_config.py

Tests cover:
- AnalysisConfig validation
- load_config() YAML parsing, path resolution and overrides
"""

from pathlib import Path
import pytest
import yaml

from analysis_config import (
    SIGNIFICANCE_THRESHOLD,
    AnalysisConfig,
    GeneSetCollectionConfig,
    load_config,
)
from pipeline_errors import AnalysisInputError, WorkflowError


def _write_config(path: Path, data: dict) -> Path:
    config_path = path / "config.yaml"
    with open(config_path, "w") as f:
        yaml.safe_dump(data, f)
    return config_path


BASE = {
    "metadata_path": "samples.csv",
    "annotation_path": "annotation.tsv",
    "quant_dir": "quant",
}


# ============================================================================
# AnalysisConfig
# ============================================================================


def test_defaults():
    """Defaults match the published workflow settings."""
    config = AnalysisConfig(
        metadata_path=Path("m.csv"), annotation_path=Path("a.tsv"), quant_dir=Path("q")
    )
    assert config.variant == "base"
    assert config.cpm_numerator == 10.0
    assert config.n_negative_controls == 10000
    assert config.ruv_k == 1
    assert config.prerank_permutations == 100000
    assert config.recompute_library_sizes is False
    assert SIGNIFICANCE_THRESHOLD == 0.05


def test_unknown_variant_rejected():
    """Only base and ruv variants exist."""
    with pytest.raises(AnalysisInputError, match="variant"):
        AnalysisConfig(
            metadata_path=Path("m"), annotation_path=Path("a"), quant_dir=Path("q"), variant="combat"
        )


def test_ruv_with_exact_test_rejected():
    """The exact test cannot carry nuisance covariates."""
    with pytest.raises(AnalysisInputError, match="exact"):
        AnalysisConfig(
            metadata_path=Path("m"),
            annotation_path=Path("a"),
            quant_dir=Path("q"),
            variant="ruv",
            de_test="exact",
        )


def test_bad_collection_namespace_rejected():
    """Collections must use a known identifier namespace."""
    with pytest.raises(AnalysisInputError, match="namespace"):
        AnalysisConfig(
            metadata_path=Path("m"),
            annotation_path=Path("a"),
            quant_dir=Path("q"),
            collections=[GeneSetCollectionConfig(name="x", path=Path("x.gmt"), namespace="symbol")],
        )


def test_sample_quant_path():
    """Quantifier output lives at quant_dir/sample/quant_filename."""
    config = AnalysisConfig(
        metadata_path=Path("m"), annotation_path=Path("a"), quant_dir=Path("/data/quant")
    )
    assert config.sample_quant_path("S01") == Path("/data/quant/S01/abundance.tsv")


def test_to_dict_is_plain(analysis_config):
    """to_dict() contains only JSON-friendly values."""
    data = analysis_config.to_dict()
    assert isinstance(data["metadata_path"], str)
    assert data["collections"][0]["name"] == "demo"


# ============================================================================
# load_config()
# ============================================================================


def test_load_config_resolves_relative_paths(tmp_path):
    """Relative paths are resolved against the config file directory."""
    config_path = _write_config(
        tmp_path,
        dict(BASE, collections=[{"name": "kegg", "path": "sets/kegg.gmt", "namespace": "entrez"}]),
    )
    config = load_config(config_path)
    assert config.metadata_path == tmp_path / "samples.csv"
    assert config.collections[0].path == tmp_path / "sets" / "kegg.gmt"
    assert config.collections[0].namespace == "entrez"
    assert config.collections[0].format == "gmt"


def test_load_config_overrides(tmp_path):
    """CLI overrides win; None overrides are ignored."""
    config_path = _write_config(tmp_path, dict(BASE, variant="base"))
    config = load_config(config_path, overrides={"variant": "ruv", "output_dir": None})
    assert config.variant == "ruv"
    assert config.output_dir == Path("results")


def test_load_config_unknown_key(tmp_path):
    """Typos in the config are reported, not ignored."""
    config_path = _write_config(tmp_path, dict(BASE, cpm_treshold=5))
    with pytest.raises(AnalysisInputError, match="cpm_treshold"):
        load_config(config_path)


def test_load_config_missing_required(tmp_path):
    """Input paths are required."""
    config_path = _write_config(tmp_path, {"metadata_path": "samples.csv"})
    with pytest.raises(WorkflowError, match="annotation_path"):
        load_config(config_path)


@pytest.mark.parametrize(
    "entry, absent",
    [
        ({"path": "sets/kegg.gmt"}, "name"),
        ({"name": "kegg"}, "path"),
        ("sets/kegg.gmt", "name, path"),
    ],
)
def test_load_config_incomplete_collection(tmp_path, entry, absent):
    """A collection entry without a name or path is a config error, not a KeyError."""
    config_path = _write_config(tmp_path, dict(BASE, collections=[entry]))
    with pytest.raises(AnalysisInputError, match=f"missing {absent}") as excinfo:
        load_config(config_path)
    assert excinfo.value.stage == "config"


def test_load_config_missing_file(tmp_path):
    """A missing config file raises FileNotFoundError."""
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")
