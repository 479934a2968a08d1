"""
Run configuration for the sorl1 W1818* RNA-seq workflow.

Settings are read from a YAML file. Significance cut-offs are module constants
rather than settings: every testing stage imports them from here.
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional
import yaml

from pipeline_errors import AnalysisInputError


# Adjusted p-value cut-off for "significant" genes and gene sets
SIGNIFICANCE_THRESHOLD = 0.05

# Looser cut-off, only used to decide which gene sets are drawn in plots
EXPLORATORY_THRESHOLD = 0.1

# Number of tests assumed by the harmonic-mean p-value combiner
HMP_TESTS_COMBINED = 3

WORKFLOW_VARIANTS = ("base", "ruv")
DE_TEST_METHODS = ("lrt", "exact")
GENE_SET_NAMESPACES = ("gene_id", "entrez")
GENE_SET_FORMATS = ("gmt", "list")


@dataclass(frozen=True)
class GeneSetCollectionConfig:
    """One curated gene-set collection (GMT file or plain gene list)."""

    name: str
    path: Path
    namespace: str = "gene_id"  # "gene_id" or "entrez"
    format: str = "gmt"  # "gmt" or "list"


@dataclass(frozen=True)
class AnalysisConfig:
    """Complete settings for one run of the workflow."""

    metadata_path: Path
    annotation_path: Path
    quant_dir: Path
    output_dir: Path = Path("results")
    variant: str = "base"
    quant_filename: str = "abundance.tsv"

    # Low-expression filter
    cpm_numerator: float = 10.0
    recompute_library_sizes: bool = False

    # GC/length normalization
    cqn_spline_df: int = 4
    cqn_max_iter: int = 5000

    # Unwanted variation (ruv variant)
    n_negative_controls: int = 10000
    ruv_k: int = 1

    # Differential expression
    de_test: str = "lrt"
    reference_genotype: str = "WT"
    test_genotype: str = "het"

    # Gene-set enrichment
    collections: List[GeneSetCollectionConfig] = field(default_factory=list)
    prerank_permutations: int = 100000
    gene_set_min_size: int = 5
    gene_set_max_size: int = 500
    seed: int = 42
    threads: int = 1

    # Reporting
    motif_top_n: int = 500
    log_level: str = "INFO"

    def __post_init__(self):
        if self.variant not in WORKFLOW_VARIANTS:
            raise AnalysisInputError(
                f"Unknown workflow variant '{self.variant}'. "
                f"Expected one of {WORKFLOW_VARIANTS}",
                stage="config",
            )
        if self.de_test not in DE_TEST_METHODS:
            raise AnalysisInputError(
                f"Unknown DE test '{self.de_test}'. Expected one of {DE_TEST_METHODS}",
                stage="config",
            )
        if self.variant == "ruv" and self.de_test == "exact":
            raise AnalysisInputError(
                "The exact test cannot adjust for unwanted-variation factors; "
                "use de_test: lrt with the ruv variant",
                stage="config",
            )
        if self.ruv_k < 1:
            raise AnalysisInputError("ruv_k must be at least 1", stage="config")
        if self.gene_set_min_size < 1 or self.gene_set_max_size < self.gene_set_min_size:
            raise AnalysisInputError(
                f"Invalid gene set size bounds "
                f"[{self.gene_set_min_size}, {self.gene_set_max_size}]",
                stage="config",
            )
        for collection in self.collections:
            if collection.namespace not in GENE_SET_NAMESPACES:
                raise AnalysisInputError(
                    f"Collection '{collection.name}' has unknown namespace "
                    f"'{collection.namespace}'",
                    stage="config",
                )
            if collection.format not in GENE_SET_FORMATS:
                raise AnalysisInputError(
                    f"Collection '{collection.name}' has unknown format "
                    f"'{collection.format}'",
                    stage="config",
                )

    def sample_quant_path(self, sample_name: str) -> Path:
        """Quantifier output for one sample: <quant_dir>/<sample>/<quant_filename>."""
        return self.quant_dir / sample_name / self.quant_filename

    def to_dict(self) -> Dict[str, Any]:
        """Plain-JSON view used in the run summary and the Settings sheet."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "collections":
                value = [
                    {
                        "name": c.name,
                        "path": str(c.path),
                        "namespace": c.namespace,
                        "format": c.format,
                    }
                    for c in value
                ]
            elif isinstance(value, Path):
                value = str(value)
            data[f.name] = value
        return data


_PATH_FIELDS = ("metadata_path", "annotation_path", "quant_dir", "output_dir")


def load_config(config_path: str, overrides: Optional[Dict[str, Any]] = None) -> AnalysisConfig:
    """
    Load an AnalysisConfig from a YAML file.

    Relative paths in the file are resolved against the file's directory.

    Args:
        config_path: Path to the YAML config
        overrides: Optional values that take precedence over the file (e.g. from the CLI)

    Returns:
        AnalysisConfig

    Raises:
        FileNotFoundError: If the config file does not exist
        AnalysisInputError: If required keys are missing or unknown keys are present
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Analysis config not found: {config_path}")

    with open(config_file, "r") as f:
        raw = yaml.safe_load(f) or {}

    if overrides:
        raw.update({k: v for k, v in overrides.items() if v is not None})

    known = {f.name for f in fields(AnalysisConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise AnalysisInputError(
            f"Unknown config keys: {', '.join(unknown)}", stage="config"
        )
    missing = [name for name in ("metadata_path", "annotation_path", "quant_dir") if name not in raw]
    if missing:
        raise AnalysisInputError(
            f"Missing required config keys: {', '.join(missing)}", stage="config"
        )

    base_dir = config_file.parent
    for key in _PATH_FIELDS:
        if key in raw:
            raw[key] = _resolve(base_dir, raw[key])

    collections = []
    for i, entry in enumerate(raw.get("collections") or []):
        absent = [key for key in ("name", "path") if not isinstance(entry, dict) or key not in entry]
        if absent:
            raise AnalysisInputError(
                f"Gene-set collection #{i + 1} is missing {', '.join(absent)}",
                stage="config",
                details={"entry": entry},
            )
        collections.append(
            GeneSetCollectionConfig(
                name=str(entry["name"]),
                path=_resolve(base_dir, entry["path"]),
                namespace=entry.get("namespace", "gene_id"),
                format=entry.get("format", "gmt"),
            )
        )
    raw["collections"] = collections

    return AnalysisConfig(**raw)


def _resolve(base_dir: Path, value: Any) -> Path:
    path = Path(value)
    return path if path.is_absolute() else base_dir / path
