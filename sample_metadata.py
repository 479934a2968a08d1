"""
Sample metadata loading.

Reads the per-fish sample sheet (CSV, TSV or Excel) into immutable typed
records keyed by sample name. Column headers and categorical values are
normalized through alias tables so minor spreadsheet spelling differences do
not break the run.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple
import logging
import pandas as pd

from pipeline_errors import AnalysisInputError

logger = logging.getLogger(__name__)

STAGE = "sample_metadata"

# Canonical column -> accepted spreadsheet headers
COLUMN_ALIASES = {
    "fish_id": ["fish_id", "fish", "fishID", "Fish_ID", "fish id"],
    "sample_name": ["sample_name", "sample", "Sample", "sample_id", "SampleID", "samplename"],
    "sex": ["sex", "Sex", "gender"],
    "genotype": ["genotype", "Genotype", "GT"],
    "group": ["group", "Group", "sample_group", "condition"],
    "lane": ["lane", "Lane", "sequencing_lane", "batch"],
    "short_name": ["short_name", "ShortName", "label", "short"],
}

REQUIRED_COLUMNS = ["sample_name", "sex", "genotype"]

SEX_VALUES = {"f": "F", "female": "F", "m": "M", "male": "M"}

GENOTYPE_VALUES = {
    "wt": "WT",
    "wildtype": "WT",
    "wild type": "WT",
    "+/+": "WT",
    "het": "het",
    "heterozygous": "het",
    "w1818*/+": "het",
    "sorl1 w1818*/+": "het",
}


@dataclass(frozen=True)
class SampleRecord:
    """One sequenced sample (one fish)."""

    sample_name: str
    fish_id: str
    sex: str  # "F" or "M"
    genotype: str  # "WT" or "het"
    group: str
    lane: str
    short_name: str


@dataclass(frozen=True)
class SampleMetadata:
    """Ordered, immutable collection of SampleRecords."""

    records: Tuple[SampleRecord, ...]

    def __post_init__(self):
        names = [r.sample_name for r in self.records]
        duplicated = sorted({n for n in names if names.count(n) > 1})
        if duplicated:
            raise AnalysisInputError(
                f"Duplicate sample names: {', '.join(duplicated)}",
                stage=STAGE,
                sample=duplicated[0],
            )

    @property
    def sample_names(self) -> List[str]:
        return [r.sample_name for r in self.records]

    def __len__(self) -> int:
        return len(self.records)

    def __getitem__(self, sample_name: str) -> SampleRecord:
        for record in self.records:
            if record.sample_name == sample_name:
                return record
        raise KeyError(sample_name)

    def genotypes(self) -> Dict[str, str]:
        """sample_name -> genotype"""
        return {r.sample_name: r.genotype for r in self.records}

    def to_frame(self) -> pd.DataFrame:
        """Samples as rows (index = sample_name) for display and export."""
        df = pd.DataFrame([r.__dict__ for r in self.records])
        return df.set_index("sample_name")


def _canonical_columns(df: pd.DataFrame) -> pd.DataFrame:
    rename = {}
    for canonical, aliases in COLUMN_ALIASES.items():
        lowered = {a.lower() for a in aliases}
        for col in df.columns:
            if str(col).strip().lower() in lowered and col not in rename:
                rename[col] = canonical
                break
    return df.rename(columns=rename)


def _read_table(path: Path) -> pd.DataFrame:
    suffix = path.suffix.lower()
    if suffix in (".xlsx", ".xls"):
        return pd.read_excel(path, dtype=str)
    sep = "\t" if suffix in (".tsv", ".txt") else ","
    return pd.read_csv(path, sep=sep, dtype=str)


def parse_sample_table(df: pd.DataFrame) -> SampleMetadata:
    """
    Validate a raw sample table and convert it to SampleMetadata.

    Args:
        df: One row per sample, spreadsheet headers (aliases accepted)

    Returns:
        SampleMetadata with rows in table order

    Raises:
        AnalysisInputError: Missing columns, unknown sex/genotype, blank sample names
    """
    df = _canonical_columns(df)
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise AnalysisInputError(
            f"Sample sheet is missing required columns {missing}. "
            f"Found columns: {', '.join(map(str, df.columns))}",
            stage=STAGE,
        )

    records = []
    for row_number, row in enumerate(df.to_dict("records"), start=1):
        sample_name = str(row.get("sample_name") or "").strip()
        if not sample_name or sample_name.lower() == "nan":
            raise AnalysisInputError(
                f"Row {row_number} has no sample name", stage=STAGE
            )

        sex = SEX_VALUES.get(str(row["sex"]).strip().lower())
        if sex is None:
            raise AnalysisInputError(
                f"Unknown sex value '{row['sex']}' (row {row_number})",
                stage=STAGE,
                sample=sample_name,
            )
        genotype = GENOTYPE_VALUES.get(str(row["genotype"]).strip().lower())
        if genotype is None:
            raise AnalysisInputError(
                f"Unknown genotype value '{row['genotype']}' (row {row_number})",
                stage=STAGE,
                sample=sample_name,
            )

        def text(key: str, default: str) -> str:
            value = row.get(key)
            if value is None or pd.isna(value):
                return default
            return str(value).strip()

        records.append(
            SampleRecord(
                sample_name=sample_name,
                fish_id=text("fish_id", sample_name),
                sex=sex,
                genotype=genotype,
                group=text("group", f"{genotype}_{sex}"),
                lane=text("lane", "NA"),
                short_name=text("short_name", sample_name),
            )
        )

    metadata = SampleMetadata(records=tuple(records))
    counts = pd.Series([r.genotype for r in records]).value_counts().to_dict()
    logger.info(f"Loaded {len(metadata)} samples ({counts})")
    return metadata


def load_sample_metadata(path) -> SampleMetadata:
    """Read a sample sheet from disk (CSV, TSV or Excel)."""
    path = Path(path)
    if not path.exists():
        raise AnalysisInputError(f"Sample sheet not found: {path}", stage=STAGE)
    try:
        df = _read_table(path)
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as e:
        raise AnalysisInputError(
            f"Could not read sample sheet {path.name}: {e}", stage=STAGE
        ) from e
    return parse_sample_table(df)
