"""
Gene annotation loading.

Builds the transcript -> gene map and per-gene GC content / length
statistics from a transcript-level annotation table (one row per
transcript, exported from the reference genome annotation).
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Tuple
import logging
import re
import numpy as np
import pandas as pd

from pipeline_errors import AnalysisInputError

logger = logging.getLogger(__name__)

STAGE = "annotation"

TRANSCRIPT_COLUMN_ALIASES = {
    "gene_id": ["gene_id", "ensembl_gene_id", "GENEID"],
    "transcript_id": ["transcript_id", "tx_id", "ensembl_transcript_id", "TXID"],
    "gene_name": ["gene_name", "symbol", "SYMBOL", "external_gene_name"],
    "chromosome": ["chromosome", "seqnames", "chromosome_name", "chr"],
    "strand": ["strand"],
    "description": ["description", "gene_description"],
    "transcript_type": ["transcript_type", "tx_biotype", "transcript_biotype", "type"],
    "gc_content": ["gc_content", "tx_gc", "percentage_gene_gc_content", "gc"],
    "length": ["length", "tx_len", "transcript_length", "exonic_length"],
    "entrez_ids": ["entrez_ids", "entrezid", "entrezgene_id", "ENTREZID"],
}

REQUIRED_TRANSCRIPT_COLUMNS = ["gene_id", "transcript_id", "gc_content", "length"]


@dataclass(frozen=True)
class GeneRecord:
    """Per-gene annotation."""

    gene_id: str
    gene_name: str
    chromosome: str
    strand: str
    description: str
    gc_content: float  # fraction in [0, 1], length-weighted across transcripts
    length: int  # median transcript length
    xrefs: Tuple[str, ...]  # Entrez ids


@dataclass(frozen=True)
class GeneAnnotation:
    """
    Gene-level annotation plus the transcript -> gene map.

    genes is indexed by gene_id with columns gene_name, chromosome, strand,
    description, gc_content, length, xrefs.
    """

    genes: pd.DataFrame
    tx2gene: pd.Series  # transcript_id -> gene_id

    def __contains__(self, gene_id: str) -> bool:
        return gene_id in self.genes.index

    def record(self, gene_id: str) -> GeneRecord:
        row = self.genes.loc[gene_id]
        return GeneRecord(
            gene_id=gene_id,
            gene_name=row["gene_name"],
            chromosome=row["chromosome"],
            strand=row["strand"],
            description=row["description"],
            gc_content=float(row["gc_content"]),
            length=int(row["length"]),
            xrefs=tuple(row["xrefs"]),
        )

    def gene_names(self, gene_ids: Iterable[str]) -> List[str]:
        """Display names for gene ids; falls back to the id itself."""
        names = self.genes["gene_name"]
        return [names.get(g, g) or g for g in gene_ids]

    def xref_index(self) -> Dict[str, List[str]]:
        """Cross-reference id -> gene ids sharing it."""
        index: Dict[str, List[str]] = {}
        for gene_id, xrefs in self.genes["xrefs"].items():
            for xref in xrefs:
                index.setdefault(xref, []).append(gene_id)
        return index

    def translate(self, ids: Iterable[str], namespace: str = "entrez") -> List[str]:
        """
        Map identifiers from a namespace to gene ids.

        "gene_id" passes identifiers through unchanged. "entrez" looks them up
        in the cross-reference field. Unknown identifiers are dropped.
        """
        if namespace == "gene_id":
            return list(ids)
        if namespace != "entrez":
            raise ValueError(f"Unknown identifier namespace: {namespace}")
        index = self.xref_index()
        translated: List[str] = []
        for xref in ids:
            for gene_id in index.get(str(xref), []):
                if gene_id not in translated:
                    translated.append(gene_id)
        return translated


def _canonical_columns(df: pd.DataFrame) -> pd.DataFrame:
    rename = {}
    for canonical, aliases in TRANSCRIPT_COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in df.columns:
                rename[alias] = canonical
                break
    return df.rename(columns=rename)


def _split_xrefs(value) -> Tuple[str, ...]:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return ()
    tokens = re.split(r"[;,|\s]+", str(value).strip())
    return tuple(t.split(".")[0] for t in tokens if t and t.lower() not in ("nan", "na"))


def build_gene_annotation(transcripts: pd.DataFrame) -> GeneAnnotation:
    """
    Collapse a transcript table to one row per gene.

    GC content is the length-weighted mean of transcript GC; length is the
    median transcript length; cross-references are the union over transcripts.
    GC given as a percentage (max > 1) is converted to a fraction.

    Raises:
        AnalysisInputError: Missing columns, GC outside [0, 1], non-positive lengths,
            or a transcript mapped to more than one gene
    """
    df = _canonical_columns(transcripts.copy())
    missing = [c for c in REQUIRED_TRANSCRIPT_COLUMNS if c not in df.columns]
    if missing:
        raise AnalysisInputError(
            f"Annotation table is missing required columns {missing}", stage=STAGE
        )

    for col, default in [
        ("gene_name", ""),
        ("chromosome", ""),
        ("strand", ""),
        ("description", ""),
        ("transcript_type", ""),
        ("entrez_ids", None),
    ]:
        if col not in df.columns:
            df[col] = default

    df["gc_content"] = pd.to_numeric(df["gc_content"], errors="coerce")
    df["length"] = pd.to_numeric(df["length"], errors="coerce")

    bad_length = df[~(df["length"] > 0)]
    if not bad_length.empty:
        row = bad_length.iloc[0]
        raise AnalysisInputError(
            f"Transcript {row['transcript_id']} has non-positive or missing length",
            stage=STAGE,
            gene_id=str(row["gene_id"]),
        )

    if df["gc_content"].max() > 1.0:
        df["gc_content"] = df["gc_content"] / 100.0
    bad_gc = df[~df["gc_content"].between(0.0, 1.0)]
    if not bad_gc.empty:
        row = bad_gc.iloc[0]
        raise AnalysisInputError(
            f"Transcript {row['transcript_id']} has GC content outside [0, 1]",
            stage=STAGE,
            gene_id=str(row["gene_id"]),
        )

    tx_genes = df.groupby("transcript_id")["gene_id"].nunique()
    ambiguous = tx_genes[tx_genes > 1]
    if not ambiguous.empty:
        raise AnalysisInputError(
            f"Transcript {ambiguous.index[0]} is annotated to more than one gene",
            stage=STAGE,
        )

    df["gc_bases"] = df["gc_content"] * df["length"]
    df["xref_tuple"] = df["entrez_ids"].map(_split_xrefs)
    grouped = df.groupby("gene_id", sort=True)

    genes = pd.DataFrame(
        {
            "gene_name": grouped["gene_name"].first().fillna(""),
            "chromosome": grouped["chromosome"].first().astype(str),
            "strand": grouped["strand"].first().astype(str),
            "description": grouped["description"].first().fillna(""),
            "gc_content": grouped["gc_bases"].sum() / grouped["length"].sum(),
            "length": grouped["length"].median().round().astype(int),
            "xrefs": grouped["xref_tuple"].agg(
                lambda values: tuple(sorted({x for xs in values for x in xs}))
            ),
        }
    )
    genes.index.name = "gene_id"

    tx2gene = df.drop_duplicates("transcript_id").set_index("transcript_id")["gene_id"]

    logger.info(
        f"Annotation: {len(genes)} genes from {len(tx2gene)} transcripts "
        f"({int((genes['xrefs'].map(len) > 0).sum())} with Entrez ids)"
    )
    return GeneAnnotation(genes=genes, tx2gene=tx2gene)


def load_annotation(path) -> GeneAnnotation:
    """Read a transcript annotation table (CSV/TSV) and build the gene annotation."""
    path = Path(path)
    if not path.exists():
        raise AnalysisInputError(f"Annotation table not found: {path}", stage=STAGE)
    sep = "," if path.suffix.lower() == ".csv" else "\t"
    transcripts = pd.read_csv(path, sep=sep, dtype={"entrez_ids": str})
    return build_gene_annotation(transcripts)
