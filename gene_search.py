"""
Gene search utility.

Single-gene lookups always resolve to a stable gene id first; tables are then
indexed by that id, never by row position.
"""

from typing import Optional
import pandas as pd

from count_matrix import CountMatrix
from de_analysis import DETestResult
from gene_annotation import GeneAnnotation


def search_genes(
    annotation: GeneAnnotation, query: str, case_sensitive: bool = False
) -> pd.DataFrame:
    """
    Search the annotation by partial gene id, gene name or description.

    Args:
        annotation: Gene annotation
        query: Search string (partial substring matching)
        case_sensitive: Whether to perform case-sensitive matching (default: False)

    Returns:
        Matching rows of annotation.genes (index gene_id)

    Behavior:
        - Empty query: Returns all genes
        - Case-insensitive by default: "sorl" matches "sorl1"
    """
    genes = annotation.genes
    if not query:
        return genes.copy()

    mask = pd.Series(False, index=genes.index)
    for target in (genes.index.to_series(), genes["gene_name"], genes["description"]):
        mask |= target.astype(str).str.contains(query, case=case_sensitive, regex=False).values
    return genes[mask].copy()


def resolve_gene_id(annotation: GeneAnnotation, query: str) -> Optional[str]:
    """
    Map a gene id or gene name to a gene id.

    Exact gene id first, then exact gene name, then case-insensitive gene
    name. Returns None if nothing matches.

    Raises:
        ValueError: The name matches more than one gene id
    """
    if query in annotation:
        return query

    names = annotation.genes["gene_name"].astype(str)
    for matches in (names == query, names.str.lower() == query.lower()):
        ids = list(annotation.genes.index[matches.values])
        if len(ids) == 1:
            return ids[0]
        if len(ids) > 1:
            raise ValueError(f"Gene name '{query}' matches several gene ids: {', '.join(ids)}")
    return None


def get_gene_summary(
    annotation: GeneAnnotation,
    query: str,
    de_result: Optional[DETestResult] = None,
    matrix: Optional[CountMatrix] = None,
) -> Optional[pd.Series]:
    """
    Retrieve annotation, DE result and counts for one gene.

    Args:
        annotation: Gene annotation
        query: Gene id or gene name
        de_result: Optional DE result; genes removed by the filter get no DE fields
        matrix: Optional count matrix; adds one count field per sample

    Returns:
        pd.Series named by gene id, or None if the gene is not annotated
    """
    gene_id = resolve_gene_id(annotation, query)
    if gene_id is None:
        return None

    record = annotation.record(gene_id)
    summary = {
        "gene_id": gene_id,
        "gene_name": record.gene_name,
        "chromosome": record.chromosome,
        "gc_content": record.gc_content,
        "length": record.length,
        "tested": False,
    }
    if de_result is not None and gene_id in de_result.table.index:
        row = de_result.gene(gene_id)
        summary["tested"] = True
        for column in ("logFC", "logCPM", "PValue", "FDR", "significant"):
            summary[column] = row[column]
    if matrix is not None and gene_id in matrix.gene_ids:
        for sample, count in matrix.gene_counts(gene_id).items():
            summary[f"count_{sample}"] = int(count)

    return pd.Series(summary, name=gene_id)
