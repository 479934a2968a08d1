"""
Gene set enrichment analysis module.

Runs three independent set-level tests against each curated collection and
merges their p-values per gene set:

- GSEA preranked (GSEApy), ranking genes by sign(logFC) * -log10(PValue)
- fry, a self-contained rotation test
- camera, a competitive test adjusted for inter-gene correlation

The combined p-value is the harmonic-mean p-value of the available method
p-values, FDR-adjusted across all sets of one collection and contrast.

Classes:
    GeneSet: Named, immutable set of gene ids
    EnrichmentResult: One method's results for one collection
    CombinedEnrichmentResult: Per-set merge of the three methods
    PathwayEnrichment: Runs the tests
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple
import logging
import gseapy as gp
import numpy as np
import pandas as pd

from analysis_config import (
    EXPLORATORY_THRESHOLD,
    SIGNIFICANCE_THRESHOLD,
    GeneSetCollectionConfig,
)
from count_matrix import CountMatrix
from de_analysis import DEFit
from gene_annotation import GeneAnnotation
from gene_set_tests import camera, compute_effects, fry, nb_zscores
from p_value_combination import adjust_pvalues, combine_method_pvalues
from pipeline_errors import AnalysisInputError, WorkflowError

logger = logging.getLogger(__name__)

STAGE = "gene_set_enrichment"

METHODS = ("prerank", "fry", "camera")

# res2d columns read from a GSEApy prerank result
PRERANK_COLUMNS = ("Term", "ES", "NES", "NOM p-val", "Lead_genes")


@dataclass(frozen=True)
class GeneSet:
    """A named, unordered collection of gene ids."""

    name: str
    genes: FrozenSet[str]

    def __len__(self) -> int:
        return len(self.genes)


@dataclass(frozen=True)
class EnrichmentResult:
    """
    One method's results for one collection (index = set name).

    Every table has NGenes, Direction and PValue; prerank adds ES, NES and
    leading_edge, fry adds PValue.Mixed, camera adds Correlation.
    """

    collection: str
    method: str
    table: pd.DataFrame


@dataclass(frozen=True)
class CombinedEnrichmentResult:
    """Per-set merge of the method results for one collection and contrast."""

    collection: str
    contrast: str
    table: pd.DataFrame
    method_results: Dict[str, EnrichmentResult]

    def significant_sets(self) -> pd.DataFrame:
        return self.table[self.table["significant"]].sort_values("HMP")

    def exploratory_sets(self) -> pd.DataFrame:
        return self.table[self.table["exploratory"]].sort_values("HMP")

    def long_format(self) -> pd.DataFrame:
        """One row per (set, method) with direction, p-value and set size."""
        frames = []
        for method, result in self.method_results.items():
            cols = ["NGenes", "Direction", "PValue"]
            frame = result.table[cols].copy()
            frame["leading_edge"] = (
                result.table["leading_edge"] if "leading_edge" in result.table else None
            )
            frame["method"] = method
            frames.append(frame.reset_index().rename(columns={"index": "set"}))
        if not frames:
            return pd.DataFrame(columns=["set", "method", "NGenes", "Direction", "PValue"])
        return pd.concat(frames, ignore_index=True)


def load_gene_set_collection(
    collection: GeneSetCollectionConfig, annotation: GeneAnnotation
) -> List[GeneSet]:
    """
    Read a GMT file or a plain gene list and translate ids to gene ids.

    A plain list becomes one gene set named after the collection.

    Raises:
        AnalysisInputError: File missing or empty
    """
    path = Path(collection.path)
    if not path.exists():
        raise AnalysisInputError(
            f"Gene set file for '{collection.name}' not found: {path}", stage=STAGE
        )

    if collection.format == "gmt":
        raw = gp.read_gmt(str(path))
    else:
        ids = [line.strip() for line in path.read_text().splitlines()]
        raw = {collection.name: [i for i in ids if i and not i.startswith("#")]}

    if not raw:
        raise AnalysisInputError(
            f"Gene set collection '{collection.name}' is empty", stage=STAGE
        )

    gene_sets = [
        GeneSet(
            name=name,
            genes=frozenset(annotation.translate(members, collection.namespace)),
        )
        for name, members in raw.items()
    ]
    logger.info(
        f"Collection '{collection.name}': {len(gene_sets)} sets ({collection.namespace} ids)"
    )
    return gene_sets


def restrict_gene_sets(
    gene_sets: List[GeneSet],
    universe,
    min_size: int,
    max_size: int,
    collection: str = "",
) -> Dict[str, List[str]]:
    """
    Keep only members present in the filtered matrix; drop sets outside the size bounds.

    Members absent from the universe are ignored without warning.

    Returns:
        set name -> sorted member gene ids

    Raises:
        AnalysisInputError: No set is left to test
    """
    universe = set(universe)
    restricted = {}
    for gene_set in gene_sets:
        members = sorted(gene_set.genes & universe)
        if min_size <= len(members) <= max_size:
            restricted[gene_set.name] = members
        else:
            logger.debug(
                f"Skipping gene set '{gene_set.name}': {len(members)} genes after "
                f"restriction (bounds {min_size}-{max_size})"
            )
    if not restricted:
        raise AnalysisInputError(
            f"No gene set in collection '{collection}' has between {min_size} and "
            f"{max_size} genes in the filtered expression matrix",
            stage=STAGE,
        )
    return restricted


def leading_edge(ranking: pd.Series, members) -> Tuple[str, ...]:
    """
    Leading-edge genes of a set against a ranked list.

    Genes are walked from highest to lowest statistic with a |stat|-weighted
    running sum (GSEA weight 1). If the maximal deviation is positive the
    leading edge is the set's genes up to and including that position,
    otherwise the set's genes from that position onwards. Ordered by rank.
    """
    ordered = ranking.sort_values(ascending=False, kind="mergesort")
    hits = ordered.index.isin(list(members))
    n_hits = int(hits.sum())
    if n_hits == 0:
        return ()
    n_miss = len(ordered) - n_hits
    genes = ordered.index[hits]
    if n_miss == 0:
        return tuple(genes)

    weights = np.abs(ordered.values) * hits
    if weights.sum() == 0:
        weights = hits.astype(float)
    running = np.cumsum(weights / weights.sum()) - np.cumsum(~hits) / n_miss
    peak = int(np.argmax(np.abs(running)))

    positions = np.flatnonzero(hits)
    if running[peak] > 0:
        chosen = positions[positions <= peak]
    else:
        chosen = positions[positions >= peak]
    return tuple(ordered.index[chosen])


class PathwayEnrichment:
    """
    Gene set enrichment analysis with three methods and p-value combination.

    Supports:
    - GSEA preranked via GSEApy (permutation null)
    - fry rotation test
    - camera correlation-adjusted competitive test
    - Harmonic-mean p-value combination with BH FDR per collection
    """

    def __init__(
        self,
        permutations: int = 100000,
        min_size: int = 5,
        max_size: int = 500,
        seed: int = 42,
        threads: int = 1,
    ):
        self.permutations = permutations
        self.min_size = min_size
        self.max_size = max_size
        self.seed = seed
        self.threads = threads

    @staticmethod
    def create_ranking_metric(de_table: pd.DataFrame) -> pd.Series:
        """
        sign(logFC) * -log10(PValue) per gene, sorted ascending.

        Genes with a missing logFC or PValue are dropped.
        """
        valid = de_table.dropna(subset=["PValue", "logFC"])
        pval = valid["PValue"].clip(lower=1e-300)
        ranking = -np.log10(pval) * np.sign(valid["logFC"])
        ranking.name = "rank"
        return ranking.sort_values(ascending=True, kind="mergesort")

    def run_prerank(
        self, ranking: pd.Series, gene_sets: Dict[str, List[str]], collection: str = ""
    ) -> EnrichmentResult:
        """
        GSEA preranked test.

        Args:
            ranking: gene_id -> ranking statistic
            gene_sets: set name -> member gene ids (already restricted)

        Returns:
            EnrichmentResult; sets GSEApy did not score are absent

        Raises:
            WorkflowError if GSEApy fails
        """
        if ranking.empty:
            raise AnalysisInputError("Ranking is empty; nothing to test", stage=STAGE)

        try:
            pre_res = gp.prerank(
                rnk=ranking,
                gene_sets=gene_sets,
                outdir=None,
                min_size=self.min_size,
                max_size=self.max_size,
                permutation_num=self.permutations,
                threads=self.threads,
                seed=self.seed,
                no_plot=True,
                verbose=False,
            )
        except Exception as e:
            logger.error(f"GSEA prerank failed for '{collection}': {str(e)}", exc_info=True)
            raise WorkflowError(
                f"GSEA prerank failed: {type(e).__name__}: {e}",
                stage=STAGE,
                details={"collection": collection},
            ) from e

        res = pre_res.res2d.copy()
        missing = [c for c in PRERANK_COLUMNS if c not in res.columns]
        if missing:
            raise WorkflowError(
                f"GSEA prerank result lacks columns {missing}",
                stage=STAGE,
                details={"collection": collection, "columns": list(res.columns)},
            )
        rows = []
        for record in res.to_dict("records"):
            name = record["Term"]
            if name not in gene_sets:
                continue
            members = gene_sets[name]
            reported = [g for g in str(record.get("Lead_genes") or "").split(";") if g]
            edge = tuple(g for g in reported if g in set(members) and g in ranking.index)
            if not edge:
                edge = leading_edge(ranking, members)
            nes = float(record["NES"])
            rows.append(
                {
                    "set": name,
                    "NGenes": len(members),
                    "ES": float(record["ES"]),
                    "NES": nes,
                    "Direction": "Up" if nes > 0 else "Down",
                    "PValue": float(record["NOM p-val"]),
                    "leading_edge": ";".join(edge),
                }
            )
        table = pd.DataFrame(
            rows, columns=["set", "NGenes", "ES", "NES", "Direction", "PValue", "leading_edge"]
        ).set_index("set")
        return EnrichmentResult(collection=collection, method="prerank", table=table)

    @staticmethod
    def expression_effects(matrix: CountMatrix, de_fit: DEFit):
        """QR effects of negative-binomial z-scores under the null model."""
        z = nb_zscores(matrix.counts, de_fit.null_means, de_fit.dispersions)
        return compute_effects(z, de_fit.design)

    def run_collection(
        self,
        collection: str,
        gene_sets: List[GeneSet],
        matrix: CountMatrix,
        de_fit: DEFit,
    ) -> CombinedEnrichmentResult:
        """
        Run all three methods on one collection and combine per set.

        Args:
            collection: Collection name
            gene_sets: Unrestricted gene sets (gene id namespace)
            matrix: Filtered count matrix used for the DE fit
            de_fit: DE fit for the contrast

        Returns:
            CombinedEnrichmentResult
        """
        restricted = restrict_gene_sets(
            gene_sets, matrix.gene_ids, self.min_size, self.max_size, collection
        )
        logger.info(f"Collection '{collection}': testing {len(restricted)} gene sets")

        ranking = self.create_ranking_metric(de_fit.result.table)
        effects = self.expression_effects(matrix, de_fit)

        method_results = {
            "prerank": self.run_prerank(ranking, restricted, collection),
            "fry": EnrichmentResult(collection, "fry", fry(effects, restricted)),
            "camera": EnrichmentResult(collection, "camera", camera(effects, restricted)),
        }
        contrast = "{}_vs_{}".format(*de_fit.result.comparison)
        table = combine_enrichment_tables(list(restricted), restricted, method_results)

        logger.info(
            f"Collection '{collection}': {int(table['significant'].sum())} sets with "
            f"HMP FDR < {SIGNIFICANCE_THRESHOLD}"
        )
        return CombinedEnrichmentResult(
            collection=collection,
            contrast=contrast,
            table=table,
            method_results=method_results,
        )


def combine_enrichment_tables(
    set_names: List[str],
    gene_sets: Dict[str, List[str]],
    method_results: Dict[str, EnrichmentResult],
) -> pd.DataFrame:
    """
    One row per set with each method's direction/p-value, the harmonic-mean
    p-value, its FDR and the significance flags.
    """
    table = pd.DataFrame(index=pd.Index(set_names, name="set"))
    table["NGenes"] = [len(gene_sets[s]) for s in set_names]

    prerank = method_results["prerank"].table.reindex(set_names)
    table["prerank_NES"] = prerank["NES"]
    table["prerank_PValue"] = prerank["PValue"]
    table["leading_edge"] = prerank["leading_edge"]

    fry_table = method_results["fry"].table.reindex(set_names)
    table["fry_Direction"] = fry_table["Direction"]
    table["fry_PValue"] = fry_table["PValue"]
    table["fry_PValue_Mixed"] = fry_table["PValue.Mixed"]

    camera_table = method_results["camera"].table.reindex(set_names)
    table["camera_Direction"] = camera_table["Direction"]
    table["camera_Correlation"] = camera_table["Correlation"]
    table["camera_PValue"] = camera_table["PValue"]

    table["Direction"] = np.where(
        table["prerank_NES"].notna(),
        np.where(table["prerank_NES"] > 0, "Up", "Down"),
        table["fry_Direction"],
    )
    pvalue_columns = ["prerank_PValue", "fry_PValue", "camera_PValue"]
    table["HMP"] = combine_method_pvalues(table, pvalue_columns) if len(table) else []
    table["HMP_FDR"] = adjust_pvalues(table["HMP"].values)
    table["significant"] = table["HMP_FDR"] < SIGNIFICANCE_THRESHOLD
    table["exploratory"] = table["HMP_FDR"] < EXPLORATORY_THRESHOLD
    return table.sort_values("HMP", kind="mergesort")
