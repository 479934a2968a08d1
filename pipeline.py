"""
Workflow orchestration.

Each stage is a function PipelineContext -> PipelineContext that returns a new
context with its outputs filled in; earlier contexts are never modified. The
two workflow variants share every stage except the unwanted-variation step:

    base: metadata -> annotation -> counts -> filter -> CQN -> DE -> enrichment
    ruv:  ... -> CQN -> preliminary DE -> negative controls -> RUVg -> DE -> enrichment
"""

from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional
import logging

from analysis_config import AnalysisConfig
from count_matrix import CountMatrix, assemble_count_matrix
from cqn_normalization import CQNResult, cqn_normalize
from de_analysis import DEAnalysisEngine, DEFit, DesignSpecification, build_design
from expression_filter import FilterResult, filter_low_expression
from gene_annotation import GeneAnnotation, load_annotation
from pathway_enrichment import (
    CombinedEnrichmentResult,
    GeneSet,
    PathwayEnrichment,
    load_gene_set_collection,
)
from pipeline_errors import AnalysisInputError
from sample_metadata import SampleMetadata, load_sample_metadata
from unwanted_variation import (
    RUVResult,
    estimate_unwanted_variation,
    select_negative_controls,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineContext:
    """Everything known about one run, stage by stage."""

    config: AnalysisConfig
    metadata: Optional[SampleMetadata] = None
    annotation: Optional[GeneAnnotation] = None
    gene_sets: Dict[str, List[GeneSet]] = field(default_factory=dict)
    raw_matrix: Optional[CountMatrix] = None  # unfiltered, kept for reporting
    filter_result: Optional[FilterResult] = None
    cqn: Optional[CQNResult] = None
    matrix: Optional[CountMatrix] = None  # filtered, with the CQN offset attached
    preliminary_fit: Optional[DEFit] = None
    ruv: Optional[RUVResult] = None
    design: Optional[DesignSpecification] = None
    de_fit: Optional[DEFit] = None
    enrichment: Dict[str, CombinedEnrichmentResult] = field(default_factory=dict)

    @property
    def variant(self) -> str:
        return self.config.variant

    def require(self, *names: str) -> None:
        missing = [n for n in names if getattr(self, n) is None]
        if missing:
            raise AnalysisInputError(
                f"Stage run out of order; missing {', '.join(missing)}", stage="pipeline"
            )


def load_inputs(ctx: PipelineContext) -> PipelineContext:
    """Stages 1-2: sample sheet, annotation and gene-set collections."""
    config = ctx.config
    metadata = load_sample_metadata(config.metadata_path)
    annotation = load_annotation(config.annotation_path)
    gene_sets = {
        collection.name: load_gene_set_collection(collection, annotation)
        for collection in config.collections
    }
    return replace(ctx, metadata=metadata, annotation=annotation, gene_sets=gene_sets)


def assemble_counts(ctx: PipelineContext) -> PipelineContext:
    """Stage 3: gene-level count matrix from the per-sample quantifier output."""
    ctx.require("metadata", "annotation")
    sample_files = {
        sample: ctx.config.sample_quant_path(sample) for sample in ctx.metadata.sample_names
    }
    raw_matrix = assemble_count_matrix(sample_files, ctx.annotation, ctx.metadata)
    return replace(ctx, raw_matrix=raw_matrix)


def filter_genes(ctx: PipelineContext) -> PipelineContext:
    """Stage 4: low-expression filter, applied once to the unfiltered matrix."""
    ctx.require("raw_matrix")
    if ctx.filter_result is not None:
        raise AnalysisInputError(
            "Low-expression filter has already been applied", stage="expression_filter"
        )
    result = filter_low_expression(
        ctx.raw_matrix,
        cpm_numerator=ctx.config.cpm_numerator,
        recompute_library_sizes=ctx.config.recompute_library_sizes,
    )
    if result.n_kept == 0:
        raise AnalysisInputError(
            "No gene passed the low-expression filter", stage="expression_filter"
        )
    return replace(ctx, filter_result=result, matrix=result.matrix)


def normalize(ctx: PipelineContext) -> PipelineContext:
    """Stage 5: GC/length bias offsets attached to the filtered matrix."""
    ctx.require("matrix", "annotation")
    cqn = cqn_normalize(
        ctx.matrix,
        ctx.annotation,
        spline_df=ctx.config.cqn_spline_df,
        max_iter=ctx.config.cqn_max_iter,
    )
    return replace(ctx, cqn=cqn, matrix=ctx.matrix.with_offset(cqn.glm_offset))


def _engine(config: AnalysisConfig) -> DEAnalysisEngine:
    return DEAnalysisEngine(reference=config.reference_genotype, test=config.test_genotype)


def estimate_nuisance(ctx: PipelineContext) -> PipelineContext:
    """
    Stage 6 (ruv only): preliminary unadjusted DE, negative controls, RUVg.

    The resulting factors are appended to the design used by stage 7.
    """
    ctx.require("matrix", "metadata")
    config = ctx.config
    base_design = build_design(
        ctx.metadata, config.reference_genotype, config.test_genotype
    )
    logger.info("Preliminary DE for negative-control selection")
    preliminary = _engine(config).run(ctx.matrix, ctx.metadata, base_design, method="lrt")
    controls = select_negative_controls(
        preliminary.result, config.n_negative_controls, ctx.matrix.n_genes
    )
    ruv = estimate_unwanted_variation(ctx.matrix, controls, k=config.ruv_k)
    return replace(
        ctx,
        preliminary_fit=preliminary,
        ruv=ruv,
        design=base_design.with_covariates(ruv.factors),
    )


def run_differential_expression(ctx: PipelineContext) -> PipelineContext:
    """Stage 7: genotype DE with the configured test."""
    ctx.require("matrix", "metadata")
    config = ctx.config
    design = ctx.design or build_design(
        ctx.metadata, config.reference_genotype, config.test_genotype
    )
    de_fit = _engine(config).run(ctx.matrix, ctx.metadata, design, method=config.de_test)
    return replace(ctx, design=design, de_fit=de_fit)


def run_gene_set_enrichment(ctx: PipelineContext) -> PipelineContext:
    """Stage 8: prerank, fry and camera per collection, merged by harmonic mean."""
    ctx.require("matrix", "de_fit")
    config = ctx.config
    enrichment = PathwayEnrichment(
        permutations=config.prerank_permutations,
        min_size=config.gene_set_min_size,
        max_size=config.gene_set_max_size,
        seed=config.seed,
        threads=config.threads,
    )
    results = {
        name: enrichment.run_collection(name, gene_sets, ctx.matrix, ctx.de_fit)
        for name, gene_sets in ctx.gene_sets.items()
    }
    return replace(ctx, enrichment=results)


def stages_for(variant: str):
    """Ordered analysis stages after the inputs are loaded."""
    stages = [filter_genes, normalize]
    if variant == "ruv":
        stages.append(estimate_nuisance)
    stages.extend([run_differential_expression, run_gene_set_enrichment])
    return stages


def run_analysis_stages(ctx: PipelineContext) -> PipelineContext:
    """Run stages 4-8 on a context whose inputs and raw matrix are present."""
    ctx.require("metadata", "annotation", "raw_matrix")
    stages = stages_for(ctx.variant)
    for number, stage in enumerate(stages, start=1):
        logger.info(f"[{number}/{len(stages)}] {stage.__name__}")
        ctx = stage(ctx)
    return ctx


def run_pipeline(config: AnalysisConfig) -> PipelineContext:
    """
    Run the whole workflow from files on disk.

    Any stage failure propagates as a WorkflowError; nothing is retried and
    no partial result is returned.
    """
    logger.info(f"Starting {config.variant} workflow")
    ctx = assemble_counts(load_inputs(PipelineContext(config=config)))
    ctx = run_analysis_stages(ctx)
    logger.info(f"Workflow complete: {ctx.de_fit.result.n_significant} DE genes")
    for name, res in ctx.enrichment.items():
        logger.info(f"  {name}: {len(res.significant_sets())} significant gene sets")
    return ctx
