"""
Export module for workflow results.

Writes the DE table and the combined enrichment tables as CSV, a multi-sheet
Excel workbook with a Settings sheet, the gene lists consumed by the external
promoter-motif enrichment tool, a JSON run summary and the figures.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging
import re
import sys
import pandas as pd
import plotly.graph_objects as go

from analysis_config import EXPLORATORY_THRESHOLD, SIGNIFICANCE_THRESHOLD
from count_matrix import CountMatrix
from de_analysis import DETestResult
from gene_annotation import GeneAnnotation
from gene_search import get_gene_summary
from pathway_enrichment import CombinedEnrichmentResult
from pipeline_errors import AnalysisInputError

logger = logging.getLogger(__name__)

STAGE = "reporting"


@dataclass
class ExportData:
    """Complete export bundle, built from a finished pipeline context."""

    de_result: DETestResult
    enrichment: Dict[str, CombinedEnrichmentResult]
    filtered_genes: List[str]  # background for the motif tool
    settings: Dict[str, Any]
    sample_table: pd.DataFrame
    annotation: Optional[GeneAnnotation] = None
    variant: str = "base"
    n_genes_before_filter: Optional[int] = None
    ruv_factors: Optional[pd.DataFrame] = None
    figures: Dict[str, go.Figure] = field(default_factory=dict)
    raw_matrix: Optional[CountMatrix] = None
    genes_of_interest: List[str] = field(default_factory=list)  # ids or names

    @classmethod
    def from_context(
        cls,
        ctx,
        figures: Optional[Dict[str, go.Figure]] = None,
        genes: Optional[List[str]] = None,
    ) -> "ExportData":
        return cls(
            de_result=ctx.de_fit.result,
            enrichment=dict(ctx.enrichment),
            filtered_genes=list(ctx.matrix.gene_ids),
            settings=ctx.config.to_dict(),
            sample_table=ctx.metadata.to_frame(),
            annotation=ctx.annotation,
            variant=ctx.variant,
            n_genes_before_filter=ctx.raw_matrix.n_genes if ctx.raw_matrix is not None else None,
            ruv_factors=ctx.ruv.factors if ctx.ruv is not None else None,
            figures=figures or {},
            raw_matrix=ctx.raw_matrix,
            genes_of_interest=list(genes or []),
        )

    @property
    def comparison_name(self) -> str:
        test, ref = self.de_result.comparison
        return f"{test}_vs_{ref}"


class ExportEngine:
    """Writes workflow results to an output directory."""

    def sanitize_sheet_name(self, name: str, max_length: int = 31) -> str:
        """
        Sanitize sheet name for Excel compatibility.

        Excel sheet name rules:
        - Max 31 characters
        - Cannot contain: [ ] : * ? / \\
        - Cannot start or end with '
        """
        name = re.sub(r"[\[\]:*?/\\]", "_", name)
        name = name.strip("'")
        return name[:max_length]

    def annotated_de_table(self, data: ExportData) -> pd.DataFrame:
        """DE table with gene names, sorted by p-value, gene_id as a column."""
        table = data.de_result.table.sort_values("PValue", kind="mergesort").copy()
        if data.annotation is not None:
            names = data.annotation.genes["gene_name"].reindex(table.index)
            table.insert(0, "gene_name", names.fillna("").values)
        return table.reset_index()

    def enrichment_table(self, result: CombinedEnrichmentResult) -> pd.DataFrame:
        table = result.table.reset_index()
        table.insert(0, "contrast", result.contrast)
        table.insert(0, "collection", result.collection)
        return table

    def export_tables(self, output_dir: Path, data: ExportData) -> Dict[str, Path]:
        """Write the DE table and one combined table per collection as CSV."""
        output_dir.mkdir(parents=True, exist_ok=True)
        written = {}
        de_path = output_dir / f"de_{data.comparison_name}_{data.variant}.csv"
        self.annotated_de_table(data).to_csv(de_path, index=False)
        written["de"] = de_path

        for name, result in data.enrichment.items():
            path = output_dir / f"enrichment_{name}_{data.variant}.csv"
            self.enrichment_table(result).to_csv(path, index=False)
            written[f"enrichment_{name}"] = path
            long_path = output_dir / f"enrichment_{name}_{data.variant}_by_method.csv"
            result.long_format().to_csv(long_path, index=False)
            written[f"enrichment_{name}_by_method"] = long_path
        return written

    def export_motif_lists(
        self, output_dir: Path, data: ExportData, top_n: int = 500
    ) -> Dict[str, Path]:
        """
        Gene lists for the external promoter-motif enrichment tool.

        One gene id per line: the top_n genes by DE p-value and the background
        of every gene that passed the expression filter.
        """
        motif_dir = output_dir / "motif_lists"
        motif_dir.mkdir(parents=True, exist_ok=True)
        top = data.de_result.top(top_n).index
        top_path = motif_dir / f"top{top_n}_{data.comparison_name}_{data.variant}.txt"
        background_path = motif_dir / f"background_{data.variant}.txt"
        top_path.write_text("\n".join(top) + "\n")
        background_path.write_text("\n".join(data.filtered_genes) + "\n")
        logger.info(
            f"Motif lists: {len(top)} top genes, {len(data.filtered_genes)} background genes"
        )
        return {"motif_top": top_path, "motif_background": background_path}

    def export_excel(self, filepath: Path, data: ExportData) -> None:
        """
        Export results to a multi-sheet Excel workbook.

        Sheets: DE_{comparison}, Sig_{comparison}, one per enrichment
        collection, RUV_factors (ruv variant), Samples, Settings.
        """
        with pd.ExcelWriter(filepath, engine="openpyxl") as writer:
            de_table = self.annotated_de_table(data)
            de_table.to_excel(
                writer, sheet_name=self.sanitize_sheet_name(f"DE_{data.comparison_name}"), index=False
            )
            de_table[de_table["significant"]].to_excel(
                writer, sheet_name=self.sanitize_sheet_name(f"Sig_{data.comparison_name}"), index=False
            )

            for name, result in data.enrichment.items():
                self.enrichment_table(result).to_excel(
                    writer, sheet_name=self.sanitize_sheet_name(f"GS_{name}"), index=False
                )

            if data.ruv_factors is not None:
                data.ruv_factors.to_excel(writer, sheet_name="RUV_factors")

            data.sample_table.to_excel(writer, sheet_name="Samples", index=False)
            self._write_settings_sheet(writer, data)

    def _write_settings_sheet(self, writer: pd.ExcelWriter, data: ExportData) -> None:
        """
        Write Settings sheet with analysis metadata.

        Key-value rows with sections: run information, thresholds, the full
        run configuration, and per-stage outcome counts.
        """
        settings_data = [
            ["Parameter", "Value"],
            ["Analysis Date", datetime.now().strftime("%Y-%m-%d %H:%M:%S")],
            ["Workflow Variant", data.variant],
            [
                "Python Version",
                f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            ],
        ]

        try:
            import pydeseq2

            settings_data.append(["PyDESeq2 Version", pydeseq2.__version__])
        except (ImportError, AttributeError):
            settings_data.append(["PyDESeq2 Version", "N/A"])

        settings_data.append(["---", "---"])
        settings_data.append(["Thresholds", ""])
        settings_data.append(["FDR Threshold", str(SIGNIFICANCE_THRESHOLD)])
        settings_data.append(["Exploratory FDR Threshold (plots)", str(EXPLORATORY_THRESHOLD)])

        settings_data.append(["---", "---"])
        settings_data.append(["Configuration", ""])
        for key, value in data.settings.items():
            if key == "collections":
                for collection in value:
                    settings_data.append(
                        [f"collection {collection['name']}", f"{collection['path']} ({collection['namespace']})"]
                    )
            else:
                settings_data.append([key, str(value)])

        settings_data.append(["---", "---"])
        settings_data.append(["Results", ""])
        if data.n_genes_before_filter is not None:
            settings_data.append(["Genes before filter", str(data.n_genes_before_filter)])
        settings_data.append(["Genes tested", str(len(data.filtered_genes))])
        settings_data.append(
            [
                f"DE {data.comparison_name} ({data.de_result.method})",
                f"{data.de_result.n_significant} significant genes",
            ]
        )
        for name, result in data.enrichment.items():
            settings_data.append(
                [
                    f"Gene sets {name}",
                    f"{int(result.table['significant'].sum())} significant of {len(result.table)} tested",
                ]
            )

        settings_df = pd.DataFrame(settings_data)
        settings_df.to_excel(writer, sheet_name="Settings", index=False, header=False)

    def gene_summary_table(self, data: ExportData) -> pd.DataFrame:
        """
        One row per requested gene: annotation, DE fields and raw counts.

        Raises:
            AnalysisInputError: A requested gene is not in the annotation or
                its name is ambiguous
        """
        if data.annotation is None:
            raise AnalysisInputError("Gene summaries need the gene annotation", stage=STAGE)
        rows = []
        for query in data.genes_of_interest:
            try:
                summary = get_gene_summary(
                    data.annotation, query, de_result=data.de_result, matrix=data.raw_matrix
                )
            except ValueError as e:
                raise AnalysisInputError(str(e), stage=STAGE, gene_id=query) from e
            if summary is None:
                raise AnalysisInputError(
                    f"Gene '{query}' is not in the annotation", stage=STAGE, gene_id=query
                )
            rows.append(summary)
        return pd.DataFrame(rows).reset_index(drop=True)

    def run_summary(self, data: ExportData) -> Dict[str, Any]:
        """Plain-JSON summary of the run."""
        return {
            "analysis_date": datetime.now().isoformat(timespec="seconds"),
            "variant": data.variant,
            "comparison": data.comparison_name,
            "de_method": data.de_result.method,
            "genes_before_filter": data.n_genes_before_filter,
            "genes_tested": len(data.filtered_genes),
            "significant_genes": data.de_result.n_significant,
            "gene_sets": {
                name: {
                    "tested": int(len(result.table)),
                    "significant": sorted(result.significant_sets().index.tolist()),
                    "exploratory": int(result.table["exploratory"].sum()),
                }
                for name, result in data.enrichment.items()
            },
            "settings": data.settings,
        }

    def export_figure(self, fig: go.Figure, filepath: Path, format: str = "html", scale: int = 3) -> None:
        """
        Export Plotly figure.

        html is written by plotly itself; png/svg/pdf need the kaleido engine.
        """
        if format == "html":
            fig.write_html(str(filepath), include_plotlyjs="cdn")
        else:
            fig.write_image(str(filepath), format=format, scale=scale)

    def export_all(self, output_dir, data: ExportData, top_n: int = 500) -> Dict[str, Path]:
        """Write every output of a run; returns name -> path."""
        output_dir = Path(output_dir)
        written = self.export_tables(output_dir, data)
        written.update(self.export_motif_lists(output_dir, data, top_n=top_n))

        workbook = output_dir / f"results_{data.variant}.xlsx"
        self.export_excel(workbook, data)
        written["workbook"] = workbook

        summary_path = output_dir / f"summary_{data.variant}.json"
        with open(summary_path, "w") as f:
            json.dump(self.run_summary(data), f, indent=2, default=str)
        written["summary"] = summary_path

        if data.genes_of_interest:
            genes_path = output_dir / f"genes_of_interest_{data.variant}.csv"
            self.gene_summary_table(data).to_csv(genes_path, index=False)
            written["genes_of_interest"] = genes_path

        if data.figures:
            figure_dir = output_dir / "figures"
            figure_dir.mkdir(parents=True, exist_ok=True)
            for name, fig in data.figures.items():
                path = figure_dir / f"{name}_{data.variant}.html"
                self.export_figure(fig, path)
                written[f"figure_{name}"] = path

        logger.info(f"Wrote {len(written)} result files to {output_dir}")
        return written
