"""
Command-line entry point.

    rnaseq-workflow CONFIG.yaml [--variant base|ruv] [--output DIR] [--gene ID_OR_NAME]
    rnaseq-workflow --demo DIR [--variant base|ruv]

Runs the workflow top to bottom and writes tables, gene lists, the Excel
workbook, the JSON summary and figures to the output directory. Any stage
failure is logged once and the process exits with status 1.
"""

from pathlib import Path
from typing import List, Optional
import argparse
import logging
import sys

from analysis_config import WORKFLOW_VARIANTS, load_config
from demo_data import get_demo_description, write_demo_project
from export_engine import ExportData, ExportEngine
from pipeline import run_pipeline
from pipeline_errors import WorkflowError
from visualizations import create_workflow_figures

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rnaseq-workflow",
        description="sorl1 W1818* RNA-seq differential expression and gene-set enrichment",
    )
    parser.add_argument(
        "config",
        nargs="?",
        help="YAML run configuration",
    )
    parser.add_argument(
        "--variant",
        choices=WORKFLOW_VARIANTS,
        default=None,
        help="Workflow variant (overrides the config file)",
    )
    parser.add_argument(
        "--output", "-o",
        default=None,
        help="Output directory (overrides the config file)",
    )
    parser.add_argument(
        "--demo",
        metavar="DIR",
        default=None,
        help="Write the simulated demo project to DIR and run it",
    )
    parser.add_argument(
        "--gene",
        action="append",
        default=[],
        metavar="ID_OR_NAME",
        help="Report and plot a gene of interest (repeatable)",
    )
    parser.add_argument(
        "--no-figures",
        action="store_true",
        help="Skip figure rendering",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.config is None and args.demo is None:
        parser.error("a config file or --demo DIR is required")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config_path = args.config
        if args.demo is not None:
            config_path = write_demo_project(args.demo, variant=args.variant or "base")
            logger.info(get_demo_description())

        config = load_config(
            config_path,
            overrides={
                "variant": args.variant,
                "output_dir": str(Path(args.output).resolve()) if args.output else None,
            },
        )
        logging.getLogger().setLevel(logging.DEBUG if args.verbose else config.log_level)

        ctx = run_pipeline(config)
        engine = ExportEngine()
        data = ExportData.from_context(ctx, genes=args.gene)
        genes = engine.gene_summary_table(data)
        for _, row in genes.iterrows():
            status = f"logFC={row['logFC']:.2f} FDR={row['FDR']:.2e}" if row["tested"] else "not tested"
            logger.info(f"{row['gene_id']} ({row['gene_name']}): {status}")
        if not args.no_figures:
            data.figures = create_workflow_figures(ctx, gene_ids=genes.get("gene_id", []))
        written = engine.export_all(config.output_dir, data, top_n=config.motif_top_n)
    except WorkflowError as e:
        logger.error(f"Workflow failed: {e.describe()}", exc_info=True)
        return 1
    except FileNotFoundError as e:
        logger.error(str(e))
        return 1

    for name, path in written.items():
        logger.debug(f"  {name}: {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
