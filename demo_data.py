"""
Demo dataset generator for the sorl1 W1818* workflow.

Simulates a small zebrafish brain RNA-seq experiment with a known answer:
12 fish (6 WT, 6 het, sexes balanced within genotype), negative-binomial
gene counts split across transcripts, sample-specific GC-content bias and
one engineered gene expressed 2x higher in het fish.

The dataset can be used in memory (tests) or written to disk as a complete
project directory (sample sheet, annotation, kallisto-style abundance files,
gene-set collections and a YAML config) for the command-line demo.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple
import logging
import numpy as np
import pandas as pd
import yaml

from count_matrix import CountMatrix, aggregate_to_genes, make_count_matrix
from gene_annotation import GeneAnnotation, build_gene_annotation
from sample_metadata import SampleMetadata, parse_sample_table

logger = logging.getLogger(__name__)

N_DEMO_GENES = 600

# Gene expressed 2x higher in het fish
ENGINEERED_GENE = "ENSDARG00000010007"
ENGINEERED_FOLD = 2.0

# Members of "demo_upregulated" are shifted up by this factor in het fish
SHIFTED_FOLD = 1.5

# Transcript present in every abundance file but absent from the annotation
SPIKE_IN_TRANSCRIPT = "ERCC-00002"


@dataclass(frozen=True)
class DemoDataset:
    """Raw inputs of the simulated experiment plus the planted effects."""

    sample_table: pd.DataFrame  # one row per sample, spreadsheet headers
    transcripts: pd.DataFrame  # transcript-level annotation table
    transcript_counts: pd.DataFrame  # versioned transcript ids x samples, estimated counts
    gene_sets: Dict[str, List[str]]  # gene_id namespace
    entrez_set: List[str]  # one gene list in the Entrez namespace
    engineered_gene: str
    shifted_genes: List[str]

    @property
    def changed_genes(self) -> List[str]:
        return [self.engineered_gene] + list(self.shifted_genes)


def _gene_id(i: int) -> str:
    return f"ENSDARG{10000 + i:011d}"


def _sample_table() -> pd.DataFrame:
    rows = []
    for i in range(12):
        genotype = "WT" if i < 6 else "het"
        sex = "F" if i % 2 == 0 else "M"
        rows.append(
            {
                "fish_id": f"F{i + 1:02d}",
                "sample_name": f"S{i + 1:02d}",
                "sex": sex,
                "genotype": genotype,
                "group": f"{genotype}_{sex}",
                "lane": "L1" if i % 3 else "L2",
                "short_name": f"{genotype}{i % 6 + 1}{sex}",
            }
        )
    return pd.DataFrame(rows)


def load_demo_dataset(n_genes: int = N_DEMO_GENES, seed: int = 42) -> DemoDataset:
    """
    Generate the demo experiment.

    Returns:
        DemoDataset with:
        - 12 samples S01-S12 (S01-S06 WT, S07-S12 het; F/M alternating)
        - n_genes genes, 1-3 transcripts each, GC fraction and length per transcript
        - ENGINEERED_GENE (mean 2000, dispersion 0.005) at 2x in het;
          20 "demo_upregulated" genes at 1.5x in het
        - Gene-wise dispersion 0.02 + 2 / mean (log-normal jitter)
        - Reproducible for a given seed
    """
    rng = np.random.default_rng(seed)
    samples = _sample_table()
    is_het = (samples["genotype"] == "het").values
    gene_ids = [_gene_id(i) for i in range(n_genes)]

    base_mean = rng.lognormal(mean=5.5, sigma=1.2, size=n_genes)
    engineered_idx = gene_ids.index(ENGINEERED_GENE)
    base_mean[engineered_idx] = 2000.0
    gc = np.clip(rng.normal(0.42, 0.05, n_genes), 0.3, 0.6)
    length = np.round(rng.lognormal(mean=np.log(2000), sigma=0.5, size=n_genes)).astype(int)
    dispersion = (0.02 + 2.0 / base_mean) * rng.lognormal(0.0, 0.3, n_genes)
    # engineered gene: average GC, low dispersion, no jitter
    gc[engineered_idx] = 0.42
    dispersion[engineered_idx] = 0.005

    candidates = [i for i in range(n_genes) if i != engineered_idx and base_mean[i] > 100]
    shifted_idx = sorted(int(i) for i in rng.choice(candidates, size=20, replace=False))

    fold = np.ones((n_genes, len(samples)))
    fold[engineered_idx, is_het] = ENGINEERED_FOLD
    fold[np.ix_(shifted_idx, np.flatnonzero(is_het))] = SHIFTED_FOLD

    lib_factor = rng.uniform(0.8, 1.25, len(samples))
    gc_slope = rng.uniform(-3.0, 3.0, len(samples))
    gc_bias = np.exp(np.outer(gc - gc.mean(), gc_slope))
    mu = base_mean[:, None] * lib_factor[None, :] * gc_bias * fold

    size = 1.0 / dispersion[:, None]
    gene_counts = rng.negative_binomial(size, size / (size + mu))

    tx_rows = []
    tx_count_rows = []
    tx_number = 100000
    for i, gene_id in enumerate(gene_ids):
        n_tx = int(rng.integers(1, 4))
        shares = rng.dirichlet(np.full(n_tx, 2.0))
        split = np.array([rng.multinomial(c, shares) for c in gene_counts[i]]).T
        for t in range(n_tx):
            tx_id = f"ENSDART{tx_number:011d}"
            tx_number += 1
            tx_rows.append(
                {
                    "gene_id": gene_id,
                    "transcript_id": tx_id,
                    "gene_name": "demo2x" if i == engineered_idx else f"zgc:{100000 + i}",
                    "chromosome": str(i % 25 + 1),
                    "strand": "+" if i % 2 else "-",
                    "description": "simulated gene",
                    "transcript_type": "protein_coding",
                    "gc_content": round(float(np.clip(gc[i] + rng.normal(0, 0.01), 0, 1)), 4),
                    "length": int(max(200, length[i] * rng.uniform(0.7, 1.3))),
                    "entrez_ids": str(550000 + i),
                }
            )
            tx_count_rows.append(pd.Series(split[t], index=samples["sample_name"], name=f"{tx_id}.1"))

    transcript_counts = pd.DataFrame(tx_count_rows).astype(float)
    transcript_counts.loc[SPIKE_IN_TRANSCRIPT] = rng.poisson(50, len(samples)).astype(float)

    shifted = [gene_ids[i] for i in shifted_idx]
    background = [g for g in gene_ids if g not in shifted and g != ENGINEERED_GENE]
    gene_sets = {"demo_upregulated": shifted}
    for k in range(5):
        gene_sets[f"demo_random_{k + 1}"] = sorted(str(g) for g in rng.choice(background, size=25, replace=False))
    gene_sets["demo_large"] = sorted(str(g) for g in rng.choice(background, size=120, replace=False))

    entrez_set = [str(550000 + gene_ids.index(g)) for g in shifted[:12]]

    return DemoDataset(
        sample_table=samples,
        transcripts=pd.DataFrame(tx_rows),
        transcript_counts=transcript_counts,
        gene_sets=gene_sets,
        entrez_set=entrez_set,
        engineered_gene=ENGINEERED_GENE,
        shifted_genes=shifted,
    )


def demo_inputs(
    dataset: Optional[DemoDataset] = None,
) -> Tuple[SampleMetadata, GeneAnnotation, CountMatrix]:
    """Parsed metadata, gene annotation and unfiltered count matrix of the demo."""
    dataset = dataset or load_demo_dataset()
    metadata = parse_sample_table(dataset.sample_table)
    annotation = build_gene_annotation(dataset.transcripts)
    columns = [
        aggregate_to_genes(dataset.transcript_counts[s], annotation.tx2gene, s)
        for s in metadata.sample_names
    ]
    counts = pd.concat(columns, axis=1).reindex(annotation.genes.index).fillna(0.0)
    counts.index.name = "gene_id"
    return metadata, annotation, make_count_matrix(counts.round())


def write_demo_project(
    directory,
    dataset: Optional[DemoDataset] = None,
    variant: str = "base",
    permutations: int = 1000,
) -> Path:
    """
    Write the demo as a project directory and return its config path.

    Layout:
        samples.csv, annotation.tsv, quant/<sample>/abundance.tsv,
        gene_sets/demo_pathways.gmt, gene_sets/demo_entrez.txt, config.yaml
    """
    dataset = dataset or load_demo_dataset()
    root = Path(directory)
    (root / "gene_sets").mkdir(parents=True, exist_ok=True)

    dataset.sample_table.to_csv(root / "samples.csv", index=False)
    dataset.transcripts.to_csv(root / "annotation.tsv", sep="\t", index=False)

    tx_length = dataset.transcripts.set_index("transcript_id")["length"]
    for sample in dataset.sample_table["sample_name"]:
        est_counts = dataset.transcript_counts[sample]
        lengths = (
            tx_length.reindex(est_counts.index.str.replace(r"\.\d+$", "", regex=True))
            .fillna(1000)
            .values
        )
        eff_length = np.maximum(lengths - 180.0, 1.0)
        rate = est_counts.values / eff_length
        abundance = pd.DataFrame(
            {
                "target_id": est_counts.index,
                "length": lengths.astype(int),
                "eff_length": eff_length,
                "est_counts": est_counts.values,
                "tpm": rate / rate.sum() * 1e6,
            }
        )
        sample_dir = root / "quant" / sample
        sample_dir.mkdir(parents=True, exist_ok=True)
        abundance.to_csv(sample_dir / "abundance.tsv", sep="\t", index=False)

    with open(root / "gene_sets" / "demo_pathways.gmt", "w") as f:
        for name, genes in dataset.gene_sets.items():
            f.write("\t".join([name, "simulated"] + list(genes)) + "\n")
    with open(root / "gene_sets" / "demo_entrez.txt", "w") as f:
        f.write("\n".join(dataset.entrez_set) + "\n")

    n_genes = dataset.transcripts["gene_id"].nunique()
    config = {
        "metadata_path": "samples.csv",
        "annotation_path": "annotation.tsv",
        "quant_dir": "quant",
        "output_dir": "results",
        "variant": variant,
        "n_negative_controls": n_genes // 2,
        "prerank_permutations": permutations,
        "collections": [
            {"name": "demo_pathways", "path": "gene_sets/demo_pathways.gmt"},
            {
                "name": "demo_entrez",
                "path": "gene_sets/demo_entrez.txt",
                "namespace": "entrez",
                "format": "list",
            },
        ],
    }
    config_path = root / "config.yaml"
    with open(config_path, "w") as f:
        yaml.safe_dump(config, f, sort_keys=False)

    logger.info(f"Demo project written to {root}")
    return config_path


def get_demo_description() -> str:
    """Markdown description of the demo dataset."""
    return f"""# sorl1 W1818* demo dataset

## Design
- 12 fish: S01-S06 wild type, S07-S12 heterozygous W1818*
- Sexes alternate F/M, so each genotype has 3 females and 3 males
- {N_DEMO_GENES} genes with 1-3 transcripts each

## Planted effects
- `{ENGINEERED_GENE}` (demo2x): {ENGINEERED_FOLD:g}x in het (log2FC = 1)
- 20 genes of the `demo_upregulated` set: {SHIFTED_FOLD:g}x in het
- Every sample has its own GC-content bias slope

## Gene sets
- `demo_pathways.gmt`: demo_upregulated, five random 25-gene sets, one 120-gene set
- `demo_entrez.txt`: 12 of the shifted genes, as Entrez ids
"""
