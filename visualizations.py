"""
Interactive visualizations for the workflow using Plotly.

Provides volcano and MA plots of the DE table, PCA plots (with the RUV
before/after diagnostic), a dot plot of combined gene-set results, the
GC/length normalization comparison and single-gene expression plots.
"""

from typing import Dict, Iterable, Optional
import numpy as np
import pandas as pd
import plotly.express as px
import plotly.graph_objects as go
from plotly.subplots import make_subplots
from sklearn.decomposition import PCA

from analysis_config import EXPLORATORY_THRESHOLD, SIGNIFICANCE_THRESHOLD
from count_matrix import CountMatrix, cpm
from cqn_normalization import CQNResult
from gene_annotation import GeneAnnotation
from unwanted_variation import RUVResult

DIRECTION_COLORS = {"Up": "red", "Down": "blue", "NS": "lightgray"}


def _labelled(de_table: pd.DataFrame, annotation: Optional[GeneAnnotation]) -> pd.DataFrame:
    df = de_table.copy()
    if annotation is not None:
        names = annotation.genes["gene_name"].reindex(df.index).fillna("")
        df["label"] = [n if n else g for g, n in zip(df.index, names)]
    else:
        df["label"] = df.index
    df["gene_id"] = df.index
    return df


def _classify(df: pd.DataFrame, fdr_threshold: float, lfc_threshold: float) -> pd.Series:
    up = (df["FDR"] < fdr_threshold) & (df["logFC"] > lfc_threshold)
    down = (df["FDR"] < fdr_threshold) & (df["logFC"] < -lfc_threshold)
    return pd.Series(np.where(up, "Up", np.where(down, "Down", "NS")), index=df.index)


def create_volcano_plot(
    de_table: pd.DataFrame,
    annotation: Optional[GeneAnnotation] = None,
    fdr_threshold: float = SIGNIFICANCE_THRESHOLD,
    lfc_threshold: float = 0.0,
    top_n_labels: int = 10,
) -> go.Figure:
    """
    Create interactive volcano plot from DE results.

    Args:
        de_table: DETestResult.table (index gene_id; logFC, PValue, FDR)
        annotation: Optional, for gene-name labels
        fdr_threshold: FDR cut-off for coloring
        lfc_threshold: |logFC| cut-off for coloring (default 0: FDR only)
        top_n_labels: Number of significant genes to label

    Returns:
        Plotly Figure object
    """
    if de_table is None or de_table.empty:
        raise ValueError("Cannot create volcano plot: DE table is empty or None.")
    missing = [c for c in ("logFC", "PValue", "FDR") if c not in de_table.columns]
    if missing:
        raise ValueError(f"Cannot create volcano plot: missing required columns {missing}.")

    df = _labelled(de_table.dropna(subset=["PValue", "logFC"]), annotation)
    df["-log10_p"] = -np.log10(df["PValue"].clip(lower=1e-300))
    df["significance"] = _classify(df, fdr_threshold, lfc_threshold)

    fig = px.scatter(
        df,
        x="logFC",
        y="-log10_p",
        color="significance",
        hover_name="label",
        hover_data={"gene_id": True, "logFC": ":.2f", "FDR": ":.2e", "-log10_p": False, "significance": False},
        color_discrete_map=DIRECTION_COLORS,
        labels={"logFC": "log₂(Fold Change)", "-log10_p": "-log₁₀(P)"},
    )

    significant = df[df["FDR"] < fdr_threshold]
    if not significant.empty:
        fig.add_hline(y=significant["-log10_p"].min(), line_dash="dash", line_color="gray")
    if lfc_threshold > 0:
        fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="gray")
        fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="gray")

    if top_n_labels > 0 and not significant.empty:
        top_genes = significant.nsmallest(top_n_labels, "PValue")
        fig.add_trace(
            go.Scatter(
                x=top_genes["logFC"],
                y=top_genes["-log10_p"],
                mode="text",
                text=top_genes["label"],
                textposition="top center",
                textfont=dict(size=9),
                showlegend=False,
                hoverinfo="skip",
            )
        )

    fig.update_layout(title="Volcano Plot", showlegend=True)
    return fig


def create_ma_plot(
    de_table: pd.DataFrame,
    annotation: Optional[GeneAnnotation] = None,
    fdr_threshold: float = SIGNIFICANCE_THRESHOLD,
) -> go.Figure:
    """MA plot: average log2 CPM against log2 fold change."""
    if de_table is None or de_table.empty:
        raise ValueError("Cannot create MA plot: DE table is empty or None.")

    df = _labelled(de_table.dropna(subset=["logFC", "logCPM", "FDR"]), annotation)
    df["significance"] = _classify(df, fdr_threshold, 0.0)

    fig = px.scatter(
        df,
        x="logCPM",
        y="logFC",
        color="significance",
        hover_name="label",
        hover_data={"gene_id": True, "logFC": ":.2f", "FDR": ":.2e", "significance": False},
        color_discrete_map=DIRECTION_COLORS,
        labels={"logCPM": "Average log₂ CPM", "logFC": "log₂(Fold Change)"},
    )
    fig.add_hline(y=0, line_color="black", line_width=0.5)
    fig.update_layout(title="MA Plot", showlegend=True)
    return fig


def _pca_frame(log_expression: pd.DataFrame, sample_groups: Dict[str, str]):
    """PCA of a genes x samples matrix; returns (frame, explained variance ratios)."""
    values = log_expression.T
    pca = PCA(n_components=min(2, values.shape[0]))
    scores = pca.fit_transform(values.values)
    frame = pd.DataFrame(scores[:, :2], columns=["PC1", "PC2"], index=values.index)
    frame["group"] = [sample_groups.get(s, "Unknown") for s in frame.index]
    frame["sample"] = frame.index
    return frame, pca.explained_variance_ratio_


def create_pca_plot(
    log_expression: pd.DataFrame, sample_groups: Dict[str, str], title: str = "PCA Plot"
) -> go.Figure:
    """
    Create PCA plot for sample clustering visualization.

    Args:
        log_expression: genes x samples (log2 CPM)
        sample_groups: sample_name -> group label used for coloring

    Returns:
        Plotly Figure object
    """
    if log_expression is None or log_expression.empty:
        raise ValueError("Cannot create PCA plot: expression matrix is empty or None.")
    if log_expression.shape[1] < 3:
        raise ValueError(
            f"Cannot create PCA plot: requires at least 3 samples, got {log_expression.shape[1]}."
        )

    frame, ratios = _pca_frame(log_expression, sample_groups)
    fig = px.scatter(
        frame,
        x="PC1",
        y="PC2",
        color="group",
        hover_name="sample",
        labels={
            "PC1": f"PC1 ({ratios[0] * 100:.1f}%)",
            "PC2": f"PC2 ({ratios[1] * 100:.1f}%)",
        },
    )
    fig.update_layout(title=title, showlegend=True)
    return fig


def create_ruv_diagnostic_plot(
    matrix: CountMatrix, ruv: RUVResult, sample_groups: Dict[str, str]
) -> go.Figure:
    """
    Side-by-side PCA of log2 CPM before and after removing the RUV factors.

    The corrected counts are only used here; DE uses the factors as covariates.
    """
    before = matrix.cpm(log=True)
    after = cpm(ruv.normalized_counts, ruv.normalized_counts.sum(axis=0), log=True)

    fig = make_subplots(rows=1, cols=2, subplot_titles=["Before RUV", "After RUV"])
    colors = px.colors.qualitative.Set2
    groups = sorted(set(sample_groups.values()))
    group_color = {g: colors[i % len(colors)] for i, g in enumerate(groups)}

    for col, log_expression in enumerate([before, after], start=1):
        frame, ratios = _pca_frame(log_expression, sample_groups)
        for group in groups:
            subset = frame[frame["group"] == group]
            fig.add_trace(
                go.Scatter(
                    x=subset["PC1"],
                    y=subset["PC2"],
                    mode="markers",
                    name=group,
                    legendgroup=group,
                    showlegend=col == 1,
                    marker=dict(color=group_color[group], size=10),
                    text=subset["sample"],
                    hovertemplate="<b>%{text}</b><extra></extra>",
                ),
                row=1,
                col=col,
            )
        fig.update_xaxes(title_text=f"PC1 ({ratios[0] * 100:.1f}%)", row=1, col=col)
        fig.update_yaxes(title_text=f"PC2 ({ratios[1] * 100:.1f}%)", row=1, col=col)

    fig.update_layout(title="Unwanted Variation Diagnostic", height=500)
    return fig


def create_enrichment_dotplot(
    combined_table: pd.DataFrame,
    top_n: int = 20,
    title: str = "Gene Set Enrichment",
    fdr_threshold: float = EXPLORATORY_THRESHOLD,
) -> go.Figure:
    """
    Create enrichment dot plot of combined gene-set results.

    Only sets below the exploratory FDR cut-off are drawn.

    Args:
        combined_table: CombinedEnrichmentResult.table (index set name;
            NGenes, Direction, HMP, HMP_FDR)
        top_n: Number of sets to display
        title: Plot title

    Returns:
        Plotly Figure object
    """
    df = None
    if combined_table is not None and not combined_table.empty:
        df = combined_table[combined_table["HMP_FDR"] < fdr_threshold]
    if df is None or df.empty:
        fig = go.Figure()
        fig.update_layout(
            title=title,
            annotations=[dict(
                text="No gene sets below the exploratory FDR cut-off",
                xref="paper", yref="paper",
                x=0.5, y=0.5, showarrow=False, font=dict(size=16)
            )]
        )
        return fig

    df = df.sort_values("HMP").head(top_n).copy()
    df["-log10_fdr"] = -np.log10(df["HMP_FDR"].astype(float).clip(lower=1e-300))
    df["term_display"] = [x[:60] + "..." if len(x) > 60 else x for x in df.index.astype(str)]
    df["signed"] = np.where(df["Direction"] == "Up", 1.0, -1.0) * df["-log10_fdr"]
    df = df.sort_values("signed", ascending=True)

    fig = go.Figure()
    fig.add_trace(go.Scatter(
        x=df["signed"],
        y=df["term_display"],
        mode="markers",
        marker=dict(
            size=df["NGenes"].clip(lower=5, upper=40),
            color=np.where(df["Direction"] == "Up", "red", "blue"),
            line=dict(width=1, color="DarkSlateGrey"),
        ),
        customdata=np.stack([df["NGenes"], df["HMP_FDR"]], axis=1),
        hovertemplate=(
            "<b>%{y}</b><br>"
            "Genes: %{customdata[0]}<br>"
            "HMP FDR: %{customdata[1]:.2e}<extra></extra>"
        ),
    ))
    fig.add_vline(x=0, line_color="black", line_width=0.5)

    fig.update_layout(
        title=title,
        xaxis_title="Direction × -log₁₀(HMP FDR)",
        yaxis_title="",
        height=max(400, len(df) * 25 + 100),
        margin=dict(l=300),
        showlegend=False,
    )
    return fig


def create_gene_expression_plot(
    matrix: CountMatrix,
    gene_id: str,
    sample_groups: Dict[str, str],
    annotation: Optional[GeneAnnotation] = None,
    plot_type: str = "box",
) -> go.Figure:
    """
    Box or violin plot of one gene's log2 CPM across groups.

    The gene is looked up by stable gene id, never by row position.
    """
    if gene_id not in matrix.gene_ids:
        raise ValueError(f"Gene '{gene_id}' is not in the count matrix")

    values = matrix.cpm(log=True).loc[gene_id]
    label = gene_id
    if annotation is not None and gene_id in annotation:
        name = annotation.record(gene_id).gene_name
        label = f"{name} ({gene_id})" if name else gene_id

    colors = px.colors.qualitative.Set2
    groups = sorted(set(sample_groups.get(s, "Unknown") for s in values.index))

    fig = go.Figure()
    for i, group in enumerate(groups):
        samples = [s for s in values.index if sample_groups.get(s, "Unknown") == group]
        color = colors[i % len(colors)]
        trace = go.Violin if plot_type == "violin" else go.Box
        kwargs = dict(points="all") if plot_type == "violin" else dict(boxpoints="all", jitter=0.3)
        fig.add_trace(trace(
            y=values[samples].values,
            name=group,
            marker_color=color,
            line_color=color,
            text=samples,
            hovertemplate="<b>%{text}</b><br>log2 CPM: %{y:.2f}<extra></extra>",
            **kwargs,
        ))

    fig.update_layout(
        title=f"Expression of {label}",
        xaxis_title="Group",
        yaxis_title="log2 CPM",
        showlegend=True,
    )
    return fig


def create_normalization_comparison_plot(
    cqn: CQNResult, sample_groups: Dict[str, str]
) -> go.Figure:
    """
    Per-sample distributions of log2 RPM before and after GC/length correction.
    """
    fig = make_subplots(
        rows=1, cols=2,
        subplot_titles=["Observed log2 RPM", "GC/length corrected"],
        shared_yaxes=True,
    )

    colors = px.colors.qualitative.Set2
    groups = sorted(set(sample_groups.values()))
    group_color = {g: colors[i % len(colors)] for i, g in enumerate(groups)}

    for col, values in enumerate([cqn.y, cqn.y_normalized], start=1):
        for sample in values.columns:
            group = sample_groups.get(sample, "Unknown")
            fig.add_trace(
                go.Box(
                    y=values[sample].values,
                    name=sample,
                    marker_color=group_color.get(group, "gray"),
                    legendgroup=group,
                    legendgrouptitle_text=group,
                    showlegend=col == 1,
                    hovertemplate="Sample: " + sample + "<br>Value: %{y:.2f}<extra></extra>",
                ),
                row=1, col=col,
            )

    fig.update_layout(title="Normalization Comparison", height=500, showlegend=True)
    return fig


def create_workflow_figures(ctx, gene_ids: Iterable[str] = ()) -> Dict[str, go.Figure]:
    """
    Standard figure set of a finished run; the RUV diagnostic only for the ruv variant.

    gene_ids adds one expression plot per gene; genes removed by the filter
    have no plot.
    """
    groups = {r.sample_name: r.group for r in ctx.metadata.records}
    genotypes = ctx.metadata.genotypes()
    figures = {
        "volcano": create_volcano_plot(ctx.de_fit.result.table, ctx.annotation),
        "ma": create_ma_plot(ctx.de_fit.result.table, ctx.annotation),
        "pca": create_pca_plot(ctx.matrix.cpm(log=True), groups),
        "normalization": create_normalization_comparison_plot(ctx.cqn, genotypes),
    }
    if ctx.ruv is not None:
        figures["ruv_pca"] = create_ruv_diagnostic_plot(ctx.matrix, ctx.ruv, genotypes)
    for name, result in ctx.enrichment.items():
        figures[f"enrichment_{name}"] = create_enrichment_dotplot(
            result.table, title=f"Gene Set Enrichment: {name}"
        )
    top = ctx.de_fit.result.top(1)
    if not top.empty:
        figures["top_gene"] = create_gene_expression_plot(
            ctx.matrix, top.index[0], genotypes, ctx.annotation
        )
    for gene_id in gene_ids:
        if gene_id in ctx.matrix.gene_ids:
            figures[f"gene_{gene_id}"] = create_gene_expression_plot(
                ctx.matrix, gene_id, genotypes, ctx.annotation
            )
    return figures
