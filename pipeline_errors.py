"""
Exception types for the sorl1 RNA-seq workflow.

Any stage failure is fatal for the run. Each error records which stage raised
it and, when known, the gene or sample that triggered it, so the CLI can print
a single clear diagnostic before exiting.
"""

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for errors that halt the analysis run."""

    def __init__(
        self,
        message: str,
        stage: str,
        gene_id: Optional[str] = None,
        sample: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message: str = message
        self.stage: str = stage
        self.gene_id: Optional[str] = gene_id
        self.sample: Optional[str] = sample
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.describe())

    def describe(self) -> str:
        """Single-line diagnostic: stage, offending gene/sample, message."""
        parts = [f"[{self.stage}]"]
        if self.gene_id is not None:
            parts.append(f"gene={self.gene_id}")
        if self.sample is not None:
            parts.append(f"sample={self.sample}")
        parts.append(self.message)
        return " ".join(parts)


class AnalysisInputError(WorkflowError):
    """Malformed or inconsistent input (metadata, annotation, counts, gene sets)."""


class NormalizationError(WorkflowError):
    """GC/length normalization could not be fitted."""


class ModelFitError(WorkflowError):
    """A negative-binomial GLM fit failed or did not converge."""
