"""Pipeline — ordered worker pool, retries, reassembly and commit watermark."""

from __future__ import annotations

from .context import ProcessingContext, get_processing_context
from .handler import FunctionHandler
from .pipeline import Outcome, PipelineStats, ProcessingPipeline
from .sweeper import SweeperWorker

__all__ = [
    "FunctionHandler",
    "Outcome",
    "PipelineStats",
    "ProcessingContext",
    "ProcessingPipeline",
    "SweeperWorker",
    "get_processing_context",
]
