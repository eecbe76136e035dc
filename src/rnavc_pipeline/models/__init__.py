"""
Data models for the RNA-seq variant calling pipeline.
"""

from .references import ReferenceBundle
from .results import StageStatus, StageResult, PipelineResult

__all__ = [
    "ReferenceBundle",
    "StageStatus",
    "StageResult",
    "PipelineResult",
]
