"""
Utility modules for the RNA-seq variant calling pipeline.
"""

from .logging import (
    setup_logging,
    PipelineLogger,
    PerformanceMonitor,
    log_command,
    log_file_operation,
    log_error,
    format_paths,
)

__all__ = [
    "setup_logging",
    "PipelineLogger",
    "PerformanceMonitor",
    "log_command",
    "log_file_operation",
    "log_error",
    "format_paths",
]
