"""
Configuration management for the RNA-seq variant calling pipeline.
"""

# Lazy import to avoid dependency issues
def get_pipeline_config():
    """Get the PipelineConfig class."""
    from .settings import PipelineConfig
    return PipelineConfig

__all__ = ["get_pipeline_config"]
