"""
RNA-seq Variant Calling Pipeline

Runs the GATK RNA-seq short variant discovery chain (FastQC, Trim Galore,
STAR, Picard, GATK, ANNOVAR, MultiQC) for one sample at a time.
"""

__version__ = "1.0.0"
__author__ = "Bioinformatics Team"
__email__ = "team@example.com"

# Lazy imports to avoid dependency issues
def get_pipeline():
    """Get the Pipeline class."""
    from .core.pipeline import Pipeline
    return Pipeline

def get_pipeline_config():
    """Get the PipelineConfig class."""
    from .config.settings import PipelineConfig
    return PipelineConfig

def get_pipeline_result():
    """Get the PipelineResult class."""
    from .models.results import PipelineResult
    return PipelineResult

__all__ = ["get_pipeline", "get_pipeline_config", "get_pipeline_result"]
