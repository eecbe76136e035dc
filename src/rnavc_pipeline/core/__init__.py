"""
Core pipeline modules for the RNA-seq variant calling pipeline.
"""

from .pipeline import Pipeline

# Import submodules
from . import layout
from . import stages
from . import runner

__all__ = [
    "Pipeline",
    "layout",
    "stages",
    "runner",
]
