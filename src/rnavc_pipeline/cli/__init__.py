"""
Command-line interface for the RNA-seq variant calling pipeline.
"""

from .main import cli, main

__all__ = ["cli", "main"]
