"""
Global pytest configuration and fixtures.
"""

import sys
from pathlib import Path

import pytest
import structlog

# Add src to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from rnavc_pipeline.config.settings import PipelineConfig  # noqa: E402
from rnavc_pipeline.core.layout import SampleLayout  # noqa: E402


SAMPLE_ID = "sample01"


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep RNAVC_PIPELINE_* variables of the host out of the tests."""
    import os
    for key in list(os.environ):
        if key.upper().startswith("RNAVC_PIPELINE_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def logger():
    """Create a test logger."""
    return structlog.get_logger()


@pytest.fixture
def annotation_dir(tmp_path):
    """A complete reference bundle laid out like the default annotation directory."""
    root = tmp_path / "Annotation"
    (root / "human_variants").mkdir(parents=True)
    (root / "STAR_hg38_humanIndex").mkdir()
    (root / "humandb").mkdir()
    for name in (
        "Homo_sapiens.GRCh38.dna.primary_assembly.fa",
        "Homo_sapiens.GRCh38.105.gtf",
        "human_variants/Homo_sapiens_assembly38.dbsnp138.vcf",
        "human_variants/Homo_sapiens_assembly38.known_indels.vcf.gz",
    ):
        (root / name).write_text("placeholder\n")
    return root


@pytest.fixture
def config(annotation_dir):
    """Pipeline configuration pointing at the test reference bundle."""
    return PipelineConfig(annotation_dir=annotation_dir)


@pytest.fixture
def working_root(tmp_path):
    """Working root with the raw reads of the test sample in place."""
    root = tmp_path / "proj"
    raw_dir = root / "raw_data" / SAMPLE_ID
    raw_dir.mkdir(parents=True)
    for mate in (1, 2):
        (raw_dir / f"{SAMPLE_ID}_{mate}.fq.gz").write_bytes(b"@r\nACGT\n+\nIIII\n")
    return root


@pytest.fixture
def layout(working_root):
    """Layout of the test sample."""
    return SampleLayout(sample_id=SAMPLE_ID, working_root=working_root)
