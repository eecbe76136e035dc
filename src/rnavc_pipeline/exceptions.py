"""
Exceptions raised by the RNA-seq variant calling pipeline.
"""

from pathlib import Path
from typing import List, Optional


class PipelineError(RuntimeError):
    """Base class for errors raised by the pipeline driver itself."""


class MissingReferenceError(PipelineError):
    """One or more reference bundle files are absent."""

    def __init__(self, missing: List[Path]):
        self.missing = list(missing)
        super().__init__(
            "Missing reference files:\n" +
            "\n".join(f"  - {p}" for p in self.missing)
        )


class MissingInputError(PipelineError):
    """Stage inputs that no earlier stage produces are absent."""

    def __init__(self, missing: List[Path], stage: Optional[str] = None):
        self.missing = list(missing)
        self.stage = stage
        where = f" for stage '{stage}'" if stage else ""
        super().__init__(
            f"Missing input files{where}:\n" +
            "\n".join(f"  - {p}" for p in self.missing)
        )


class ArtifactHandoffError(PipelineError):
    """A stage does not consume the artifact produced by the stage before it."""


class UnknownStageError(PipelineError):
    """A stage name is not part of the stage catalogue."""


class StageTimeoutError(PipelineError):
    """An external tool did not exit within the configured timeout."""

    def __init__(self, stage: str, timeout: float):
        self.stage = stage
        self.timeout = timeout
        super().__init__(f"Stage '{stage}' timed out after {timeout} seconds")
