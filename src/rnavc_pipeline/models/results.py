"""
Data models for stage and pipeline outcomes.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union
from pydantic import BaseModel, Field, computed_field, field_validator


class StageStatus(str, Enum):
    """Outcome of a single stage."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_RUN = "not_run"
    PLANNED = "planned"


class StageResult(BaseModel):
    """Outcome of one external stage."""

    name: str = Field(description="Stage name")
    tool: str = Field(description="External tool invoked by the stage")
    status: StageStatus = Field(description="Stage outcome")
    return_code: Optional[int] = Field(default=None, description="Exit status of the last command run")
    commands: List[str] = Field(default_factory=list, description="Command lines of the stage")
    outputs: List[str] = Field(default_factory=list, description="Artifacts the stage produces")
    attempts: int = Field(default=0, description="Number of command launches, retries included")
    started_at: Optional[datetime] = Field(default=None, description="Start time")
    duration_seconds: float = Field(default=0.0, description="Wall-clock duration")
    error_message: Optional[str] = Field(default=None, description="Why the stage failed")

    @field_validator('duration_seconds')
    @classmethod
    def validate_duration(cls, v):
        """Validate that the duration is non-negative."""
        if v < 0:
            raise ValueError("Duration must be non-negative")
        return v

    @property
    def ok(self) -> bool:
        """A stage is fine when it succeeded, was skipped as done, or was only planned."""
        return self.status in (StageStatus.SUCCESS, StageStatus.SKIPPED, StageStatus.PLANNED)


class PipelineResult(BaseModel):
    """Aggregate result of running the pipeline for one sample."""

    sample_id: str = Field(description="Sample identifier")
    working_root: Path = Field(description="Working root directory")
    stages: List[StageResult] = Field(default_factory=list, description="Per-stage results in run order")
    dry_run: bool = Field(default=False, description="Whether commands were only planned")
    processing_time: float = Field(default=0.0, description="Total processing time in seconds")
    pipeline_version: str = Field(description="Pipeline version used")

    @computed_field
    @property
    def succeeded(self) -> bool:
        """True only when every stage ended well."""
        return all(stage.ok for stage in self.stages)

    @property
    def failed_stage(self) -> Optional[StageResult]:
        """First stage that failed, if any."""
        for stage in self.stages:
            if stage.status == StageStatus.FAILED:
                return stage
        return None

    @computed_field
    @property
    def exit_code(self) -> int:
        """Exit status for the whole run: 0, or the first failing tool's code."""
        failed = self.failed_stage
        if failed is None:
            return 0
        # A failure without a usable code still has to read as failure
        return failed.return_code if failed.return_code else 1

    @computed_field
    @property
    def failed_stage_name(self) -> Optional[str]:
        """Name of the first failed stage, saved with the result."""
        failed = self.failed_stage
        return failed.name if failed else None

    def to_dict(self) -> Dict:
        """Convert the result to dictionary format."""
        return self.model_dump(mode="json")

    def to_json(self) -> str:
        """Convert the result to a JSON string."""
        return self.model_dump_json(indent=2)

    def get_summary_stats(self) -> Dict[str, Union[str, int, float, bool]]:
        """Get summary statistics for the run."""
        counts = {status: 0 for status in StageStatus}
        for stage in self.stages:
            counts[stage.status] += 1
        failed = self.failed_stage
        return {
            "sample_id": self.sample_id,
            "succeeded": self.succeeded,
            "exit_code": self.exit_code,
            "failed_stage": failed.name if failed else "",
            "stages_total": len(self.stages),
            "stages_succeeded": counts[StageStatus.SUCCESS],
            "stages_skipped": counts[StageStatus.SKIPPED],
            "stages_failed": counts[StageStatus.FAILED],
            "stages_not_run": counts[StageStatus.NOT_RUN],
            "processing_time": round(self.processing_time, 2),
        }
