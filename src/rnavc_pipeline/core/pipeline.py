"""
Main pipeline class for the RNA-seq variant calling pipeline.
"""

import time
from pathlib import Path
from typing import List, Optional, Dict, Any, Set
import structlog
from pydantic import ValidationError

from .. import __version__
from ..config.settings import PipelineConfig
from ..exceptions import MissingInputError, MissingReferenceError, PipelineError
from ..models.results import PipelineResult, StageResult, StageStatus
from ..utils import PipelineLogger, PerformanceMonitor, log_error, log_file_operation, format_paths
from .layout import SampleLayout
from .runner import outputs_exist, run_stage
from .stages import Stage, build_stages, select_stages


class Pipeline:
    """Runs the RNA-seq variant calling stages for one sample at a time."""

    def __init__(self, config: PipelineConfig, logger: structlog.BoundLogger):
        """
        Initialize the pipeline.

        Args:
            config: Pipeline configuration
            logger: Structured logger instance
        """
        self.config = config
        self.references = config.get_reference_bundle()

        self.logger = logger
        self.monitor: PerformanceMonitor = PerformanceMonitor(logger)

        self.logger.info("Pipeline initialized",
                         config_summary=self._get_config_summary())

    def layout(self, sample_id: str, working_root: Path) -> SampleLayout:
        """Artifact layout for a sample under a working root."""
        return SampleLayout(
            sample_id=sample_id,
            working_root=Path(working_root),
            annovar_buildver=self.config.annovar_buildver,
        )

    def plan(
        self,
        sample_id: str,
        working_root: Path,
        from_stage: Optional[str] = None,
        to_stage: Optional[str] = None
    ) -> List[Stage]:
        """
        Build the stages to run for a sample.

        Args:
            sample_id: Sample identifier
            working_root: Directory holding raw_data/, working_data/ and result/
            from_stage: First stage to run (default: the first one)
            to_stage: Last stage to run (default: the last one)

        Returns:
            Ordered list of stages
        """
        layout = self.layout(sample_id, working_root)
        stages = build_stages(layout, self.references, self.config)
        return select_stages(stages, from_stage, to_stage)

    def check_references(self) -> None:
        """Raise MissingReferenceError if any reference file is absent."""
        missing = self.references.missing()
        if missing:
            raise MissingReferenceError(missing)

    def check_inputs(self, stages: List[Stage]) -> None:
        """
        Raise MissingInputError for stage inputs that must already exist.

        Inputs produced by an earlier stage in the list are expected to appear
        during the run and are not checked.
        """
        produced = set()
        missing = []
        first_stage = None
        for stage in stages:
            for path in stage.inputs:
                if path not in produced and path not in missing and not path.exists():
                    missing.append(path)
                    first_stage = first_stage or stage.name
            produced.update(stage.outputs)

        if missing:
            raise MissingInputError(missing, stage=first_stage)

    def run_sample(
        self,
        sample_id: str,
        working_root: Path,
        from_stage: Optional[str] = None,
        to_stage: Optional[str] = None,
        dry_run: bool = False,
        keep_going: bool = False,
        resume: bool = False
    ) -> PipelineResult:
        """
        Run the pipeline for one sample.

        Args:
            sample_id: Sample identifier
            working_root: Directory holding raw_data/, working_data/ and result/
            from_stage: First stage to run
            to_stage: Last stage to run
            dry_run: Log the commands without launching anything
            keep_going: Launch the remaining stages after a failure
            resume: Skip stages whose outputs already exist and that did not
                fail in the previous run

        Returns:
            PipelineResult with one entry per selected stage

        Raises:
            MissingReferenceError: If the reference bundle is incomplete
            MissingInputError: If inputs no selected stage produces are absent
        """
        start_time = time.time()
        working_root = Path(working_root)

        with PipelineLogger(self.logger, f"pipeline_{sample_id}") as plog:
            plog.add_context(sample_id=sample_id, working_root=str(working_root),
                             dry_run=dry_run)

            try:
                layout = self.layout(sample_id, working_root)
                stages = self.plan(sample_id, working_root, from_stage, to_stage)

                # Nothing may be launched before the references are known to exist
                self.check_references()
                if not dry_run:
                    self.check_inputs(stages)
                    self._ensure_directories(layout)
            except (PipelineError, ValueError) as e:
                log_error(self.logger, e, context={"sample_id": sample_id, "operation": "preflight"})
                raise

            if not dry_run:
                self.monitor.log_system_info(working_root)

            unfinished = self._unfinished_stages(layout) if resume and not dry_run else set()
            results = self._run_stages(layout, stages, dry_run, keep_going, resume, unfinished)

            if not dry_run:
                self.monitor.log_memory_usage()
                self.logger.info("Stage timings", sample_id=sample_id,
                                 timings=self.monitor.get_summary())

            pipeline_result = PipelineResult(
                sample_id=sample_id,
                working_root=working_root,
                stages=results,
                dry_run=dry_run,
                processing_time=time.time() - start_time,
                pipeline_version=__version__,
            )

            if not dry_run:
                self._save_results(layout, pipeline_result)

            plog.add_context(
                succeeded=pipeline_result.succeeded,
                exit_code=pipeline_result.exit_code,
                failed_stage=pipeline_result.failed_stage_name,
            )
            return pipeline_result

    def run_batch(
        self,
        sample_ids: List[str],
        working_root: Path,
        **kwargs
    ) -> List[PipelineResult]:
        """
        Run the pipeline on several samples, one after the other.

        A sample that cannot start (bad identifier, missing inputs) is logged
        and skipped; missing references stop the whole batch.

        Returns:
            Results for the samples that ran
        """
        with PipelineLogger(self.logger, f"batch_pipeline_{len(sample_ids)}_samples") as plog:
            plog.add_context(sample_ids=sample_ids)

            self.check_references()

            results = []
            for i, sample_id in enumerate(sample_ids):
                plog.log_progress(f"Processing sample {i+1}/{len(sample_ids)}: {sample_id}")
                try:
                    results.append(self.run_sample(sample_id, working_root, **kwargs))
                except (MissingInputError, ValueError) as e:
                    log_error(self.logger, e, context={"sample_id": sample_id, "operation": "batch_processing"})
                    plog.log_progress(f"Failed to start {sample_id}: {str(e)}")
                    continue

            return results

    def _run_stages(
        self,
        layout: SampleLayout,
        stages: List[Stage],
        dry_run: bool,
        keep_going: bool,
        resume: bool,
        unfinished: Optional[Set[str]] = None
    ) -> List[StageResult]:
        """
        Run stages in order and collect their results.

        When resuming, a stage is skipped if its outputs exist, unless the
        previous run recorded it as failed or not run.
        """
        unfinished = unfinished or set()
        results: List[StageResult] = []
        halted_by: Optional[str] = None

        for stage in stages:
            if halted_by is not None:
                results.append(StageResult(
                    name=stage.name,
                    tool=stage.tool,
                    status=StageStatus.NOT_RUN,
                    commands=stage.command_lines(),
                    outputs=format_paths(list(stage.outputs)),
                    error_message=f"Not run after '{halted_by}' failed",
                ))
                continue

            if not dry_run:
                for directory in stage.directories:
                    directory.mkdir(parents=True, exist_ok=True)

            if (resume and not dry_run and stage.name not in unfinished
                    and outputs_exist(stage)):
                self.logger.info("Skipping stage, outputs already exist",
                                 stage=stage.name, sample_id=layout.sample_id,
                                 outputs=format_paths(list(stage.outputs)))
                results.append(StageResult(
                    name=stage.name,
                    tool=stage.tool,
                    status=StageStatus.SKIPPED,
                    commands=stage.command_lines(),
                    outputs=format_paths(list(stage.outputs)),
                ))
                continue

            self.monitor.start_timer(stage.name)
            result = run_stage(
                stage,
                sample_id=layout.sample_id,
                logger=self.logger,
                timeout=self.config.stage_timeout_seconds,
                max_retries=self.config.max_retries,
                log_path=layout.stage_log(stage.name) if self.config.stage_logs else None,
                dry_run=dry_run,
            )
            self.monitor.stop_timer(stage.name)
            results.append(result)

            if result.status == StageStatus.FAILED:
                self.logger.error("Stage failed", stage=stage.name, sample_id=layout.sample_id,
                                  return_code=result.return_code, error_message=result.error_message)
                if not keep_going:
                    halted_by = stage.name
            elif result.status == StageStatus.SUCCESS:
                self._log_outputs(stage, layout.sample_id)

        return results

    def _unfinished_stages(self, layout: SampleLayout) -> Set[str]:
        """Stages the previous run of this sample recorded as failed or not run."""
        if not layout.result_json.is_file():
            return set()
        try:
            previous = PipelineResult.model_validate_json(layout.result_json.read_text())
        except (OSError, ValidationError) as e:
            self.logger.warning("Ignoring unreadable previous result", sample_id=layout.sample_id,
                                file_path=str(layout.result_json), error_message=str(e))
            return set()
        return {
            stage.name for stage in previous.stages
            if stage.status in (StageStatus.FAILED, StageStatus.NOT_RUN)
        }

    def _log_outputs(self, stage: Stage, sample_id: str):
        """Log produced artifacts and warn about the ones a tool did not write."""
        for output in stage.outputs:
            if output.exists():
                log_file_operation(self.logger, "produced", output, stage=stage.name, sample_id=sample_id)
            else:
                self.logger.warning("Stage succeeded but an expected output is missing",
                                    stage=stage.name, sample_id=sample_id, file_path=str(output))

    def _ensure_directories(self, layout: SampleLayout) -> None:
        """Create the per-sample working and result directories."""
        for directory in (layout.working_dir, layout.result_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def _save_results(self, layout: SampleLayout, pipeline_result: PipelineResult):
        """Save the run result as JSON and a text summary."""
        with PipelineLogger(self.logger, f"save_results_{layout.sample_id}") as plog:
            try:
                with open(layout.result_json, "w") as f:
                    f.write(pipeline_result.to_json())

                summary = pipeline_result.get_summary_stats()
                with open(layout.summary_file, "w") as f:
                    f.write("RNA-seq Variant Calling Pipeline Summary\n")
                    f.write("=" * 40 + "\n\n")
                    for key, value in summary.items():
                        f.write(f"{key}: {value}\n")
                    f.write("\nStages:\n")
                    for stage in pipeline_result.stages:
                        f.write(f"  {stage.name}: {stage.status.value}\n")

                plog.log_progress(f"Results saved to {layout.result_dir}")

            except OSError as e:
                log_error(self.logger, e, context={"sample_id": layout.sample_id, "operation": "save_results"})
                raise

    def _get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of the configuration for logging."""
        return {
            "reference_fasta": str(self.references.fasta),
            "star_index": str(self.references.star_index),
            "threads": self.config.threads,
            "java_memory_gb": self.config.java_memory_gb,
            "use_env_modules": self.config.use_env_modules,
            "max_retries": self.config.max_retries,
        }
