#!/usr/bin/env python3
"""
Tests for the Pipeline class.
"""

import json
import subprocess
from unittest.mock import patch

import pytest

from rnavc_pipeline.config.settings import PipelineConfig
from rnavc_pipeline.core.pipeline import Pipeline
from rnavc_pipeline.exceptions import MissingInputError, MissingReferenceError
from rnavc_pipeline.models.results import StageStatus

from conftest import SAMPLE_ID


def _exit_with(codes):
    """subprocess.run stand-in returning a status per executable."""
    def fake_run(args, **kwargs):
        return subprocess.CompletedProcess(args=args, returncode=codes.get(args[0], 0))
    return fake_run


@pytest.fixture
def mock_run():
    with patch("rnavc_pipeline.core.runner.subprocess.run") as mock:
        mock.side_effect = _exit_with({})
        yield mock


@pytest.fixture
def pipeline(config, logger):
    return Pipeline(config, logger)


def test_missing_reference_stops_before_any_launch(tmp_path, logger, working_root, mock_run):
    config = PipelineConfig(annotation_dir=tmp_path / "nowhere")
    pipeline = Pipeline(config, logger)

    with pytest.raises(MissingReferenceError) as exc_info:
        pipeline.run_sample(SAMPLE_ID, working_root)

    assert len(exc_info.value.missing) == 6
    assert "Homo_sapiens.GRCh38.dna.primary_assembly.fa" in str(exc_info.value)
    mock_run.assert_not_called()


def test_single_missing_reference_is_named(annotation_dir, logger, working_root, mock_run):
    dbsnp = annotation_dir / "human_variants" / "Homo_sapiens_assembly38.dbsnp138.vcf"
    dbsnp.unlink()
    pipeline = Pipeline(PipelineConfig(annotation_dir=annotation_dir), logger)

    with pytest.raises(MissingReferenceError) as exc_info:
        pipeline.run_sample(SAMPLE_ID, working_root)

    assert exc_info.value.missing == [dbsnp]
    mock_run.assert_not_called()


def test_missing_raw_reads(pipeline, layout, working_root, mock_run):
    layout.raw_reads[1].unlink()

    with pytest.raises(MissingInputError) as exc_info:
        pipeline.run_sample(SAMPLE_ID, working_root)

    assert exc_info.value.stage == "fastqc"
    assert exc_info.value.missing == [layout.raw_reads[1]]
    mock_run.assert_not_called()


def test_full_run_succeeds(pipeline, layout, working_root, mock_run):
    result = pipeline.run_sample(SAMPLE_ID, working_root)

    assert result.succeeded
    assert result.exit_code == 0
    assert [s.status for s in result.stages] == [StageStatus.SUCCESS] * 13
    # fastqc and recalibrate run two commands each
    assert mock_run.call_count == 15
    assert layout.working_dir.is_dir()
    assert layout.result_dir.is_dir()


def test_stages_launch_in_order(pipeline, working_root, mock_run):
    pipeline.run_sample(SAMPLE_ID, working_root)

    executables = [c[0][0][0] for c in mock_run.call_args_list]
    assert executables == [
        "fastqc", "fastqc", "trim_galore", "STAR", "samtools", "picard", "picard",
        "gatk", "gatk", "gatk", "gatk", "gatk", "gatk", "table_annovar.pl", "multiqc",
    ]


def test_failure_halts_the_run(pipeline, working_root, mock_run):
    mock_run.side_effect = _exit_with({"trim_galore": 2})

    result = pipeline.run_sample(SAMPLE_ID, working_root)

    assert not result.succeeded
    assert result.exit_code == 2
    assert result.failed_stage.name == "trim"
    assert mock_run.call_count == 3
    statuses = [s.status for s in result.stages]
    assert statuses[:2] == [StageStatus.SUCCESS, StageStatus.FAILED]
    assert statuses[2:] == [StageStatus.NOT_RUN] * 11
    assert result.stages[2].error_message == "Not run after 'trim' failed"


def test_keep_going_launches_every_stage(pipeline, working_root, mock_run):
    mock_run.side_effect = _exit_with({
        "fastqc": 1, "trim_galore": 1, "STAR": 1, "samtools": 1, "picard": 1,
        "gatk": 1, "table_annovar.pl": 1, "multiqc": 1,
    })

    result = pipeline.run_sample(SAMPLE_ID, working_root, keep_going=True)

    assert mock_run.call_count == 13
    assert all(s.status == StageStatus.FAILED for s in result.stages)
    assert result.exit_code == 1


def test_missing_executable_fails_with_127(pipeline, working_root, mock_run):
    def fake_run(args, **kwargs):
        if args[0] == "STAR":
            raise FileNotFoundError(args[0])
        return subprocess.CompletedProcess(args=args, returncode=0)
    mock_run.side_effect = fake_run

    result = pipeline.run_sample(SAMPLE_ID, working_root)

    assert result.failed_stage.name == "align"
    assert result.exit_code == 127


def test_resume_skips_finished_stages(pipeline, layout, working_root, mock_run):
    layout.fastqc_dir.mkdir(parents=True)
    for report in layout.fastqc_reports:
        report.write_bytes(b"PK")

    result = pipeline.run_sample(SAMPLE_ID, working_root, resume=True)

    assert result.stages[0].status == StageStatus.SKIPPED
    assert result.succeeded
    assert mock_run.call_count == 13


def test_resume_reruns_stage_that_failed_before(pipeline, layout, working_root, mock_run):
    # A killed tool can leave a truncated but non-empty output behind
    mock_run.side_effect = _exit_with({"STAR": 137})
    first = pipeline.run_sample(SAMPLE_ID, working_root)
    assert first.failed_stage_name == "align"
    layout.star_bam.write_bytes(b"truncated BAM")
    mock_run.reset_mock()
    mock_run.side_effect = _exit_with({})

    result = pipeline.run_sample(SAMPLE_ID, working_root, resume=True)

    statuses = {s.name: s.status for s in result.stages}
    assert statuses["align"] == StageStatus.SUCCESS
    assert result.succeeded
    assert "STAR" in [c[0][0][0] for c in mock_run.call_args_list]


def test_resume_ignores_unreadable_previous_result(pipeline, layout, working_root, mock_run):
    layout.result_dir.mkdir(parents=True)
    layout.result_json.write_text("{not json")
    layout.fastqc_dir.mkdir(parents=True)
    for report in layout.fastqc_reports:
        report.write_bytes(b"PK")

    result = pipeline.run_sample(SAMPLE_ID, working_root, resume=True)

    assert result.stages[0].status == StageStatus.SKIPPED
    assert result.succeeded


def test_partial_range_needs_upstream_artifacts(pipeline, working_root, mock_run):
    with pytest.raises(MissingInputError) as exc_info:
        pipeline.run_sample(SAMPLE_ID, working_root, from_stage="split_reads")

    assert exc_info.value.stage == "split_reads"
    mock_run.assert_not_called()


def test_partial_range(pipeline, layout, working_root, mock_run):
    layout.result_dir.mkdir(parents=True)
    layout.read_group_bam.write_bytes(b"BAM")

    result = pipeline.run_sample(SAMPLE_ID, working_root,
                                 from_stage="split_reads", to_stage="filter")

    assert [s.name for s in result.stages] == [
        "split_reads", "recalibrate", "call_variants", "genotype", "filter"
    ]
    assert result.succeeded
    assert mock_run.call_count == 6


def test_dry_run_launches_nothing(pipeline, layout, working_root, mock_run):
    result = pipeline.run_sample(SAMPLE_ID, working_root, dry_run=True)

    mock_run.assert_not_called()
    assert result.dry_run
    assert all(s.status == StageStatus.PLANNED for s in result.stages)
    assert any(line.startswith("STAR ") for s in result.stages for line in s.commands)
    assert not layout.result_json.exists()


def test_dry_run_still_checks_references(tmp_path, logger, working_root, mock_run):
    pipeline = Pipeline(PipelineConfig(annotation_dir=tmp_path / "nowhere"), logger)

    with pytest.raises(MissingReferenceError):
        pipeline.run_sample(SAMPLE_ID, working_root, dry_run=True)


def test_results_are_saved(pipeline, layout, working_root, mock_run):
    mock_run.side_effect = _exit_with({"trim_galore": 2})

    pipeline.run_sample(SAMPLE_ID, working_root)

    saved = json.loads(layout.result_json.read_text())
    assert saved["sample_id"] == SAMPLE_ID
    assert saved["succeeded"] is False
    assert saved["exit_code"] == 2
    assert saved["failed_stage_name"] == "trim"
    assert saved["stages"][1]["status"] == "failed"
    assert saved["stages"][1]["return_code"] == 2

    summary = layout.summary_file.read_text()
    assert "failed_stage: trim" in summary
    assert "  trim: failed" in summary


def test_stage_logs(annotation_dir, logger, layout, working_root, mock_run):
    config = PipelineConfig(annotation_dir=annotation_dir, stage_logs=True)

    Pipeline(config, logger).run_sample(SAMPLE_ID, working_root, to_stage="index")

    assert layout.stage_log("align").read_text().startswith("$ STAR ")
    kwargs = mock_run.call_args_list[0][1]
    assert kwargs["stderr"] == subprocess.STDOUT


def test_invalid_sample_id(pipeline, working_root, mock_run):
    with pytest.raises(ValueError, match="Invalid sample identifier"):
        pipeline.run_sample("../escape", working_root)


def test_batch_skips_samples_that_cannot_start(pipeline, working_root, mock_run):
    results = pipeline.run_batch([SAMPLE_ID, "ghost"], working_root)

    assert [r.sample_id for r in results] == [SAMPLE_ID]
    assert results[0].succeeded


def test_batch_checks_references_first(tmp_path, logger, working_root, mock_run):
    pipeline = Pipeline(PipelineConfig(annotation_dir=tmp_path / "nowhere"), logger)

    with pytest.raises(MissingReferenceError):
        pipeline.run_batch([SAMPLE_ID], working_root)
    mock_run.assert_not_called()


def test_plan_matches_stage_catalogue(pipeline, working_root):
    stages = pipeline.plan(SAMPLE_ID, working_root, to_stage="align")

    assert [s.name for s in stages] == ["fastqc", "trim", "align"]


def test_rerun_is_idempotent(pipeline, working_root, mock_run):
    first = pipeline.run_sample(SAMPLE_ID, working_root)
    second = pipeline.run_sample(SAMPLE_ID, working_root)

    assert first.succeeded and second.succeeded
    assert [s.commands for s in first.stages] == [s.commands for s in second.stages]
