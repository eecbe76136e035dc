#!/usr/bin/env python3


"""
Test module for core/runner.py
"""

import subprocess
import unittest
from pathlib import Path
from unittest.mock import patch, MagicMock, call

from rnavc_pipeline.core.runner import (
    EXIT_COMMAND_NOT_FOUND,
    outputs_exist,
    run_command,
    run_stage,
    wrap_with_modules,
)
from rnavc_pipeline.core.stages import Stage
from rnavc_pipeline.exceptions import StageTimeoutError
from rnavc_pipeline.models.results import StageStatus


def _completed(returncode):
    return subprocess.CompletedProcess(args=[], returncode=returncode)


class TestWrapWithModules(unittest.TestCase):
    """
    Unit tests for the wrap_with_modules function.
    """

    def test_no_modules_returns_command(self):
        argv = ["samtools", "index", "in.bam"]
        self.assertEqual(wrap_with_modules(argv, ()), argv)

    def test_modules_are_loaded_by_login_shell(self):
        wrapped = wrap_with_modules(["samtools", "index", "in.bam"], ["SAMtools"])
        self.assertEqual(wrapped, [
            "bash", "-lc",
            "module reset && module load SAMtools && samtools index in.bam"
        ])

    def test_arguments_are_quoted(self):
        wrapped = wrap_with_modules(
            ["gatk", "--filter-expression", "FS > 30.0"], ["GATK"]
        )
        self.assertTrue(wrapped[2].endswith("gatk --filter-expression 'FS > 30.0'"))


class TestRunCommand(unittest.TestCase):
    """
    Unit tests for the run_command function.
    """

    def setUp(self):
        self.mock_run = patch('rnavc_pipeline.core.runner.subprocess.run').start()
        self.logger = MagicMock()
        self.argv = ("samtools", "index", "/w/result/S1/S1.bam")

    def tearDown(self):
        patch.stopall()

    def test_inherits_streams_by_default(self):
        self.mock_run.return_value = _completed(0)

        code = run_command(self.argv, "index", "S1", self.logger)

        self.assertEqual(code, 0)
        self.mock_run.assert_called_once_with(list(self.argv), timeout=None, check=False)

    def test_returns_tool_exit_status(self):
        self.mock_run.return_value = _completed(3)

        self.assertEqual(run_command(self.argv, "index", "S1", self.logger), 3)

    def test_missing_executable_returns_127(self):
        self.mock_run.side_effect = FileNotFoundError("samtools")

        code = run_command(self.argv, "index", "S1", self.logger)

        self.assertEqual(code, EXIT_COMMAND_NOT_FOUND)
        self.logger.error.assert_called_once()

    def test_timeout_raises(self):
        self.mock_run.side_effect = subprocess.TimeoutExpired(cmd="samtools", timeout=5)

        with self.assertRaises(StageTimeoutError) as ctx:
            run_command(self.argv, "index", "S1", self.logger, timeout=5)

        self.assertEqual(ctx.exception.stage, "index")
        self.assertEqual(ctx.exception.timeout, 5)

    def test_modules_wrap_the_command(self):
        self.mock_run.return_value = _completed(0)

        run_command(self.argv, "index", "S1", self.logger, modules=("SAMtools",))

        args = self.mock_run.call_args[0][0]
        self.assertEqual(args[:2], ["bash", "-lc"])
        self.assertIn("module load SAMtools", args[2])

    def test_command_is_logged(self):
        self.mock_run.return_value = _completed(0)

        run_command(self.argv, "index", "S1", self.logger)

        self.logger.info.assert_any_call(
            "Executing command",
            command="samtools index /w/result/S1/S1.bam",
            sample_id="S1",
            stage="index",
            modules=[],
        )


class TestRunCommandLogFile(unittest.TestCase):
    """
    Tool output redirected to a per-stage log file.
    """

    def test_output_goes_to_log_file(self):
        import tempfile
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp) / "logs" / "index.log"
            with patch('rnavc_pipeline.core.runner.subprocess.run') as mock_run:
                mock_run.return_value = _completed(0)
                run_command(("samtools", "index", "a.bam"), "index", "S1",
                            MagicMock(), log_path=log_path)

                kwargs = mock_run.call_args[1]
                self.assertEqual(kwargs["stderr"], subprocess.STDOUT)
                self.assertEqual(str(kwargs["stdout"].name), str(log_path))

            self.assertEqual(log_path.read_text(), "$ samtools index a.bam\n")


class TestRunStage(unittest.TestCase):
    """
    Unit tests for the run_stage function.
    """

    def setUp(self):
        self.mock_run_command = patch('rnavc_pipeline.core.runner.run_command').start()
        self.logger = MagicMock()
        self.stage = Stage(
            name="recalibrate",
            tool="GATK BaseRecalibrator/ApplyBQSR",
            description="Base quality score recalibration",
            commands=(
                ("gatk", "BaseRecalibrator", "-O", "S1_table.recal"),
                ("gatk", "ApplyBQSR", "-O", "S1_recal.bam"),
            ),
            inputs=(Path("S1_split.bam"),),
            outputs=(Path("S1_table.recal"), Path("S1_recal.bam")),
        )

    def tearDown(self):
        patch.stopall()

    def test_all_commands_succeed(self):
        self.mock_run_command.return_value = 0

        result = run_stage(self.stage, "S1", self.logger)

        self.assertEqual(result.status, StageStatus.SUCCESS)
        self.assertEqual(result.return_code, 0)
        self.assertEqual(result.attempts, 2)
        self.assertEqual(self.mock_run_command.call_count, 2)
        self.assertEqual(result.outputs, ["S1_table.recal", "S1_recal.bam"])

    def test_stops_at_first_failing_command(self):
        self.mock_run_command.return_value = 2

        result = run_stage(self.stage, "S1", self.logger)

        self.assertEqual(result.status, StageStatus.FAILED)
        self.assertEqual(result.return_code, 2)
        self.assertEqual(result.error_message, "gatk exited with status 2")
        self.mock_run_command.assert_called_once()

    def test_retries_failing_command(self):
        self.mock_run_command.side_effect = [1, 0, 0]

        result = run_stage(self.stage, "S1", self.logger, max_retries=2)

        self.assertEqual(result.status, StageStatus.SUCCESS)
        self.assertEqual(result.attempts, 3)

    def test_retries_exhausted(self):
        self.mock_run_command.return_value = 1

        result = run_stage(self.stage, "S1", self.logger, max_retries=1)

        self.assertEqual(result.status, StageStatus.FAILED)
        self.assertEqual(result.attempts, 2)
        self.assertEqual(self.mock_run_command.call_count, 2)

    def test_timeout_is_a_failure(self):
        self.mock_run_command.side_effect = StageTimeoutError("recalibrate", 10)

        result = run_stage(self.stage, "S1", self.logger, timeout=10)

        self.assertEqual(result.status, StageStatus.FAILED)
        self.assertIn("timed out", result.error_message)

    def test_dry_run_launches_nothing(self):
        result = run_stage(self.stage, "S1", self.logger, dry_run=True)

        self.assertEqual(result.status, StageStatus.PLANNED)
        self.assertEqual(result.commands, [
            "gatk BaseRecalibrator -O S1_table.recal",
            "gatk ApplyBQSR -O S1_recal.bam",
        ])
        self.mock_run_command.assert_not_called()

    def test_stage_options_are_forwarded(self):
        self.mock_run_command.return_value = 0
        log_path = Path("/w/result/S1/logs/recalibrate.log")

        run_stage(self.stage, "S1", self.logger, timeout=30, log_path=log_path)

        self.mock_run_command.assert_has_calls([
            call(self.stage.commands[0], "recalibrate", "S1", self.logger,
                 timeout=30, log_path=log_path, modules=()),
            call(self.stage.commands[1], "recalibrate", "S1", self.logger,
                 timeout=30, log_path=log_path, modules=()),
        ])


class TestOutputsExist(unittest.TestCase):
    """
    Unit tests for the outputs_exist function.
    """

    def test_outputs_present_and_empty(self):
        import tempfile
        with tempfile.TemporaryDirectory() as tmp:
            full = Path(tmp) / "a.bam"
            empty = Path(tmp) / "b.bai"
            full.write_bytes(b"BAM")
            empty.touch()
            stage = Stage(name="x", tool="t", description="", commands=(),
                          inputs=(), outputs=(full,))

            self.assertTrue(outputs_exist(stage))
            self.assertFalse(outputs_exist(Stage(
                name="x", tool="t", description="", commands=(),
                inputs=(), outputs=(full, empty),
            )))
            self.assertFalse(outputs_exist(Stage(
                name="x", tool="t", description="", commands=(),
                inputs=(), outputs=(Path(tmp) / "missing.vcf",),
            )))


if __name__ == '__main__':
    unittest.main()
