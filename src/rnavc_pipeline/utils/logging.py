"""
Logging utilities for the RNA-seq variant calling pipeline.
"""


from pathlib import Path
from structlog.stdlib import LoggerFactory
from typing import Any, Dict, List, Optional, Union

import logging
import psutil
import structlog
import sys
import time


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Path] = None,
    log_format: str = "console"
) -> structlog.BoundLogger:
    """
    Set up structured logging for the pipeline.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path
        log_format: Log format ("json" or "console")

    Returns:
        Configured logger instance
    """
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Make sure the log_file directory exists if it is not None
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, mode="a")
    else:
        # Tool output goes to stdout, so keep pipeline messages on stderr
        handler = logging.StreamHandler(sys.stderr)

    logging.basicConfig(
        format="%(message)s",
        handlers=[handler],
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    return structlog.get_logger("rnavc_pipeline")


class PipelineLogger:
    """Context manager for pipeline logging with performance tracking."""

    def __init__(self, logger: structlog.BoundLogger, operation: str):
        """
        Initialize the pipeline logger.

        Args:
            logger: Structured logger instance
            operation: Name of the operation being logged
        """
        self.logger = logger
        self.operation = operation
        self.start_time = None
        self.context: Dict[str, Any] = {}

    def __enter__(self):
        """Enter the logging context."""
        self.start_time = time.time()
        self.logger.info(
            f"Starting {self.operation}",
            operation=self.operation,
            **self.context
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit the logging context."""
        duration = time.time() - self.start_time

        if exc_type is None:
            self.logger.info(
                f"Completed {self.operation}",
                operation=self.operation,
                duration_seconds=duration,
                status="success",
                **self.context
            )
        else:
            self.logger.error(
                f"Failed {self.operation}",
                operation=self.operation,
                duration_seconds=duration,
                status="error",
                error_type=exc_type.__name__,
                error_message=str(exc_val),
                **self.context
            )

    def add_context(self, **kwargs):
        """Add context information to the logger."""
        self.context.update(kwargs)
        return self

    def log_progress(self, message: str, **kwargs):
        """Log progress information."""
        self.logger.info(
            message,
            operation=self.operation,
            **{**self.context, **kwargs}
        )


class PerformanceMonitor:
    """Time stages and log host resources."""

    def __init__(self, logger: structlog.BoundLogger):
        self.logger = logger
        self.metrics: Dict[str, float] = {}
        self.start_times: Dict[str, float] = {}

    def start_timer(self, name: str):
        """Start a timer for a named operation."""
        self.start_times[name] = time.time()

    def stop_timer(self, name: str) -> float:
        """Stop a timer and return the duration."""
        if name not in self.start_times:
            raise ValueError(f"Timer '{name}' was not started")

        duration = time.time() - self.start_times[name]
        self.metrics[name] = duration

        self.logger.debug(
            f"Operation '{name}' completed",
            operation=name,
            duration_seconds=duration
        )

        del self.start_times[name]
        return duration

    def log_memory_usage(self):
        """Log current memory usage of the host."""
        memory = psutil.virtual_memory()
        self.logger.info(
            "Memory usage",
            memory_available_gb=memory.available / 1024 ** 3,
            memory_percent=memory.percent
        )

    def log_system_info(self, disk_path: Union[str, Path] = "/"):
        """Log system information."""
        self.logger.info(
            "System information",
            cpu_count=psutil.cpu_count(),
            memory_total_gb=psutil.virtual_memory().total / 1024 / 1024 / 1024,
            disk_usage_percent=psutil.disk_usage(str(disk_path)).percent,
            disk_path=str(disk_path)
        )

    def get_summary(self) -> Dict[str, float]:
        """Get a summary of all recorded metrics."""
        return self.metrics.copy()


def log_command(logger: structlog.BoundLogger, command: str, **kwargs):
    """Log a command being executed."""
    logger.info(
        "Executing command",
        command=command,
        **kwargs
    )


def log_file_operation(logger: structlog.BoundLogger, operation: str, file_path: Path, **kwargs):
    """Log a file operation."""
    logger.info(
        f"File {operation}",
        operation=operation,
        file_path=str(file_path),
        file_size_mb=file_path.stat().st_size / 1024 / 1024 if file_path.exists() else 0,
        **kwargs
    )


def log_error(logger: structlog.BoundLogger, error: Exception, context: Optional[Dict[str, Any]] = None):
    """Log an error with context."""
    logger.error(
        "Pipeline error",
        error_type=type(error).__name__,
        error_message=str(error),
        context=context or {}
    )


def format_paths(paths: List[Path]) -> List[str]:
    """Render paths for structured log fields."""
    return [str(p) for p in paths]
