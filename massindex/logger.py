"""
Structured logging system for massindex.

Provides centralized logging with console and file outputs, and
metrics tracking for monitoring the health of an indexing run.
"""

import logging
import sys
import threading
from pathlib import Path
from typing import Optional
from datetime import datetime
import json


class StructuredLogger:
    """
    Centralized logger with support for console and file outputs.
    Tracks metrics for monitoring indexing throughput and failures.
    """

    def __init__(
        self,
        name: str = "massindex",
        level: str = "INFO",
        log_dir: Optional[Path] = None,
        enable_file: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize the structured logger.

        Args:
            name: Logger name
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_dir: Directory for log files (default: logs/)
            enable_file: Write logs to file
            enable_console: Output logs to console
        """
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))
        self.logger.handlers.clear()  # Remove existing handlers

        # Worker threads update metrics concurrently
        self._metrics_lock = threading.Lock()
        self.metrics = self._empty_metrics()

        if enable_console:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, level.upper()))
            console_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s | %(threadName)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_handler.setFormatter(console_formatter)
            self.logger.addHandler(console_handler)

        if enable_file:
            if log_dir is None:
                log_dir = Path("logs")
            log_dir.mkdir(parents=True, exist_ok=True)

            log_file = log_dir / f"massindex_{datetime.now().strftime('%Y%m%d')}.log"
            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            file_handler.setLevel(logging.DEBUG)  # Always log everything to file
            file_formatter = logging.Formatter(
                fmt='%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(threadName)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler.setFormatter(file_formatter)
            self.logger.addHandler(file_handler)

    @staticmethod
    def _empty_metrics() -> dict:
        return {
            "partitions_started": 0,
            "partitions_completed": 0,
            "partitions_failed": 0,
            "chunks_committed": 0,
            "flush_retries": 0,
            "records_by_type": {},
            "errors_by_type": {},
        }

    def debug(self, message: str, **kwargs):
        """Log debug message with optional context."""
        self._log(logging.DEBUG, message, kwargs)

    def info(self, message: str, **kwargs):
        """Log info message with optional context."""
        self._log(logging.INFO, message, kwargs)

    def warning(self, message: str, **kwargs):
        """Log warning message with optional context."""
        self._log(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs):
        """Log error message with optional context."""
        self._log(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs):
        """Log critical message with optional context."""
        self._log(logging.CRITICAL, message, kwargs)

    def _log(self, level: int, message: str, context: dict):
        """Internal logging method with context."""
        if context:
            message = f"{message} | Context: {json.dumps(context, default=str)}"
        self.logger.log(level, message)

    # Metric tracking methods

    def record_partition_started(self):
        """Increment started partition counter."""
        with self._metrics_lock:
            self.metrics["partitions_started"] += 1

    def record_partition_finished(self, succeeded: bool):
        """Record a partition reaching COMPLETED or FAILED."""
        key = "partitions_completed" if succeeded else "partitions_failed"
        with self._metrics_lock:
            self.metrics[key] += 1

    def record_chunk(self, entity_type: str, read: int, indexed: int, skipped: int):
        """Record counters of one committed chunk."""
        with self._metrics_lock:
            self.metrics["chunks_committed"] += 1
            stats = self.metrics["records_by_type"].setdefault(
                entity_type, {"read": 0, "indexed": 0, "skipped": 0}
            )
            stats["read"] += read
            stats["indexed"] += indexed
            stats["skipped"] += skipped

    def record_flush_retry(self):
        """Increment flush retry counter."""
        with self._metrics_lock:
            self.metrics["flush_retries"] += 1

    def record_error(self, error_type: str):
        """Record an error by exception class name."""
        with self._metrics_lock:
            errors = self.metrics["errors_by_type"]
            errors[error_type] = errors.get(error_type, 0) + 1

    def get_metrics(self) -> dict:
        """Return a copy of the current metrics."""
        with self._metrics_lock:
            metrics_copy = json.loads(json.dumps(self.metrics))

        for stats in metrics_copy["records_by_type"].values():
            if stats["read"] > 0:
                stats["skip_rate"] = round(stats["skipped"] / stats["read"], 3)

        return metrics_copy

    def reset_metrics(self):
        """Clear all metrics."""
        with self._metrics_lock:
            self.metrics = self._empty_metrics()

    def log_metrics_summary(self):
        """Log a summary of current metrics."""
        metrics = self.get_metrics()

        self.info("=== Mass Indexing Metrics ===")
        self.info(
            f"Partitions: {metrics['partitions_completed']} completed, "
            f"{metrics['partitions_failed']} failed, "
            f"{metrics['partitions_started']} started"
        )
        self.info(f"Chunks committed: {metrics['chunks_committed']}")
        self.info(f"Flush retries: {metrics['flush_retries']}")

        if metrics["records_by_type"]:
            self.info("Records by entity type:")
            for entity_type, stats in metrics["records_by_type"].items():
                self.info(
                    f"  {entity_type}: read={stats['read']} "
                    f"indexed={stats['indexed']} skipped={stats['skipped']}"
                )

        if metrics["errors_by_type"]:
            self.info("Error Types:")
            for error_type, count in metrics["errors_by_type"].items():
                self.info(f"  {error_type}: {count}")


# Global logger instance
_global_logger: Optional[StructuredLogger] = None


def get_logger(
    name: str = "massindex",
    level: str = "INFO",
    **kwargs
) -> StructuredLogger:
    """
    Get or create the global logger instance.

    Args:
        name: Logger name
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        **kwargs: Additional arguments passed to StructuredLogger

    Returns:
        StructuredLogger instance
    """
    global _global_logger

    if _global_logger is None:
        _global_logger = StructuredLogger(name=name, level=level, **kwargs)

    return _global_logger


def reset_logger():
    """Reset the global logger (useful for testing)."""
    global _global_logger
    _global_logger = None
