"""
Logging setup for LDAP Group Ops.

File logging with daily rotation and retention, an optional console handler on
stderr (stdout carries the job's JSON output), scrubbing of credentials from
log messages, and an audit logger for directory changes.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any

AUDIT_LOGGER_NAME = 'audit'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'secret',
        'credential', 'pwd', 'unicodePwd',
    ]

    _PATTERNS = []
    for _keyword in SENSITIVE_KEYWORDS:
        # key=value
        _PATTERNS.append((re.compile(rf'({_keyword}\s*=\s*)[^\s,}}\]]+', re.IGNORECASE), r'\1****'))
        # "key": "value"
        _PATTERNS.append((re.compile(rf'(["\']{_keyword}["\']\s*:\s*["\'])[^"\']*(["\'])', re.IGNORECASE),
                          r'\1****\2'))
    del _keyword

    def filter(self, record):
        """Scrub sensitive values from the record's message."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)
            for pattern, replacement in self._PATTERNS:
                msg = pattern.sub(replacement, msg)
            record.msg = msg
        return True


class LoggingManager:
    """
    Manages logging configuration for the application.

    Provides file-based logging with rotation and retention, plus console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: ``logging`` configuration section
        """
        if self.configured:
            return

        logging_config = config or {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}"
        )

    def _ensure_log_directory(self) -> None:
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                logging.getLogger(__name__).warning(
                    f"Could not create log directory {self.log_dir}: {e}; using current directory"
                )
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        log_file = os.path.join(self.log_dir, 'groupops.log')

        if rotation.lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, 'groupops.log.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                logging.getLogger(__name__).warning(f"Could not remove old log file {log_file}: {e}")

    def reset(self) -> None:
        """Forget previous configuration so setup_logging runs again."""
        self.configured = False


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


class AuditLogger:
    """Records every directory change and preview on the ``audit`` logger."""

    def __init__(self):
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)

    def log_outcome(self, operation: str, row, dry_run: bool) -> None:
        """Log one outcome row of a batch."""
        mode = "dry-run" if dry_run else "live"
        level = logging.WARNING if row.status.value == 'FAILED' else logging.INFO
        self.logger.log(
            level,
            f"{operation} [{mode}] #{row.index} {row.status.value}: "
            f"subject={row.subject_label} context={row.context_label} - {row.detail}"
        )

    def log_job(self, operation: str, severity: str, description: str) -> None:
        """Log the final verdict of a job."""
        self.logger.info(f"{operation} finished with {severity}: {description}")


audit_logger = AuditLogger()
