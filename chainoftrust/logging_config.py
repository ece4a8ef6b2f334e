"""
Logging configuration for the chain of trust worker feature.

Provides structured JSON logging for audit trails and debugging.
"""

import json
import logging
import sys
import time
from contextvars import ContextVar
from typing import Any, Dict, Optional

from .util import mask_sensitive

# Context variable for the task run currently being processed
run_context_var: ContextVar[str] = ContextVar('run_context', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs logs in a consistent JSON format suitable for
    log aggregation systems like ELK, Splunk, or CloudWatch.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(record.created)),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        run_context = run_context_var.get()
        if run_context:
            log_data["run"] = run_context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for chain of trust audit events.

    Every decision that affects whether a certificate exists is logged
    here: key custody checks, hashing, signing and publication.
    Key material is never passed to this logger.
    """

    def __init__(self, name: str = "chainoftrust.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        """Internal logging method with extra fields."""
        extra = {
            "event_type": event_type,
            "run": run_context_var.get(),
            **kwargs
        }

        record = self._logger.makeRecord(
            self._logger.name,
            level,
            "",
            0,
            f"{event_type}: {kwargs.get('message', '')}",
            (),
            None
        )
        record.extra_fields = extra
        self._logger.handle(record)

    def key_loaded(self, key_id: str, key_location: str) -> None:
        """Log that the signing key was loaded at startup."""
        self._log(
            logging.INFO,
            "KEY_LOADED",
            key_id=mask_sensitive(key_id),
            key_location=key_location,
            message="Chain of trust signing key loaded"
        )

    def key_custody_verified(self, principal: str, probe: str) -> None:
        """Log a successful key custody check."""
        self._log(
            logging.INFO,
            "KEY_CUSTODY_VERIFIED",
            principal=principal,
            probe=probe,
            message=f"Signing key not readable by {principal}"
        )

    def key_custody_violation(self, principal: str, key_location: str) -> None:
        """Log that the task principal can read the signing key."""
        self.security_event(
            "key_custody_violation",
            severity="critical",
            principal=principal,
            key_location=key_location,
        )

    def artifact_hashed(self, artifact_name: str, sha256: str) -> None:
        """Log an artifact digest."""
        self._log(
            logging.DEBUG,
            "ARTIFACT_HASHED",
            artifact_name=artifact_name,
            sha256=sha256,
            message=f"Hashed {artifact_name}"
        )

    def certificate_signed(self, task_id: str, run_id: int, artifact_count: int, document_sha256: str) -> None:
        """Log that a certificate was signed."""
        self._log(
            logging.INFO,
            "CERTIFICATE_SIGNED",
            task_id=task_id,
            run_id=run_id,
            artifact_count=artifact_count,
            document_sha256=document_sha256,
            message=f"Signed chain of trust certificate for {task_id}/{run_id}"
        )

    def certificate_published(self, task_id: str, run_id: int) -> None:
        """Log that the certificate and certified log were uploaded."""
        self._log(
            logging.INFO,
            "CERTIFICATE_PUBLISHED",
            task_id=task_id,
            run_id=run_id,
            message=f"Published chain of trust artifacts for {task_id}/{run_id}"
        )

    def certification_failed(self, task_id: str, run_id: int, reason: str, error: str) -> None:
        """Log that no certificate could be produced for a run."""
        self._log(
            logging.ERROR,
            "CERTIFICATION_FAILED",
            task_id=task_id,
            run_id=run_id,
            reason=reason,
            error=error,
            message=f"Chain of trust aborted for {task_id}/{run_id}: {reason}"
        )

    def reserved_artifact_rejected(self, task_id: str, artifact_name: str) -> None:
        """Log a task attempting to publish under a reserved name."""
        self.security_event(
            "reserved_artifact_rejected",
            severity="high",
            task_id=task_id,
            artifact_name=artifact_name,
        )

    def artifact_path_rejected(self, task_id: str, artifact_name: str, path: str) -> None:
        """Log an artifact that points outside the task directory."""
        self.security_event(
            "artifact_path_rejected",
            severity="high",
            task_id=task_id,
            artifact_name=artifact_name,
            path=path,
        )

    def security_event(
        self,
        event: str,
        severity: str = "medium",
        **details
    ) -> None:
        """Log a security-relevant event."""
        level = {
            "low": logging.INFO,
            "medium": logging.WARNING,
            "high": logging.ERROR,
            "critical": logging.CRITICAL
        }.get(severity, logging.WARNING)

        self._log(
            level,
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None
) -> None:
    """
    Configure logging for the worker.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_run_context(task_id: str, run_id: int) -> str:
    """
    Set the task run for the current context.

    Returns:
        The run context string that was set
    """
    value = f"{task_id}/{run_id}"
    run_context_var.set(value)
    return value


def get_run_context() -> str:
    """Get the current run context."""
    return run_context_var.get()


def extra_fields(**fields: Any) -> Dict[str, Any]:
    """Build the `extra` mapping understood by StructuredFormatter."""
    return {"extra_fields": fields}


# Global audit logger instance
audit_log = AuditLogger()
