"""
Logging configuration for CertChain.

Provides structured JSON logging for audit trails and debugging.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variable for request ID tracking
request_id_var: ContextVar[str] = ContextVar('request_id', default='')


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per line with the request ID and any
    audit fields attached to the record.
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

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_fields'):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """
    Specialized logger for certificate lifecycle events.

    Every issuance, verification, revocation, hash repair and sync run
    is recorded here with its identifiers so the database and chain
    histories can be reconciled after the fact.
    """

    def __init__(self, name: str = "certchain.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        if not self._logger.isEnabledFor(level):
            return
        extra = {
            "event_type": event_type,
            "request_id": request_id_var.get(),
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

    def certificate_issued(
        self,
        certificate_id: str,
        issued_by: str,
        certificate_hash: str,
        signature: Optional[str] = None
    ) -> None:
        """Log a certificate stored in both systems (or database only without a chain)."""
        self._log(
            logging.INFO,
            "CERTIFICATE_ISSUED",
            certificate_id=certificate_id,
            issued_by=issued_by,
            certificate_hash=certificate_hash,
            signature=signature,
            message=f"Certificate {certificate_id} issued"
        )

    def partial_success(
        self,
        certificate_id: str,
        database: bool,
        blockchain: bool,
        error: Optional[str] = None
    ) -> None:
        """Log a write that landed in only one of the two systems."""
        self._log(
            logging.WARNING,
            "PARTIAL_SUCCESS",
            certificate_id=certificate_id,
            database=database,
            blockchain=blockchain,
            error=error,
            message=f"Certificate {certificate_id} only partially stored"
        )

    def certificate_verified(
        self,
        certificate_id: str,
        is_valid: bool,
        reason: Optional[str] = None
    ) -> None:
        level = logging.INFO if is_valid else logging.WARNING
        self._log(
            level,
            "CERTIFICATE_VERIFIED",
            certificate_id=certificate_id,
            is_valid=is_valid,
            reason=reason,
            message=f"Verification of {certificate_id}: {'valid' if is_valid else 'invalid'}"
        )

    def certificate_revoked(
        self,
        certificate_id: str,
        revoked_by: str,
        reason: Optional[str] = None,
        blockchain: Optional[bool] = None
    ) -> None:
        self._log(
            logging.WARNING,
            "CERTIFICATE_REVOKED",
            certificate_id=certificate_id,
            revoked_by=revoked_by,
            reason=reason,
            blockchain=blockchain,
            message=f"Certificate {certificate_id} revoked"
        )

    def hash_conflict_resolved(
        self,
        certificate_id: str,
        old_hash: str,
        new_hash: str
    ) -> None:
        self._log(
            logging.INFO,
            "HASH_CONFLICT_RESOLVED",
            certificate_id=certificate_id,
            old_hash=old_hash,
            new_hash=new_hash,
            message=f"Regenerated hash for {certificate_id}"
        )

    def sync_completed(
        self,
        authority: str,
        synced: int,
        mismatches: int,
        errors: int
    ) -> None:
        level = logging.INFO if errors == 0 else logging.WARNING
        self._log(
            level,
            "SYNC_COMPLETED",
            authority=authority,
            synced=synced,
            mismatches=mismatches,
            errors=errors,
            message=f"Sync for {authority}: {synced} re-issued, {mismatches} mismatches"
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
    log_file: Optional[str] = None,
    stream=None
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON formatting (recommended for production)
        log_file: Optional file path for log output
        stream: Console stream (default stdout)
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

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set the request ID for the current context.

    Args:
        request_id: Request ID to set, or None to generate one

    Returns:
        The request ID that was set
    """
    if request_id is None:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


# Global audit logger instance
audit_log = AuditLogger()
