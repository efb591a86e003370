"""
Audit Logging Module

Access and booking audit trail for the GP booking service.
Ensures secure logging with no patient identifiers in clear text and
proper log rotation.
"""

import hashlib
import json
import logging
import logging.handlers
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from .settings import get_settings

# Configure audit logger
audit_logger = logging.getLogger("audit")


class PatientSafeFormatter(logging.Formatter):
    """
    Formatter that emits one JSON audit entry per record and never
    includes patient identifiers in clear text.
    """

    def format(self, record):
        """Format log record as an audit entry."""
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc)

        audit_entry = {
            "timestamp": timestamp.isoformat(),
            "level": record.levelname,
            "event_type": getattr(record, "event_type", "SYSTEM"),
            "user_id": getattr(record, "user_id", "SYSTEM"),
            "trace_id": getattr(record, "trace_id", None),
            "action": getattr(record, "action", record.getMessage()),
            "resource_type": getattr(record, "resource_type", None),
            "resource_id": getattr(record, "resource_id", None),
            "result": getattr(record, "result", "SUCCESS"),
            "patient_hash": getattr(record, "patient_hash", None),
            "practice_ods_code": getattr(record, "practice_ods_code", None),
            "client_ip_hash": getattr(record, "client_ip_hash", None),
            "user_agent_hash": getattr(record, "user_agent_hash", None),
            "error_message": getattr(record, "error_message", None),
            "additional_data": getattr(record, "additional_data", {}),
        }

        # Remove None values to keep logs clean
        audit_entry = {k: v for k, v in audit_entry.items() if v is not None}

        return json.dumps(audit_entry)


class AuditLogger:
    """
    Audit logging for regulated access records.

    Features:
    - Automatic log rotation
    - Patient-safe logging (hashes NHS numbers, IPs, user agents)
    - Structured JSON format
    """

    def __init__(
        self,
        log_file: str = "audit.log",
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 5,
        enabled: bool = True,
    ):
        """
        Initialize audit logger.

        Args:
            log_file: Path to audit log file
            max_bytes: Maximum log file size before rotation (default: 10MB)
            backup_count: Number of backup files to keep
            enabled: When False, events are dropped
        """
        self.log_file = Path(log_file)
        self.max_bytes = max_bytes
        self.backup_count = backup_count
        self.enabled = enabled
        self._handler: Optional[logging.Handler] = None
        if enabled:
            self._setup_logger()

    def _setup_logger(self):
        """Set up the audit logger with rotation."""
        self.log_file.parent.mkdir(parents=True, exist_ok=True)

        for handler in list(audit_logger.handlers):
            audit_logger.removeHandler(handler)
            handler.close()

        handler = logging.handlers.RotatingFileHandler(
            filename=self.log_file,
            maxBytes=self.max_bytes,
            backupCount=self.backup_count,
            encoding="utf-8",
        )
        handler.setFormatter(PatientSafeFormatter())

        audit_logger.addHandler(handler)
        audit_logger.setLevel(logging.INFO)
        audit_logger.propagate = False
        self._handler = handler

    def _hash_sensitive_data(self, data: Optional[str]) -> Optional[str]:
        """Hash sensitive data for audit logging."""
        if not data:
            return None
        return hashlib.sha256(data.encode()).hexdigest()[:16]

    def log_event(
        self,
        event_type: str,
        action: str,
        user_id: str = "SYSTEM",
        trace_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        result: str = "SUCCESS",
        patient_nhs_number: Optional[str] = None,
        practice_ods_code: Optional[str] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        error_message: Optional[str] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ):
        """
        Log an audit event.

        Args:
            event_type: Type of event (e.g., 'ACCESS', 'BOOKING', 'CONFIGURATION')
            action: Description of the action performed
            user_id: Acting user or system
            trace_id: Per-request correlation identifier
            resource_type: Kind of resource touched
            resource_id: Identifier of the resource touched
            result: Result of the action ('SUCCESS', 'FAILURE', 'ERROR')
            patient_nhs_number: NHS number (will be hashed)
            practice_ods_code: Practice organization code
            client_ip: Client IP address (will be hashed)
            user_agent: User agent string (will be hashed)
            error_message: Failure description, free of patient data
            additional_data: Additional non-sensitive data
        """
        if not self.enabled:
            return

        extra = {
            "event_type": event_type,
            "user_id": user_id,
            "trace_id": trace_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "result": result,
            "patient_hash": self._hash_sensitive_data(patient_nhs_number),
            "practice_ods_code": practice_ods_code,
            "client_ip_hash": self._hash_sensitive_data(client_ip),
            "user_agent_hash": self._hash_sensitive_data(user_agent),
            "error_message": error_message,
            "additional_data": additional_data or {},
        }

        audit_logger.info(action, extra=extra)

    def log_system_event(
        self,
        action: str,
        result: str = "SUCCESS",
        additional_data: Optional[Dict[str, Any]] = None,
    ):
        """Log a system event."""
        self.log_event(
            event_type="SYSTEM",
            action=action,
            result=result,
            additional_data=additional_data,
        )

    def log_configuration_change(
        self,
        action: str,
        user_id: str = "SYSTEM",
        result: str = "SUCCESS",
        additional_data: Optional[Dict[str, Any]] = None,
    ):
        """Log a configuration change."""
        self.log_event(
            event_type="CONFIGURATION",
            action=action,
            user_id=user_id,
            result=result,
            additional_data=additional_data,
        )

    def log_access(
        self,
        action: str,
        resource_type: str,
        trace_id: str,
        outcome: str = "success",
        user_id: str = "anonymous",
        patient_nhs_number: Optional[str] = None,
        practice_ods_code: Optional[str] = None,
        resource_id: Optional[str] = None,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        error_message: Optional[str] = None,
    ):
        """
        Record one API access (search, book, cancel).

        Every access produces exactly one entry carrying the trace id that
        was returned to the caller.
        """
        self.log_event(
            event_type="ACCESS",
            action=action,
            user_id=user_id,
            trace_id=trace_id,
            resource_type=resource_type,
            resource_id=resource_id,
            result="SUCCESS" if outcome == "success" else "FAILURE",
            patient_nhs_number=patient_nhs_number,
            practice_ods_code=practice_ods_code,
            client_ip=client_ip,
            user_agent=user_agent,
            error_message=error_message,
        )

    def log_booking_event(
        self,
        event_type: str,
        trace_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        result: str = "SUCCESS",
    ):
        """
        Log booking lifecycle events with patient data anonymized.

        Args:
            event_type: Type of booking event
            trace_id: Request trace identifier
            details: Event details (identifiers will be hashed)
            result: Result of the operation
        """
        safe_details = {}
        if details:
            for key, value in details.items():
                if key in ["patient_nhs_number", "patient_id", "external_id"]:
                    safe_details[f"{key}_hash"] = self._hash_sensitive_data(str(value))
                elif not any(
                    sensitive in str(key).lower()
                    for sensitive in ["name", "dob", "phone", "email", "reason"]
                ):
                    safe_details[key] = value

        self.log_event(
            event_type="BOOKING",
            action=event_type,
            trace_id=trace_id,
            user_id="BOOKING_SERVICE",
            result=result,
            additional_data=safe_details,
        )

    def close(self):
        """Detach and close the file handler."""
        if self._handler is not None:
            audit_logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None


def _build_default_audit_logger() -> AuditLogger:
    settings = get_settings()
    return AuditLogger(
        log_file=settings.audit_log_file,
        max_bytes=settings.audit_log_rotation_mb * 1024 * 1024,
        enabled=settings.enable_audit_logging,
    )


# Global audit logger instance
audit_logger_instance = _build_default_audit_logger()
