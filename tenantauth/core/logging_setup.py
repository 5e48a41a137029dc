"""Logging configuration for tenantauth.

Provides:
- Standard application logging with rotation
- Structured JSON logging for machine parsing
- A dedicated audit channel that mirrors security events to its own file

Call ``configure_logging`` (or ``configure_comprehensive_logging``) once at startup.
"""

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

AUDIT_LOGGER_NAME = "tenantauth.audit_events"


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class AuditLogger:
    """Security event channel written as JSON lines.

    The logger does not propagate to the root logger, so audit records only
    land in the audit file (and any handler a caller attaches explicitly).
    """

    def __init__(self, log_file: Optional[Path] = None):
        """Initialize audit logger.

        Args:
            log_file: Path to audit log file
        """
        self.logger = logging.getLogger(AUDIT_LOGGER_NAME)
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

        if log_file is not None and not self._has_file_handler(log_file):
            log_file.parent.mkdir(parents=True, exist_ok=True)
            handler = RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,
                backupCount=10,
            )
            handler.setFormatter(JSONFormatter())
            self.logger.addHandler(handler)

    def _has_file_handler(self, log_file: Path) -> bool:
        target = os.path.abspath(log_file)
        return any(
            isinstance(h, RotatingFileHandler) and h.baseFilename == target
            for h in self.logger.handlers
        )

    def log_event(
        self,
        action: str,
        resource: str,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """Write one audit event.

        Args:
            action: Audit action name (e.g. ``api_key_create``)
            resource: Resource type the action applied to
            user_id: Acting user
            organization_id: Organization the action was scoped to
            resource_id: Identifier of the affected resource
            details: Free-form details
            ip_address: Client IP address
            user_agent: Client user agent
        """
        self.logger.info(
            f"{action} on {resource}",
            extra={
                "extra_fields": {
                    "event_type": "audit",
                    "action": action,
                    "resource": resource,
                    "resource_id": resource_id,
                    "user_id": user_id,
                    "organization_id": organization_id,
                    "details": details or {},
                    "ip_address": ip_address,
                    "user_agent": user_agent,
                }
            },
        )


def configure_logging(
    log_file: Optional[Path] = None,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    use_json: bool = False,
    console_output: bool = True,
) -> None:
    """Configure root logging handlers with optional JSON formatting.

    Parameters
    ----------
    log_file: Path, optional
        If provided, logs will be written to this file with rotation.  The
        directory will be created if it does not exist.
    level: int
        Logging level (e.g. ``logging.INFO`` or ``logging.DEBUG``).
    max_bytes: int
        Maximum size of each log file before rotation.
    backup_count: int
        Number of rotated log files to keep.
    use_json: bool
        If True, use JSON structured logging format.
    console_output: bool
        If True, enable console output handler.
    """
    root = logging.getLogger()
    if root.handlers:
        return

    root.setLevel(level)

    if use_json:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    if console_output:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def setup_audit_logging(log_dir: Path = Path("logs")) -> AuditLogger:
    """Set up the audit log file under ``log_dir``.

    Args:
        log_dir: Directory for audit logs

    Returns:
        Configured audit logger instance
    """
    return AuditLogger(log_dir / "audit.log")


def configure_comprehensive_logging(
    log_dir: Path = Path("logs"),
    level: int = logging.INFO,
    use_json: bool = False,
    console_output: bool = True,
) -> AuditLogger:
    """Configure application and audit logging.

    Args:
        log_dir: Base directory for log files
        level: Logging level for application logs
        use_json: Use JSON structured logging
        console_output: Enable console output

    Returns:
        The audit logger
    """
    main_log = log_dir / "tenantauth.log"
    configure_logging(
        log_file=main_log,
        level=level,
        use_json=use_json,
        console_output=console_output,
    )

    audit_logger = setup_audit_logging(log_dir)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured: main={main_log}, audit={log_dir}/audit.log")

    return audit_logger
