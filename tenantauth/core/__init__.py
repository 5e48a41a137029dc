"""Core plumbing for tenantauth: configuration and logging."""

from .config import Config, ValidationResult, get_config, reload_config  # noqa: F401
from .logging_setup import (  # noqa: F401
    AuditLogger,
    JSONFormatter,
    configure_comprehensive_logging,
    configure_logging,
)

__all__ = [
    "Config",
    "ValidationResult",
    "get_config",
    "reload_config",
    "AuditLogger",
    "JSONFormatter",
    "configure_logging",
    "configure_comprehensive_logging",
]
