"""Compliance audit trail: events, correlation IDs, writer and reports."""

from .events import AuditAction, AuditEvent, Severity, RiskLevel, verify_chain
from .context import correlation_scope, get_correlation_id, new_correlation_id
from .logger import AuditLogger
from .compliance import ComplianceReporter, RotationMonitor, Anomaly
from .retention import AuditRetention, RetentionPolicy, RetentionStats

__all__ = [
    "AuditAction",
    "AuditEvent",
    "Severity",
    "RiskLevel",
    "verify_chain",
    "correlation_scope",
    "get_correlation_id",
    "new_correlation_id",
    "AuditLogger",
    "ComplianceReporter",
    "RotationMonitor",
    "Anomaly",
    "AuditRetention",
    "RetentionPolicy",
    "RetentionStats",
]
