"""
Audit trail infrastructure for pipeline state transitions.
"""

from outreach.infrastructure.audit.audit_logger import AuditLogger, audit_logger

__all__ = ["AuditLogger", "audit_logger"]
