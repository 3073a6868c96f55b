"""SQLAlchemy ORM Models for the Report Ledger."""

from .base import Base, JSONType, SoftDeleteMixin, UUIDMixin, utc_now
from .models import (
    # Enums
    AuditAction,
    PacketType,
    ReportRunStatus,
    SignatureRole,
    # Organization & User
    Organization,
    OrganizationMember,
    User,
    # Jobs
    Document,
    Job,
    JobRiskScore,
    MitigationItem,
    # Audit
    AuditLog,
    # Ledger
    REFERENCE_PREFIX,
    ReportRun,
    ReportSignature,
)

__all__ = [
    # Base
    "Base",
    "JSONType",
    "UUIDMixin",
    "SoftDeleteMixin",
    "utc_now",
    # Enums
    "AuditAction",
    "PacketType",
    "ReportRunStatus",
    "SignatureRole",
    # Organization & User
    "Organization",
    "OrganizationMember",
    "User",
    # Jobs
    "Document",
    "Job",
    "JobRiskScore",
    "MitigationItem",
    # Audit
    "AuditLog",
    # Ledger
    "REFERENCE_PREFIX",
    "ReportRun",
    "ReportSignature",
]
