"""SQLAlchemy ORM Models for the Report Ledger.

Two groups of tables live here:

- Entity tables (organizations, jobs, risk scores, mitigations, documents,
  audit log). They are owned by the wider product; the ledger only reads them
  through the entity store.
- Ledger tables (report_runs, report_signatures). These are append-mostly:
  hashes are frozen once written and signatures are revoked, never deleted.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .base import Base, JSONType, SoftDeleteMixin, UUIDMixin, utc_now


# =============================================================================
# ENUMS
# =============================================================================


# Short public reference printed on artifacts: prefix plus 8 hex digits of the id
REFERENCE_PREFIX = "RM-"


class PacketType(str, PyEnum):
    """Closed set of report packet variants."""
    INSURANCE = "insurance"
    AUDIT = "audit"
    INCIDENT = "incident"
    CLIENT_COMPLIANCE = "client_compliance"
    EXECUTIVE_BRIEF = "executive_brief"


class ReportRunStatus(str, PyEnum):
    DRAFT = "draft"  # Payload hashed, no artifact yet
    FINAL = "final"  # Artifact stored, signatures still being collected
    COMPLETE = "complete"  # Artifact stored, all required roles signed


class SignatureRole(str, PyEnum):
    PREPARED_BY = "prepared_by"
    REVIEWED_BY = "reviewed_by"
    APPROVED_BY = "approved_by"
    OTHER = "other"


class AuditAction(str, PyEnum):
    """Ledger events written to the audit log."""
    GENERATE = "report.generate"
    ATTACH_ARTIFACT = "report.attach_artifact"
    FINALIZE = "report.finalize"
    SIGN = "signature.create"
    REVOKE = "signature.revoke"


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(enum_cls, name=name, values_callable=lambda x: [e.value for e in x])


# =============================================================================
# ORGANIZATION & USER MODELS
# =============================================================================


class Organization(Base, UUIDMixin, SoftDeleteMixin):
    """Multi-tenant organization; carries the branding printed on reports."""

    __tablename__ = "organizations"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    logo_url: Mapped[str | None] = mapped_column(String(500))
    accent_color: Mapped[str | None] = mapped_column(String(20))
    subscription_tier: Mapped[str | None] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    members: Mapped[list["OrganizationMember"]] = relationship(
        back_populates="organization"
    )
    jobs: Mapped[list["Job"]] = relationship(back_populates="organization")


class User(Base, UUIDMixin, SoftDeleteMixin):
    """Application user."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    org_memberships: Mapped[list["OrganizationMember"]] = relationship(
        back_populates="user"
    )


class OrganizationMember(Base, UUIDMixin):
    """Membership linking users to organizations."""

    __tablename__ = "organization_members"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    role: Mapped[str] = mapped_column(String(50), default="member")
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    organization: Mapped["Organization"] = relationship(back_populates="members")
    user: Mapped["User"] = relationship(back_populates="org_memberships")

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id"),
        Index("idx_org_members_user", "user_id"),
    )


# =============================================================================
# JOB MODELS (read-only for the ledger)
# =============================================================================


class Job(Base, UUIDMixin, SoftDeleteMixin):
    """A contractor job being reported on."""

    __tablename__ = "jobs"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id"), nullable=False
    )
    client_name: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[str | None] = mapped_column(String(500))
    job_type: Mapped[str | None] = mapped_column(String(100))
    status: Mapped[str] = mapped_column(String(50), default="active")
    description: Mapped[str | None] = mapped_column(Text)
    start_date: Mapped[datetime | None] = mapped_column()
    end_date: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    organization: Mapped["Organization"] = relationship(back_populates="jobs")
    risk_score: Mapped["JobRiskScore | None"] = relationship(back_populates="job")

    __table_args__ = (
        Index("idx_jobs_org", "organization_id"),
    )


class JobRiskScore(Base, UUIDMixin):
    """Current risk assessment of a job."""

    __tablename__ = "job_risk_scores"

    job_id: Mapped[UUID] = mapped_column(ForeignKey("jobs.id"), unique=True, nullable=False)
    overall_score: Mapped[int] = mapped_column(Integer, nullable=False)
    risk_level: Mapped[str] = mapped_column(String(20), nullable=False)
    factors: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)

    job: Mapped["Job"] = relationship(back_populates="risk_score")


class MitigationItem(Base, UUIDMixin):
    """A control applied to a job hazard."""

    __tablename__ = "mitigation_items"

    job_id: Mapped[UUID] = mapped_column(ForeignKey("jobs.id"), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    done: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    __table_args__ = (
        Index("idx_mitigation_items_job", "job_id"),
    )


class Document(Base, UUIDMixin, SoftDeleteMixin):
    """Uploaded document or evidence photo attached to a job."""

    __tablename__ = "documents"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id"), nullable=False
    )
    job_id: Mapped[UUID] = mapped_column(ForeignKey("jobs.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    type: Mapped[str] = mapped_column(String(50), default="document")
    file_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(String(20))  # before / during / after
    uploaded_by: Mapped[UUID | None] = mapped_column(ForeignKey("users.id"))
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    __table_args__ = (
        Index("idx_documents_job", "organization_id", "job_id"),
    )


class AuditLog(Base, UUIDMixin):
    """Append-only activity log shared by the product and the ledger."""

    __tablename__ = "audit_log"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id"), nullable=False
    )
    user_id: Mapped[UUID | None] = mapped_column(ForeignKey("users.id"))
    job_id: Mapped[UUID | None] = mapped_column(ForeignKey("jobs.id"))
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[UUID] = mapped_column(nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(default=dict)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    __table_args__ = (
        Index("idx_audit_log_resource", "resource_type", "resource_id", "created_at"),
        Index("idx_audit_log_org", "organization_id", "created_at"),
        Index("idx_audit_log_job", "job_id", "created_at"),
    )


# =============================================================================
# LEDGER MODELS (Core)
# =============================================================================


class ReportRun(Base, UUIDMixin):
    """A frozen, hashable snapshot of a compliance report."""

    __tablename__ = "report_runs"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id"), nullable=False
    )
    job_id: Mapped[UUID] = mapped_column(ForeignKey("jobs.id"), nullable=False)
    packet_type: Mapped[PacketType] = mapped_column(
        _enum(PacketType, "packet_type"), nullable=False
    )
    builder_version: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ReportRunStatus] = mapped_column(
        _enum(ReportRunStatus, "report_run_status"),
        default=ReportRunStatus.DRAFT,
        nullable=False,
    )
    data_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    generated_by: Mapped[UUID | None] = mapped_column(ForeignKey("users.id"))
    generated_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    # Audit entries the timeline was built from; None for packets without one
    audit_entry_ids: Mapped[list[str] | None] = mapped_column(JSONType)

    # Rendered artifact (parallel commitment, never a substitute for data_hash)
    storage_path: Mapped[str | None] = mapped_column(String(1000))
    artifact_hash: Mapped[str | None] = mapped_column(String(64))
    artifact_stored_at: Mapped[datetime | None] = mapped_column()
    completed_at: Mapped[datetime | None] = mapped_column()

    signatures: Mapped[list["ReportSignature"]] = relationship(
        back_populates="report_run",
        order_by="ReportSignature.signed_at",
    )

    __table_args__ = (
        Index("idx_report_runs_job", "job_id", "packet_type", "generated_at"),
        Index("idx_report_runs_org", "organization_id"),
        Index("idx_report_runs_status", "status"),
        # One draft per identical content; concurrent duplicates lose here
        Index(
            "uq_report_runs_draft_hash",
            "job_id",
            "packet_type",
            "data_hash",
            unique=True,
            postgresql_where=text("status = 'draft'"),
            sqlite_where=text("status = 'draft'"),
        ),
    )

    @validates("data_hash", "audit_entry_ids")
    def _freeze_content_commitment(self, key: str, value: Any) -> Any:
        current = getattr(self, key)
        if current is not None and value != current:
            raise ValueError(f"{key} is immutable once set")
        return value

    @property
    def reference(self) -> str:
        return f"{REFERENCE_PREFIX}{self.id.hex[:8]}"


class ReportSignature(Base, UUIDMixin):
    """A role attestation bound to a report run."""

    __tablename__ = "report_signatures"

    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organizations.id"), nullable=False
    )
    report_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("report_runs.id"), nullable=False
    )
    signature_role: Mapped[SignatureRole] = mapped_column(
        _enum(SignatureRole, "signature_role"), nullable=False
    )
    signer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    signer_title: Mapped[str] = mapped_column(String(255), nullable=False)
    signature_svg: Mapped[str] = mapped_column(Text, nullable=False)
    signature_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    signer_user_id: Mapped[UUID | None] = mapped_column(ForeignKey("users.id"))
    attestation_text: Mapped[str | None] = mapped_column(Text)
    signed_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    # Request context of the signing call; not part of signature_hash
    ip_address: Mapped[str | None] = mapped_column(String(64))
    user_agent: Mapped[str | None] = mapped_column(String(500))

    # Soft revoke; the row is retained for the audit trail
    revoked_at: Mapped[datetime | None] = mapped_column()
    revoked_by: Mapped[UUID | None] = mapped_column(ForeignKey("users.id"))
    revoked_reason: Mapped[str | None] = mapped_column(Text)

    report_run: Mapped["ReportRun"] = relationship(back_populates="signatures")

    __table_args__ = (
        Index("idx_report_signatures_run", "report_run_id", "signature_role"),
        Index("idx_report_signatures_org", "organization_id"),
    )

    @validates("signature_hash")
    def _freeze_signature_hash(self, key: str, value: str) -> str:
        if self.signature_hash is not None and value != self.signature_hash:
            raise ValueError("signature_hash is immutable once set")
        return value

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None
