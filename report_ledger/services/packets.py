"""
Report Payload Builder: assembles the frozen content of a report packet.

The payload is the thing that gets hashed, so the builder is held to strict
rules:
- no wall-clock reads; the caller pins time through ``as_of``
- audit entries are chosen once, at generation, and recorded on the run;
  rebuilds read exactly that set instead of re-querying by time
- no data that drifts on its own (display names, signed URLs)
- every collection is in a stable order

Builders are versioned. A run records the version that produced it, and
verification rebuilds with exactly that version, so changing what a packet
contains means registering a new version, never editing an old one.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from ..models import PacketType, SignatureRole
from .entity_store import EntityStore
from .errors import (
    AuditEntryNotFoundError,
    BuilderVersionUnavailableError,
    NotFoundError,
    UnknownPacketTypeError,
)

logger = logging.getLogger(__name__)

CURRENT_BUILDER_VERSION = 1


# =============================================================================
# PACKET DEFINITIONS
# =============================================================================


SECTION_TITLES = {
    "table_of_contents": "Table of Contents",
    "executive_summary": "Executive Summary",
    "job_summary": "Job Summary",
    "risk_score": "Risk Assessment",
    "mitigations": "Controls Applied",
    "attachments_index": "Evidence Index",
    "evidence_photos": "Evidence Photos",
    "audit_timeline": "Audit Timeline",
    "compliance_status": "Compliance Status",
}

ALL_ROLES = (
    SignatureRole.PREPARED_BY,
    SignatureRole.REVIEWED_BY,
    SignatureRole.APPROVED_BY,
)


@dataclass(frozen=True)
class PacketDefinition:
    """What a packet type contains and who must sign it."""
    packet_type: PacketType
    title: str
    sections: tuple[str, ...]
    required_roles: tuple[SignatureRole, ...] = ALL_ROLES
    client_facing: bool = False


PACKET_DEFINITIONS: dict[PacketType, PacketDefinition] = {
    PacketType.INSURANCE: PacketDefinition(
        packet_type=PacketType.INSURANCE,
        title="Insurance Packet",
        sections=(
            "table_of_contents",
            "executive_summary",
            "job_summary",
            "risk_score",
            "mitigations",
            "evidence_photos",
            "attachments_index",
            "compliance_status",
        ),
    ),
    PacketType.AUDIT: PacketDefinition(
        packet_type=PacketType.AUDIT,
        title="Audit Packet",
        sections=(
            "table_of_contents",
            "executive_summary",
            "job_summary",
            "risk_score",
            "mitigations",
            "audit_timeline",
            "attachments_index",
            "compliance_status",
        ),
    ),
    PacketType.INCIDENT: PacketDefinition(
        packet_type=PacketType.INCIDENT,
        title="Incident Report",
        sections=(
            "executive_summary",
            "job_summary",
            "risk_score",
            "mitigations",
            "audit_timeline",
            "evidence_photos",
        ),
    ),
    PacketType.CLIENT_COMPLIANCE: PacketDefinition(
        packet_type=PacketType.CLIENT_COMPLIANCE,
        title="Client Compliance Report",
        sections=(
            "job_summary",
            "mitigations",
            "evidence_photos",
            "compliance_status",
        ),
        client_facing=True,
    ),
    PacketType.EXECUTIVE_BRIEF: PacketDefinition(
        packet_type=PacketType.EXECUTIVE_BRIEF,
        title="Executive Brief",
        sections=(
            "executive_summary",
            "risk_score",
            "compliance_status",
        ),
        required_roles=(SignatureRole.PREPARED_BY, SignatureRole.APPROVED_BY),
    ),
}


def parse_packet_type(value: PacketType | str | None) -> PacketType:
    """Resolve a packet type, failing loudly for anything unregistered."""
    if isinstance(value, PacketType):
        return value
    try:
        packet_type = PacketType(value)
    except ValueError:
        raise UnknownPacketTypeError(value)
    if packet_type not in PACKET_DEFINITIONS:
        raise UnknownPacketTypeError(value)
    return packet_type


def get_packet_definition(packet_type: PacketType | str) -> PacketDefinition:
    return PACKET_DEFINITIONS[parse_packet_type(packet_type)]


def required_roles_for(packet_type: PacketType | str) -> tuple[SignatureRole, ...]:
    return get_packet_definition(packet_type).required_roles


# =============================================================================
# SOURCE SNAPSHOT
# =============================================================================


@dataclass
class JobSnapshot:
    """Raw entity data a packet is built from."""
    organization: dict[str, Any]
    job: dict[str, Any]
    risk_score: dict[str, Any] | None
    risk_factors: list[dict[str, Any]]
    mitigations: list[dict[str, Any]]
    documents: list[dict[str, Any]]
    audit: list[dict[str, Any]] = field(default_factory=list)

    @property
    def photos(self) -> list[dict[str, Any]]:
        return [doc for doc in self.documents if doc["type"] == "photo"]

    @property
    def controls_complete(self) -> int:
        return sum(1 for item in self.mitigations if item["done"])


# =============================================================================
# BUILDER
# =============================================================================


class ReportPayloadBuilder:
    """Builds the canonical report payload for a job and packet type."""

    def __init__(self, store: EntityStore):
        self._store = store
        self._versions: dict[int, Callable[[PacketDefinition, JobSnapshot], dict[str, Any]]] = {
            1: _build_v1,
        }

    @property
    def supported_versions(self) -> tuple[int, ...]:
        return tuple(sorted(self._versions))

    def supports(self, builder_version: int | None) -> bool:
        return builder_version is not None and builder_version in self._versions

    async def build(
        self,
        packet_type: PacketType | str,
        organization_id: UUID,
        job_id: UUID,
        *,
        as_of: datetime | None = None,
        builder_version: int | None = None,
        audit_entry_ids: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        """
        Build the payload for one packet.

        Args:
            packet_type: Registered packet type (enum or its string value)
            organization_id: Tenant that owns the job
            job_id: Job being reported on
            as_of: Upper bound for audit entries (the run's generated_at)
            builder_version: Version to build with (None = current)
            audit_entry_ids: Audit entries pinned on the run; when given, the
                timeline is rebuilt from exactly these and ``as_of`` is ignored

        Raises:
            UnknownPacketTypeError: packet type is not registered
            BuilderVersionUnavailableError: version is not registered
            NotFoundError: organization or job no longer resolves
            AuditEntryNotFoundError: a pinned audit entry no longer resolves
        """
        definition = get_packet_definition(packet_type)
        version = CURRENT_BUILDER_VERSION if builder_version is None else builder_version
        build_fn = self._versions.get(version)
        if build_fn is None:
            raise BuilderVersionUnavailableError(
                f"Builder version {version} is not available "
                f"(supported: {list(self.supported_versions)})"
            )

        snapshot = await self._load_snapshot(
            definition, organization_id, job_id, as_of, audit_entry_ids
        )
        payload = build_fn(definition, snapshot)

        logger.debug(
            f"Built {definition.packet_type.value} payload v{version} for job {job_id} "
            f"({payload['computed']['sections_with_data']}/"
            f"{payload['computed']['total_sections']} sections with data)"
        )
        return payload

    async def _load_snapshot(
        self,
        definition: PacketDefinition,
        organization_id: UUID,
        job_id: UUID,
        as_of: datetime | None,
        audit_entry_ids: Sequence[str] | None,
    ) -> JobSnapshot:
        organization = await self._store.get_organization(organization_id)
        if organization is None:
            raise NotFoundError(f"Organization {organization_id} not found")

        job = await self._store.get_job(organization_id, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")

        audit: list[dict[str, Any]] = []
        if "audit_timeline" in definition.sections:
            if audit_entry_ids is None:
                audit = await self._store.list_audit_entries(organization_id, job_id, as_of)
            else:
                audit = await self._store.get_audit_entries(
                    organization_id, job_id, audit_entry_ids
                )
                missing = set(audit_entry_ids) - {entry["id"] for entry in audit}
                if missing:
                    raise AuditEntryNotFoundError(
                        f"Audit entries no longer resolve for job {job_id}: "
                        f"{sorted(missing)}"
                    )

        return JobSnapshot(
            organization=organization,
            job=job,
            risk_score=await self._store.get_risk_score(job_id),
            risk_factors=await self._store.list_risk_factors(job_id),
            mitigations=await self._store.list_mitigations(job_id),
            documents=await self._store.list_documents(organization_id, job_id),
            audit=audit,
        )


# =============================================================================
# VERSION 1
# =============================================================================


def _build_v1(definition: PacketDefinition, snapshot: JobSnapshot) -> dict[str, Any]:
    sections = [
        _section_v1(name, definition, snapshot) for name in definition.sections
    ]
    organization = snapshot.organization

    return {
        "builder_version": 1,
        "packet_type": definition.packet_type.value,
        "meta": {
            "job_id": snapshot.job["id"],
            "organization_id": organization["id"],
            "packet_title": definition.title,
        },
        "organization": {
            "name": organization["name"],
            "logo_url": organization["logo_url"],
            "accent_color": organization["accent_color"],
        },
        "sections": sections,
        "computed": {
            "total_sections": len(sections),
            "sections_with_data": sum(1 for s in sections if not s["empty"]),
        },
    }


def _section_v1(
    name: str, definition: PacketDefinition, snapshot: JobSnapshot
) -> dict[str, Any]:
    data, empty = _SECTION_BUILDERS_V1[name](definition, snapshot)
    return {
        "type": name,
        "title": SECTION_TITLES[name],
        "data": data,
        "empty": empty,
    }


def _table_of_contents(definition: PacketDefinition, snapshot: JobSnapshot):
    entries = [
        {"type": name, "title": SECTION_TITLES[name]}
        for name in definition.sections
        if name != "table_of_contents"
    ]
    return {"sections": entries}, False


def _executive_summary(definition: PacketDefinition, snapshot: JobSnapshot):
    score = snapshot.risk_score or {}
    return {
        "risk_score": score.get("overall_score"),
        "risk_level": score.get("risk_level"),
        "hazard_count": len(snapshot.risk_factors),
        "controls_total": len(snapshot.mitigations),
        "controls_complete": snapshot.controls_complete,
        "evidence_count": len(snapshot.photos),
        "job_status": snapshot.job["status"],
        "packet_title": definition.title,
    }, False


def _job_summary(definition: PacketDefinition, snapshot: JobSnapshot):
    job = snapshot.job
    return {
        "client": job["client_name"],
        "location": job["location"],
        "job_type": job["job_type"],
        "status": job["status"],
        "start_date": job["start_date"],
        "end_date": job["end_date"],
        "description": job["description"],
    }, False


def _risk_score(definition: PacketDefinition, snapshot: JobSnapshot):
    score = snapshot.risk_score
    return {
        "overall_score": score["overall_score"] if score else None,
        "risk_level": score["risk_level"] if score else None,
        "factors": snapshot.risk_factors,
    }, score is None


def _mitigations(definition: PacketDefinition, snapshot: JobSnapshot):
    items = [
        {
            "id": item["id"],
            "title": item["title"],
            "description": item["description"],
            "completed": item["done"],
            "completed_at": item["completed_at"],
        }
        for item in snapshot.mitigations
    ]
    return {
        "items": items,
        "total": len(items),
        "completed": snapshot.controls_complete,
    }, not items


def _document_entry(doc: dict[str, Any], client_facing: bool) -> dict[str, Any]:
    entry = {
        "id": doc["id"],
        "name": doc["name"],
        "type": doc["type"],
        "file_path": doc["file_path"],
        "category": doc["category"],
        "created_at": doc["created_at"],
    }
    if not client_facing:
        entry["uploaded_by"] = doc["uploaded_by"]
    return entry


def _evidence_photos(definition: PacketDefinition, snapshot: JobSnapshot):
    photos = [_document_entry(doc, definition.client_facing) for doc in snapshot.photos]
    return {"photos": photos, "count": len(photos)}, not photos


def _attachments_index(definition: PacketDefinition, snapshot: JobSnapshot):
    documents = [
        _document_entry(doc, definition.client_facing) for doc in snapshot.documents
    ]
    return {"documents": documents, "count": len(documents)}, not documents


def _audit_timeline(definition: PacketDefinition, snapshot: JobSnapshot):
    events = [
        {
            "id": entry["id"],
            "action": entry["action"],
            "resource_type": entry["resource_type"],
            "resource_id": entry["resource_id"],
            "user_id": entry["user_id"],
            "details": entry["details"],
            "created_at": entry["created_at"],
        }
        for entry in snapshot.audit
    ]
    return {"events": events, "count": len(events)}, not events


def _compliance_status(definition: PacketDefinition, snapshot: JobSnapshot):
    total = len(snapshot.mitigations)
    score = snapshot.risk_score or {}
    return {
        "job_status": snapshot.job["status"],
        "risk_level": score.get("risk_level"),
        "controls_complete": total > 0 and snapshot.controls_complete == total,
        "has_evidence": bool(snapshot.photos),
        "has_risk_assessment": snapshot.risk_score is not None,
    }, False


_SECTION_BUILDERS_V1: dict[str, Callable[[PacketDefinition, JobSnapshot], tuple[dict[str, Any], bool]]] = {
    "table_of_contents": _table_of_contents,
    "executive_summary": _executive_summary,
    "job_summary": _job_summary,
    "risk_score": _risk_score,
    "mitigations": _mitigations,
    "evidence_photos": _evidence_photos,
    "attachments_index": _attachments_index,
    "audit_timeline": _audit_timeline,
    "compliance_status": _compliance_status,
}


def pinned_audit_entry_ids(payload: dict[str, Any]) -> list[str] | None:
    """Ids of the audit entries a payload's timeline was built from.

    None when the packet has no audit timeline.
    """
    for section in payload["sections"]:
        if section["type"] == "audit_timeline":
            return [event["id"] for event in section["data"]["events"]]
    return None
